import base64
import binascii
import datetime
import hmac
import ipaddress
import json
import re
from typing import Any, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
from cryptography.hazmat.primitives.serialization import load_pem_public_key

from imgoptim.errors import InvalidConfig, Unauthorized
from imgoptim.logs import ContextLogger
from imgoptim.typing import OriginSecret, Request

ORIGIN_SECRET_HEADER = 'x-origin-secret-header'

EXPIRES = 'Expires'
SIGNATURE = 'Signature'
KEY_PAIR_ID = 'Key-Pair-Id'
POLICY = 'Policy'
CREDENTIAL_PARAMS = frozenset([EXPIRES, SIGNATURE, KEY_PAIR_ID, POLICY])
COOKIE_PREFIX = 'CloudFront-'


def verify_origin_secret(expected: OriginSecret, presented: Optional[str]) -> bool:
  if presented is None:
    return False
  return hmac.compare_digest(expected.encode(), presented.encode())


def cf_b64decode(s: str) -> bytes:
  # CloudFront replaces the characters URLs cannot carry safely.
  return base64.b64decode(s.replace('-', '+').replace('_', '=').replace('~', '/'), validate=True)


def canned_policy(resource: str, expires: int) -> bytes:
  policy = {
      'Statement': [{
          'Resource': resource,
          'Condition': {
              'DateLessThan': {
                  'AWS:EpochTime': expires,
              },
          },
      }],
  }
  return json.dumps(policy, separators=(',', ':')).encode()


def resource_matches(resource: str, url: str) -> bool:
  pattern = ''.join(
      '.*' if c == '*' else '.' if c == '?' else re.escape(c) for c in resource)
  return re.fullmatch(pattern, url, re.DOTALL) is not None


def split_query(querystring: str) -> tuple[dict[str, str], str]:
  """Separates credential parameters from the rest of a raw query string.

  The rest keeps its original encoding because the signature covers the URL
  as the client received it.
  """
  credential: dict[str, str] = {}
  rest = []
  for part in querystring.split('&'):
    if part == '':
      continue
    name, _, value = part.partition('=')
    if name in CREDENTIAL_PARAMS:
      credential.setdefault(name, value)
    else:
      rest.append(part)
  return credential, '&'.join(rest)


def parse_cookies(req: Request) -> dict[str, str]:
  cookies: dict[str, str] = {}
  for header in req['headers'].get('cookie', []):
    for part in header['value'].split(';'):
      name, sep, value = part.strip().partition('=')
      if sep != '' and name.startswith(COOKIE_PREFIX):
        cookies.setdefault(name[len(COOKIE_PREFIX):], value)
  return cookies


def request_url(req: Request, rest: str) -> str:
  host = req['headers']['host'][0]['value'] if 'host' in req['headers'] else ''
  url = f'https://{host}{req["uri"]}'
  return url if rest == '' else f'{url}?{rest}'


class TrustedKeySet:
  keys: dict[str, RSAPublicKey]

  def __init__(self, keys: dict[str, RSAPublicKey]):
    self.keys = keys

  @classmethod
  def from_config(cls, trusted_keys: tuple[tuple[str, str], ...]) -> 'TrustedKeySet':
    keys = {}
    for key_pair_id, pem in trusted_keys:
      try:
        key = load_pem_public_key(pem.encode())
      except ValueError as e:
        raise InvalidConfig(f'invalid public key: {key_pair_id}') from e
      if not isinstance(key, RSAPublicKey):
        raise InvalidConfig(f'not an RSA public key: {key_pair_id}')
      keys[key_pair_id] = key
    return cls(keys)

  def __contains__(self, key_pair_id: str) -> bool:
    return key_pair_id in self.keys

  def verify(self, key_pair_id: str, signature: bytes, message: bytes) -> bool:
    key = self.keys.get(key_pair_id)
    if key is None:
      return False
    try:
      key.verify(signature, message, padding.PKCS1v15(), hashes.SHA1())
    except InvalidSignature:
      return False
    return True


def evaluate_policy(
    policy: dict[str, Any],
    url: str,
    client_ip: str,
    now: datetime.datetime,
) -> Optional[str]:
  statement = policy['Statement'][0]
  condition = statement['Condition']
  epoch = now.timestamp()

  if not epoch < int(condition['DateLessThan']['AWS:EpochTime']):
    return 'expired'

  if 'DateGreaterThan' in condition:
    if epoch < int(condition['DateGreaterThan']['AWS:EpochTime']):
      return 'not yet valid'

  if 'IpAddress' in condition:
    network = ipaddress.ip_network(condition['IpAddress']['AWS:SourceIp'], strict=False)
    if ipaddress.ip_address(client_ip) not in network:
      return 'ip mismatch'

  if not resource_matches(statement.get('Resource', '*'), url):
    return 'resource mismatch'

  return None


class ClientGate:
  """Verifies CloudFront style signed URLs and signed cookies."""

  def __init__(self, keys: TrustedKeySet):
    self.keys = keys

  def check(self, log: ContextLogger, req: Request, now: datetime.datetime) -> None:
    reason = self.reject_reason(req, now)
    if reason is not None:
      # Only the coarse reason is logged; signatures and policies are not.
      log.log_info('client credential rejected', {'reason': reason})
      raise Unauthorized(reason)

  def reject_reason(self, req: Request, now: datetime.datetime) -> Optional[str]:
    credential, rest = split_query(req['querystring'])
    if SIGNATURE not in credential:
      credential = parse_cookies(req)
    if SIGNATURE not in credential or KEY_PAIR_ID not in credential:
      return 'missing'

    key_pair_id = credential[KEY_PAIR_ID]
    if key_pair_id not in self.keys:
      return 'unknown key'

    url = request_url(req, rest)

    try:
      signature = cf_b64decode(credential[SIGNATURE])
      if POLICY in credential:
        message = cf_b64decode(credential[POLICY])
        policy = json.loads(message)
      elif EXPIRES in credential:
        message = canned_policy(url, int(credential[EXPIRES]))
        policy = json.loads(message)
      else:
        return 'missing'
    except (binascii.Error, ValueError):
      return 'malformed'

    if not self.keys.verify(key_pair_id, signature, message):
      return 'bad signature'

    try:
      return evaluate_policy(policy, url, req['clientIp'], now)
    except (KeyError, IndexError, TypeError, ValueError):
      return 'malformed'
