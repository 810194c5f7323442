import dataclasses
import hashlib
import json
from typing import Mapping

from imgoptim.errors import InvalidConfig
from imgoptim.typing import OriginSecret

DEFAULT_PATH_CLASSES = '/medical-documents/**=document,/img/**=image'
DEFAULT_STORE_TTL = 90 * 24 * 60 * 60
DEFAULT_IMAGE_MAX_AGE = 31622400
DEFAULT_DOCUMENT_MAX_AGE = 24 * 60 * 60
DEFAULT_EXPIRATION_MARGIN = 60
DEFAULT_STORE_TIMEOUT = 5.0
DEFAULT_TRANSFORM_TIMEOUT = 60.0
DEFAULT_WRITE_BACK_TIMEOUT = 5.0


def derive_origin_secret(seed: str) -> OriginSecret:
  return OriginSecret(hashlib.md5(seed.encode()).hexdigest())


def parse_bool(name: str, s: str) -> bool:
  match s.strip().lower():
    case 'true' | '1' | 'yes':
      return True
    case 'false' | '0' | 'no' | '':
      return False
    case _:
      raise InvalidConfig(f'invalid boolean for {name}: {s}')


def parse_path_classes(s: str) -> tuple[tuple[str, str], ...]:
  entries = []
  for item in s.split(','):
    item = item.strip()
    if item == '':
      continue
    pattern, sep, name = item.rpartition('=')
    if sep == '' or pattern == '' or name.strip().upper() not in ('IMAGE', 'DOCUMENT'):
      raise InvalidConfig(f'invalid path class entry: {item}')
    entries.append((pattern.strip(), name.strip().upper()))
  if len(entries) == 0:
    raise InvalidConfig('no path class configured')
  return tuple(entries)


def parse_trusted_keys(s: str) -> tuple[tuple[str, str], ...]:
  try:
    obj = json.loads(s)
  except json.JSONDecodeError as e:
    raise InvalidConfig(f'TRUSTED_KEYS is not JSON: {e.msg}') from e
  if not isinstance(obj, dict) or len(obj) == 0:
    raise InvalidConfig('TRUSTED_KEYS must be a non-empty object')
  if not all(isinstance(k, str) and isinstance(v, str) for k, v in obj.items()):
    raise InvalidConfig('TRUSTED_KEYS must map key pair ids to PEM strings')
  return tuple(sorted(obj.items()))


@dataclasses.dataclass(eq=True, frozen=True)
class Config:
  region: str
  origin_secret: OriginSecret
  trusted_keys: tuple[tuple[str, str], ...]
  transformed_bucket: str
  original_bucket: str
  transform_url: str
  path_classes: tuple[tuple[str, str], ...] = parse_path_classes(DEFAULT_PATH_CLASSES)
  store_ttl: int = DEFAULT_STORE_TTL
  image_max_age: int = DEFAULT_IMAGE_MAX_AGE
  document_max_age: int = DEFAULT_DOCUMENT_MAX_AGE
  error_max_age: int = 0
  expiration_margin: int = DEFAULT_EXPIRATION_MARGIN
  product: str = 'aws'
  store_transformed: bool = True
  log_timing: bool = False
  store_timeout: float = DEFAULT_STORE_TIMEOUT
  transform_timeout: float = DEFAULT_TRANSFORM_TIMEOUT
  write_back_workers: int = 4
  write_back_timeout: float = DEFAULT_WRITE_BACK_TIMEOUT

  def __post_init__(self) -> None:
    if self.origin_secret == '':
      raise InvalidConfig('origin secret is empty')
    if any(self.origin_secret in pem for _, pem in self.trusted_keys):
      raise InvalidConfig('origin secret must not be reused as client key material')
    if self.store_ttl <= 0:
      raise InvalidConfig(f'invalid store ttl: {self.store_ttl}')

  @property
  def cache_control_image(self) -> str:
    return f'public, max-age={self.image_max_age}'

  @property
  def cache_control_document(self) -> str:
    return f'public, max-age={self.document_max_age}'

  @property
  def cache_control_error(self) -> str:
    return f'public, max-age={self.error_max_age}'

  @classmethod
  def from_env(cls, environ: Mapping[str, str]) -> 'Config':
    try:
      if environ.get('ORIGIN_SECRET', '') != '':
        origin_secret = OriginSecret(environ['ORIGIN_SECRET'])
      else:
        origin_secret = derive_origin_secret(environ['ORIGIN_SECRET_SEED'])

      return cls(
          region=environ.get('REGION', 'us-east-1'),
          origin_secret=origin_secret,
          trusted_keys=parse_trusted_keys(environ['TRUSTED_KEYS']),
          transformed_bucket=environ.get('TRANSFORMED_IMAGE_BUCKET', ''),
          original_bucket=environ['ORIGINAL_IMAGE_BUCKET'],
          transform_url=environ['TRANSFORM_SERVICE_URL'].rstrip('/'),
          path_classes=parse_path_classes(environ.get('PATH_CLASSES', DEFAULT_PATH_CLASSES)),
          store_ttl=int(environ.get('STORE_TTL', DEFAULT_STORE_TTL)),
          image_max_age=int(environ.get('IMAGE_MAX_AGE', DEFAULT_IMAGE_MAX_AGE)),
          document_max_age=int(environ.get('DOCUMENT_MAX_AGE', DEFAULT_DOCUMENT_MAX_AGE)),
          error_max_age=int(environ.get('ERROR_MAX_AGE', 0)),
          expiration_margin=int(environ.get('EXPIRATION_MARGIN', DEFAULT_EXPIRATION_MARGIN)),
          product=environ.get('PRODUCT', 'aws'),
          store_transformed=(
              parse_bool('STORE_TRANSFORMED_IMAGES', environ.get('STORE_TRANSFORMED_IMAGES', 'true'))
              and environ.get('TRANSFORMED_IMAGE_BUCKET', '') != ''),
          log_timing=parse_bool('LOG_TIMING', environ.get('LOG_TIMING', 'false')),
          store_timeout=float(environ.get('STORE_TIMEOUT', DEFAULT_STORE_TIMEOUT)),
          transform_timeout=float(environ.get('TRANSFORM_TIMEOUT', DEFAULT_TRANSFORM_TIMEOUT)),
          write_back_workers=int(environ.get('WRITE_BACK_WORKERS', 4)),
          write_back_timeout=float(environ.get('WRITE_BACK_TIMEOUT', DEFAULT_WRITE_BACK_TIMEOUT)))
    except KeyError as e:
      raise InvalidConfig(f'environment variable not found: {e}') from e
    except ValueError as e:
      raise InvalidConfig(f'invalid environment variable: {e}') from e
