import base64
import datetime
import logging
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Generator, Optional
from urllib import parse

import httpx
import pytest
from botocore.signers import CloudFrontSigner
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from dateutil import tz

from imgoptim.errors import AssetNotFound
from imgoptim.logs import ContextLogger, MyJsonFormatter
from imgoptim.normalizer.index import NormalizedRequest
from imgoptim.store.index import CacheEntry, Resolved
from imgoptim.typing import CacheKey, Header, OriginSecret, Request

HOST = 'media.example.com'
KEY_PAIR_ID = 'K2JCJMDEHXQW5F'
ORIGIN_SECRET = OriginSecret('3f2c5d8e9a1b4c7d6e0f1a2b3c4d5e6f')
NOW = datetime.datetime(2026, 10, 18, 12, 0, 0, tzinfo=tz.tzutc())


def cf_b64encode(data: bytes) -> str:
  return base64.b64encode(data).decode().replace('+', '-').replace('=', '_').replace('/', '~')


def make_request(
    uri: str,
    querystring: str = '',
    headers: Optional[dict[str, str]] = None,
    method: Any = 'GET',
    client_ip: str = '203.0.113.10',
) -> Request:
  hs: dict[str, list[Header]] = {'host': [{'key': 'Host', 'value': HOST}]}
  for name, value in (headers or {}).items():
    hs[name.lower()] = [{'key': name, 'value': value}]

  return {
      'method': method,
      'uri': uri,  # type: ignore
      'querystring': querystring,
      'headers': hs,
      'clientIp': client_ip,
  }


@pytest.fixture(scope='session')
def private_key() -> RSAPrivateKey:
  return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope='session')
def public_pem(private_key: RSAPrivateKey) -> str:
  return private_key.public_key().public_bytes(
      encoding=serialization.Encoding.PEM,
      format=serialization.PublicFormat.SubjectPublicKeyInfo).decode()


@pytest.fixture(scope='session')
def rsa_signer(private_key: RSAPrivateKey) -> Callable[[bytes], bytes]:

  def fn(message: bytes) -> bytes:
    return private_key.sign(message, padding.PKCS1v15(), hashes.SHA1())

  return fn


@pytest.fixture(scope='session')
def signer(rsa_signer: Callable[[bytes], bytes]) -> CloudFrontSigner:
  return CloudFrontSigner(KEY_PAIR_ID, rsa_signer)


@pytest.fixture
def signed_request(signer: CloudFrontSigner) -> Callable[..., Request]:
  """Builds a request carrying a canned-policy signed URL."""

  def fn(
      uri: str,
      querystring: str = '',
      expires: datetime.datetime = NOW + datetime.timedelta(hours=1),
      **kwargs: Any,
  ) -> Request:
    url = f'https://{HOST}{uri}' + ('' if querystring == '' else f'?{querystring}')
    signed = parse.urlsplit(signer.generate_presigned_url(url, date_less_than=expires))
    return make_request(signed.path, signed.query, **kwargs)

  return fn


@pytest.fixture
def logger() -> ContextLogger:
  log = logging.getLogger('imgoptim.test')
  if len(log.handlers) == 0:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(MyJsonFormatter())
    log_handler.setLevel(logging.DEBUG)
    log_handler.setStream(sys.stderr)
    log.addHandler(log_handler)
  log.setLevel(logging.DEBUG)
  return ContextLogger(log)


@pytest.fixture
def executor() -> Generator[ThreadPoolExecutor, None, None]:
  executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix='test-write-back')
  yield executor
  executor.shutdown(wait=True)


class FakeCacheStore:
  """In-memory cache store with the same miss/failure contract as CacheStore."""

  def __init__(self) -> None:
    self.entries: dict[CacheKey, CacheEntry] = {}
    self.gets: list[CacheKey] = []
    self.puts: list[CacheEntry] = []
    self.get_error: Optional[Exception] = None
    self.put_error: Optional[Exception] = None
    self.put_gate: Optional[threading.Event] = None

  def get(self, log: ContextLogger, key: CacheKey, now: datetime.datetime) -> Optional[CacheEntry]:
    self.gets.append(key)
    if self.get_error is not None:
      raise self.get_error
    entry = self.entries.get(key)
    if entry is None or entry.expired(now):
      return None
    return entry

  def put(self, entry: CacheEntry) -> None:
    if self.put_gate is not None:
      self.put_gate.wait()
    if self.put_error is not None:
      raise self.put_error
    self.puts.append(entry)
    self.entries[entry.key] = entry


class FakeStaticOrigin:

  def __init__(self, cache_control: str) -> None:
    self.cache_control = cache_control
    self.assets: dict[str, tuple[bytes, str]] = {}
    self.fetches: list[str] = []

  def fetch(self, log: ContextLogger, normalized: NormalizedRequest) -> Resolved:
    self.fetches.append(normalized.asset_key)
    if normalized.asset_key not in self.assets:
      raise AssetNotFound(normalized.asset_key)
    payload, content_type = self.assets[normalized.asset_key]
    return Resolved(
        payload=payload,
        content_type=content_type,
        cache_control=self.cache_control,
        source='static')


class TransformServiceTransport(httpx.BaseTransport):
  """Stands in for the Transform Service, including its origin secret check."""

  def __init__(self, secret: str, content_type: str = 'image/webp') -> None:
    self.secret = secret
    self.content_type = content_type
    self.requests: list[httpx.Request] = []
    self.error: Optional[Exception] = None
    self.status: Optional[int] = None

  def handle_request(self, request: httpx.Request) -> httpx.Response:
    self.requests.append(request)
    if self.error is not None:
      raise self.error
    if request.headers.get('x-origin-secret-header') != self.secret:
      return httpx.Response(403, text='Request unauthorized')
    if self.status is not None:
      return httpx.Response(self.status, text='error')
    return httpx.Response(
        200,
        content=b'variant:' + request.url.path.encode(),
        headers={'content-type': self.content_type})


@pytest.fixture
def cache_store() -> FakeCacheStore:
  return FakeCacheStore()


@pytest.fixture
def transform_transport() -> TransformServiceTransport:
  return TransformServiceTransport(ORIGIN_SECRET)


