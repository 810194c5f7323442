import base64
import dataclasses
import datetime
import hashlib
import re
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from dateutil import parser, tz
from mypy_boto3_s3.client import S3Client
from mypy_boto3_s3.type_defs import GetObjectOutputTypeDef

from imgoptim.config import Config
from imgoptim.errors import AssetNotFound, StoreUnavailable
from imgoptim.logs import ContextLogger
from imgoptim.normalizer.index import NormalizedRequest
from imgoptim.typing import CacheKey

STORED_AT_METADATA = 'stored-at'
TTL_METADATA = 'ttl'

DEFAULT_CONTENT_TYPE = 'application/octet-stream'

# S3 answers 403 instead of 404 for a missing key when the reader lacks
# s3:ListBucket, so both count as a miss.
MISS_ERROR_CODES = ['403', '404', 'NoSuchKey', 'AccessDenied']

expiration_re = re.compile(r'\s*([\w-]+)="([^"]*)"(:?,|$)')


def get_now() -> datetime.datetime:
  # Return timezone-aware datetime
  return datetime.datetime.now(tz=tz.tzutc())


def format_timestamp(t: datetime.datetime) -> str:
  return t.astimezone(datetime.timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')


def parse_expiration(s: str) -> dict[str, str]:
  return {m.group(1): m.group(2) for m in expiration_re.finditer(s)}


def client_error_code(exception: ClientError) -> str:
  return exception.response.get('Error', {}).get('Code', '')


def is_not_found_client_error(exception: ClientError) -> bool:
  return client_error_code(exception) in MISS_ERROR_CODES


def bucket_domain(bucket: str, region: str) -> str:
  return f'{bucket}.s3.{region}.amazonaws.com'


def create_s3_client(config: Config) -> S3Client:
  # Timeouts are explicit and botocore must not retry on its own.
  return boto3.client(
      's3',
      region_name=config.region,
      config=BotoConfig(
          connect_timeout=config.store_timeout,
          read_timeout=config.store_timeout,
          retries={
              'total_max_attempts': 1,
              'mode': 'standard',
          }))


def read_body(res: GetObjectOutputTypeDef) -> bytes:
  chunks = []
  try:
    for chunk in res['Body'].iter_chunks():
      chunks.append(chunk)
  except BotoCoreError as e:
    raise StoreUnavailable(f'failed to read object body: {e}') from e
  finally:
    res['Body'].close()

  body = b''.join(chunks)
  if 'ContentLength' in res and res['ContentLength'] != len(body):
    raise StoreUnavailable(f'truncated object body: {len(body)}/{res["ContentLength"]}')
  return body


@dataclasses.dataclass(frozen=True)
class Resolved:
  payload: bytes
  content_type: str
  cache_control: str
  source: str
  timings: tuple[tuple[str, float], ...] = ()


@dataclasses.dataclass(frozen=True)
class CacheEntry:
  key: CacheKey
  payload: bytes
  content_type: str
  stored_at: datetime.datetime
  ttl: datetime.timedelta

  def expired(self, now: datetime.datetime) -> bool:
    return self.stored_at + self.ttl <= now


class CacheStore:
  """Transformed variants kept in an S3 bucket, one object per cache key."""

  def __init__(
      self,
      s3: S3Client,
      bucket: str,
      cache_control: str,
      expiration_margin: int,
  ):
    self.s3 = s3
    self.bucket = bucket
    self.cache_control = cache_control
    self.expiration_margin = datetime.timedelta(seconds=expiration_margin)

  def object_expired(
      self,
      log: ContextLogger,
      now: datetime.datetime,
      expiration: str,
  ) -> bool:
    d = parse_expiration(expiration)
    exp_str = d.get('expiry-date', None)
    if exp_str is None:
      log.log_warning('expiry-date not found', {'expiration': expiration})
      return False

    exp = parser.parse(exp_str)
    return exp < now + self.expiration_margin

  def get(
      self,
      log: ContextLogger,
      key: CacheKey,
      now: datetime.datetime,
  ) -> Optional[CacheEntry]:
    try:
      res = self.s3.get_object(Bucket=self.bucket, Key=key)
    except ClientError as e:
      if is_not_found_client_error(e):
        return None
      raise StoreUnavailable(f'cache store error: {client_error_code(e)}') from e
    except BotoCoreError as e:
      raise StoreUnavailable(f'cache store unreachable: {e}') from e

    if 'Expiration' in res and self.object_expired(log, now, res['Expiration']):
      log.log_debug('expired object found', {'expiration': res['Expiration']})
      res['Body'].close()
      return None

    metadata = res.get('Metadata', {})
    try:
      stored_at = parser.parse(metadata[STORED_AT_METADATA])
      ttl = datetime.timedelta(seconds=int(metadata[TTL_METADATA]))
    except (KeyError, ValueError, OverflowError) as e:
      log.log_warning('invalid cache metadata', {'reason': str(e), 'key': key})
      res['Body'].close()
      return None

    if stored_at.tzinfo is None:
      stored_at = stored_at.replace(tzinfo=tz.tzutc())

    entry = CacheEntry(
        key=key,
        payload=b'',
        content_type=res.get('ContentType', DEFAULT_CONTENT_TYPE),
        stored_at=stored_at,
        ttl=ttl)
    if entry.expired(now):
      log.log_debug('entry past ttl', {'stored_at': format_timestamp(stored_at)})
      res['Body'].close()
      return None

    return dataclasses.replace(entry, payload=read_body(res))

  def put(self, entry: CacheEntry) -> None:
    # A single PutObject with Content-MD5 is either stored whole or rejected,
    # so readers never see a partial entry.
    try:
      self.s3.put_object(
          Bucket=self.bucket,
          Key=entry.key,
          Body=entry.payload,
          ContentType=entry.content_type,
          ContentMD5=base64.b64encode(hashlib.md5(entry.payload).digest()).decode(),
          CacheControl=self.cache_control,
          Metadata={
              STORED_AT_METADATA: format_timestamp(entry.stored_at),
              TTL_METADATA: str(int(entry.ttl.total_seconds())),
          })
    except ClientError as e:
      raise StoreUnavailable(f'cache store write error: {client_error_code(e)}') from e
    except BotoCoreError as e:
      raise StoreUnavailable(f'cache store unreachable: {e}') from e


class StaticAssetOrigin:
  """Read-only originals served without transformation."""

  def __init__(self, s3: S3Client, bucket: str, cache_control: str):
    self.s3 = s3
    self.bucket = bucket
    self.cache_control = cache_control

  def fetch(self, log: ContextLogger, normalized: NormalizedRequest) -> Resolved:
    try:
      res = self.s3.get_object(Bucket=self.bucket, Key=normalized.asset_key)
    except ClientError as e:
      if is_not_found_client_error(e):
        raise AssetNotFound(f'no such asset: {normalized.asset_key}') from e
      raise StoreUnavailable(f'asset store error: {client_error_code(e)}') from e
    except BotoCoreError as e:
      raise StoreUnavailable(f'asset store unreachable: {e}') from e

    payload = read_body(res)
    log.log_debug('static asset read', {'size': len(payload)})

    return Resolved(
        payload=payload,
        content_type=res.get('ContentType', DEFAULT_CONTENT_TYPE),
        cache_control=self.cache_control,
        source='static')
