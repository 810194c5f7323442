import base64
import dataclasses
import os
import time
from http import HTTPStatus
from typing import Any, Mapping, Optional
from urllib import parse

import httpx
from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_s3.client import S3Client
from pyvips import Error as VipsError  # type: ignore
from pyvips import Image, Interesting  # type: ignore

from imgoptim.access.index import ORIGIN_SECRET_HEADER, verify_origin_secret
from imgoptim.config import Config
from imgoptim.errors import (
    AssetNotFound,
    InvalidConfig,
    OriginSecretMismatch,
    StoreUnavailable,
    TransformFailure
)
from imgoptim.logs import ContextLogger, init_logging
from imgoptim.normalizer.index import Operations, key_from_path
from imgoptim.store.index import (
    DEFAULT_CONTENT_TYPE,
    create_s3_client,
    is_not_found_client_error,
    read_body
)
from imgoptim.typing import (
    CacheKey,
    FunctionUrlEvent,
    FunctionUrlResult,
    HttpPath,
    OriginSecret,
    S3Key
)

DEFAULT_QUALITY = 80

# Larger than any image libvips will be asked to produce.
UNBOUNDED = 10_000_000

format_extensions = {
    'jpeg': '.jpg',
    'webp': '.webp',
    'avif': '.avif',
    'png': '.png',
    'gif': '.gif',
}

format_mimes = {
    'jpeg': 'image/jpeg',
    'webp': 'image/webp',
    'avif': 'image/avif',
    'png': 'image/png',
    'gif': 'image/gif',
}

quality_formats = set(['jpeg', 'webp', 'avif'])

logger = init_logging(__name__)


@dataclasses.dataclass(frozen=True)
class TransformResult:
  payload: bytes
  content_type: str


class TransformClient:
  """Calls the Transform Service for one cache key, authenticated by the origin secret."""

  def __init__(
      self,
      base_url: str,
      origin_secret: OriginSecret,
      client: httpx.Client | None = None,
      timeout: float = 60.0,
  ):
    self.base_url = base_url.rstrip('/')
    self.origin_secret = origin_secret
    self._client = client or httpx.Client(timeout=httpx.Timeout(timeout, connect=5.0))

  def asset_url(self, key: CacheKey) -> str:
    return f'{self.base_url}/{parse.quote(key)}'

  def fetch(self, log: ContextLogger, key: CacheKey) -> TransformResult:
    try:
      res = self._client.get(self.asset_url(key), headers={ORIGIN_SECRET_HEADER: self.origin_secret})
    except httpx.TimeoutException as e:
      raise TransformFailure('transform service timed out') from e
    except httpx.HTTPError as e:
      raise TransformFailure(f'transform service unreachable: {e}') from e

    match res.status_code:
      case HTTPStatus.OK:
        if len(res.content) == 0:
          raise TransformFailure('transform service returned an empty body')
        return TransformResult(
            payload=res.content,
            content_type=res.headers.get('content-type', DEFAULT_CONTENT_TYPE))
      case HTTPStatus.FORBIDDEN:
        log.log_error('origin secret rejected by transform service', {
            'status': res.status_code,
            'alarm': True,
        })
        raise OriginSecretMismatch('transform service rejected the origin secret')
      case HTTPStatus.NOT_FOUND:
        raise AssetNotFound(f'transform service has no original for: {key}')
      case _:
        raise TransformFailure(f'transform service failed: {res.status_code}')


def split_asset_path(path: str) -> Optional[tuple[S3Key, Operations]]:
  original, sep, ops_str = path.rpartition('/')
  if sep == '' or original in ('', '/'):
    return None

  operations = Operations.from_key(parse.unquote(ops_str))
  if operations is None:
    return None

  return key_from_path(HttpPath(original)), operations


def format_from_content_type(content_type: str) -> Optional[str]:
  for name, mime in format_mimes.items():
    if content_type == mime:
      return name
  return None


def transform_image(data: bytes, content_type: str, operations: Operations) -> TransformResult:
  if operations == Operations():
    return TransformResult(payload=data, content_type=content_type)

  if operations.width is None and operations.height is None:
    image = Image.new_from_buffer(data, '')
  else:
    options: dict[str, Any] = {
        'height': operations.height or UNBOUNDED,
        'size': 'down',
    }
    if operations.width is not None and operations.height is not None:
      options['crop'] = Interesting.CENTRE
    image = Image.thumbnail_buffer(data, operations.width or UNBOUNDED, **options)

  fmt = operations.format or format_from_content_type(content_type) or 'jpeg'
  if fmt in quality_formats:
    payload = image.write_to_buffer(
        format_extensions[fmt], Q=operations.quality or DEFAULT_QUALITY)
  else:
    payload = image.write_to_buffer(format_extensions[fmt])

  return TransformResult(payload=payload, content_type=format_mimes[fmt])


def error_result(status: HTTPStatus) -> FunctionUrlResult:
  return {
      'statusCode': int(status),
      'headers': {
          'content-type': 'text/plain',
          'cache-control': 'no-store',
      },
      'body': status.phrase,
  }


class TransformService:
  instances: dict[Config, 'TransformService'] = {}

  def __init__(
      self,
      log: ContextLogger,
      s3: S3Client,
      original_bucket: str,
      origin_secret: OriginSecret,
      cache_control: str,
  ):
    self.log = log
    self.s3 = s3
    self.original_bucket = original_bucket
    self.origin_secret = origin_secret
    self.cache_control = cache_control

  @classmethod
  def from_config(cls, log: ContextLogger, config: Config) -> 'TransformService':
    if config not in cls.instances:
      cls.instances[config] = cls(
          log=log,
          s3=create_s3_client(config),
          original_bucket=config.original_bucket,
          origin_secret=config.origin_secret,
          cache_control=config.cache_control_image)
    return cls.instances[config]

  def get_original(self, key: S3Key) -> tuple[bytes, str]:
    try:
      res = self.s3.get_object(Bucket=self.original_bucket, Key=key)
    except ClientError as e:
      if is_not_found_client_error(e):
        raise AssetNotFound(f'no original: {key}') from e
      raise StoreUnavailable(f'original store error: {e}') from e
    except BotoCoreError as e:
      raise StoreUnavailable(f'original store unreachable: {e}') from e

    return read_body(res), res.get('ContentType', DEFAULT_CONTENT_TYPE)

  def handle(self, event: FunctionUrlEvent) -> FunctionUrlResult:
    path = event['rawPath']
    log = self.log.bind(path=path)

    if not verify_origin_secret(self.origin_secret, event['headers'].get(ORIGIN_SECRET_HEADER)):
      log.log_error('origin secret mismatch', {
          'secret_present': ORIGIN_SECRET_HEADER in event['headers'],
          'alarm': True,
      })
      return error_result(HTTPStatus.FORBIDDEN)

    if event['requestContext']['http']['method'] != 'GET':
      return error_result(HTTPStatus.METHOD_NOT_ALLOWED)

    parsed = split_asset_path(path)
    if parsed is None:
      log.log_warning('invalid asset path', {})
      return error_result(HTTPStatus.BAD_REQUEST)
    key, operations = parsed

    try:
      data, content_type = self.get_original(key)
    except AssetNotFound:
      return error_result(HTTPStatus.NOT_FOUND)
    except StoreUnavailable as e:
      log.log_error('failed to read original', {'reason': str(e), 'key': key})
      return error_result(HTTPStatus.INTERNAL_SERVER_ERROR)

    start_ns = time.time_ns()
    try:
      result = transform_image(data, content_type, operations)
    except VipsError as e:
      log.log_warning('failed to transform', {'reason': str(e), 'key': key})
      return error_result(HTTPStatus.INTERNAL_SERVER_ERROR)
    vips_us = (time.time_ns() - start_ns) // 1000

    log.log_debug('transformed', {
        'operations': operations.to_key(),
        'content_type': result.content_type,
        'img_size': len(result.payload),
        'vips_us': vips_us,
    })

    return {
        'statusCode': int(HTTPStatus.OK),
        'headers': {
            'content-type': result.content_type,
            'cache-control': self.cache_control,
        },
        'body': base64.b64encode(result.payload).decode(),
        'isBase64Encoded': True,
    }


def lambda_main(event: FunctionUrlEvent, environ: Mapping[str, str] = os.environ) -> FunctionUrlResult:
  log = ContextLogger(logger)
  try:
    config = Config.from_env(environ)
  except InvalidConfig as e:
    log.log_error('invalid configuration', {'reason': str(e)})
    return error_result(HTTPStatus.INTERNAL_SERVER_ERROR)

  return TransformService.from_config(log, config).handle(event)
