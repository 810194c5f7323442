import base64
import dataclasses
import datetime
import gzip
import os
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from http import HTTPStatus
from typing import Mapping, Optional
from urllib import parse

from imgoptim.access.index import ORIGIN_SECRET_HEADER, ClientGate, TrustedKeySet
from imgoptim.config import Config
from imgoptim.errors import EdgeError, InvalidConfig, MethodNotAllowed
from imgoptim.logs import ContextLogger, init_logging
from imgoptim.normalizer.index import NormalizedRequest, PathClass, PathClassTable, normalize
from imgoptim.resolver.index import OriginResolver
from imgoptim.store.index import (
    CacheStore,
    Resolved,
    StaticAssetOrigin,
    bucket_domain,
    create_s3_client,
    get_now
)
from imgoptim.transform.index import TransformClient
from imgoptim.typing import (
    Header,
    HttpPath,
    Origin,
    OriginRequestEvent,
    Request,
    ResponseResult
)

IMAGE_OPTIMIZATION_VERSION = 'v1.0'
CORS_MAX_AGE = 600

# Lambda@Edge limit for a response generated by an origin-request function.
MAX_GENERATED_RESPONSE = 1024 * 1024

S3_READ_TIMEOUT = 30
TRANSFORM_READ_TIMEOUT = 60

compressible_types = set([
    'image/svg+xml',
    'application/json',
    'application/javascript',
])

logger = init_logging(__name__)


class RequestState(Enum):
  RECEIVED = 0
  NORMALIZED = 1
  AUTHORIZED = 2
  DISPATCHED = 3
  RESPONDED = 4
  FORWARDED = 5


@dataclasses.dataclass(eq=True, frozen=True)
class ClassPolicy:
  cache_control: str
  headers: tuple[tuple[str, str], ...]
  compress: bool


def cors_headers() -> tuple[tuple[str, str], ...]:
  return (
      ('access-control-allow-origin', '*'),
      ('access-control-allow-methods', 'GET'),
      ('access-control-allow-headers', '*'),
      ('access-control-max-age', str(CORS_MAX_AGE)),
  )


def class_policies(config: Config) -> dict[PathClass, ClassPolicy]:
  return {
      PathClass.IMAGE: ClassPolicy(
          cache_control=config.cache_control_image,
          headers=cors_headers() + (
              # Marks responses produced by this system.
              (f'x-{config.product}-image-optimization', IMAGE_OPTIMIZATION_VERSION),
              ('vary', 'accept'),
          ),
          compress=True),
      PathClass.DOCUMENT: ClassPolicy(
          cache_control=config.cache_control_document,
          headers=cors_headers(),
          compress=False),
  }

def header_value(req: Request, name: str, default: str = '') -> str:
  if name not in req['headers'] or len(req['headers'][name]) == 0:
    return default
  return req['headers'][name][0]['value']


def accepts_gzip(req: Request) -> bool:
  return 'gzip' in header_value(req, 'accept-encoding').lower()


def is_compressible(content_type: str) -> bool:
  mime = content_type.split(';', 1)[0].strip().lower()
  return mime.startswith('text/') or mime in compressible_types


def response_size(res: ResponseResult) -> int:
  size = len(res.get('body', ''))
  for name, values in res.get('headers', {}).items():
    size += sum(len(name) + len(h['value']) for h in values)
  return size


def error_response(status: HTTPStatus, cache_control: str) -> ResponseResult:
  headers: dict[str, list[Header]] = {
      'cache-control': [{
          'value': cache_control,
      }],
      'content-type': [{
          'value': 'text/plain',
      }],
  }
  for name, value in cors_headers():
    headers[name] = [{'value': value}]

  return {
      'status': str(int(status)),
      'statusDescription': status.phrase,
      'headers': headers,
      'body': status.phrase,
      'bodyEncoding': 'text',
  }


def preflight_response() -> ResponseResult:
  return {
      'status': str(int(HTTPStatus.NO_CONTENT)),
      'statusDescription': HTTPStatus.NO_CONTENT.phrase,
      'headers': {name: [{'value': value}] for name, value in cors_headers()},
  }


def s3_origin(bucket: str, region: str) -> Origin:
  return {
      's3': {
          'customHeaders': {},
          'domainName': bucket_domain(bucket, region),
          'path': '',
          'readTimeout': S3_READ_TIMEOUT,
          'authMethod': 'origin-access-identity',
          'region': region,
      },
  }


def transform_origin(url: str, origin_secret: str) -> Origin:
  u = parse.urlsplit(url)
  https = u.scheme == 'https'
  return {
      'custom': {
          'customHeaders': {
              ORIGIN_SECRET_HEADER: [{
                  'key': ORIGIN_SECRET_HEADER,
                  'value': origin_secret,
              }],
          },
          'domainName': u.hostname or '',
          'path': u.path.rstrip('/'),
          'keepaliveTimeout': 5,
          'port': u.port or (443 if https else 80),
          'protocol': 'https' if https else 'http',
          'readTimeout': TRANSFORM_READ_TIMEOUT,
          'sslProtocols': ['TLSv1.2'],
      },
  }


def origin_domain(origin: Origin) -> str:
  if 's3' in origin:
    return origin['s3']['domainName']
  return origin['custom']['domainName']


@dataclasses.dataclass(frozen=True)
class OriginTable:
  """Where a request goes when its response is too large to generate."""
  originals: Origin
  transformed: Origin
  transform: Origin

  @classmethod
  def from_config(cls, config: Config) -> 'OriginTable':
    return cls(
        originals=s3_origin(config.original_bucket, config.region),
        transformed=s3_origin(config.transformed_bucket, config.region),
        transform=transform_origin(config.transform_url, config.origin_secret))


class EdgeRouter:
  """Front door: normalize, authorize, dispatch by path class, and respond.

  Each request walks Received, Normalized, Authorized, Dispatched and then
  Responded, or Forwarded when the response would exceed what an
  origin-request function may generate. It stops in a rejected/failed state
  with a minimal response otherwise. Nothing is retried here.
  """
  instances: dict[Config, 'EdgeRouter'] = {}

  def __init__(
      self,
      log: ContextLogger,
      table: PathClassTable,
      policies: dict[PathClass, ClassPolicy],
      gate: ClientGate,
      resolver: OriginResolver,
      static_origin: StaticAssetOrigin,
      origins: OriginTable,
      error_cache_control: str,
      log_timing: bool,
  ):
    self.log = log
    self.table = table
    self.policies = policies
    self.gate = gate
    self.resolver = resolver
    self.static_origin = static_origin
    self.origins = origins
    self.error_cache_control = error_cache_control
    self.log_timing = log_timing

  @classmethod
  def from_config(cls, log: ContextLogger, config: Config) -> 'EdgeRouter':
    if config not in cls.instances:
      policies = class_policies(config)
      s3 = create_s3_client(config)
      store = (
          CacheStore(
              s3=s3,
              bucket=config.transformed_bucket,
              cache_control=policies[PathClass.IMAGE].cache_control,
              expiration_margin=config.expiration_margin) if config.store_transformed else None)
      cls.instances[config] = cls(
          log=log,
          table=PathClassTable.from_config(config.path_classes),
          policies=policies,
          gate=ClientGate(TrustedKeySet.from_config(config.trusted_keys)),
          resolver=OriginResolver(
              store=store,
              transform=TransformClient(
                  config.transform_url, config.origin_secret, timeout=config.transform_timeout),
              executor=ThreadPoolExecutor(
                  max_workers=config.write_back_workers, thread_name_prefix='write-back'),
              cache_control=policies[PathClass.IMAGE].cache_control,
              store_ttl=config.store_ttl),
          static_origin=StaticAssetOrigin(
              s3=s3,
              bucket=config.original_bucket,
              cache_control=policies[PathClass.DOCUMENT].cache_control),
          origins=OriginTable.from_config(config),
          error_cache_control=config.cache_control_error,
          log_timing=config.log_timing)

    return cls.instances[config]

  def respond(self, req: Request, policy: ClassPolicy, resolved: Resolved) -> ResponseResult:
    headers: dict[str, list[Header]] = {
        'content-type': [{
            'value': resolved.content_type,
        }],
        'cache-control': [{
            'value': resolved.cache_control,
        }],
    }
    for name, value in policy.headers:
      headers[name] = [{'value': value}]

    body = resolved.payload
    if policy.compress and accepts_gzip(req) and is_compressible(resolved.content_type):
      body = gzip.compress(body)
      headers['content-encoding'] = [{'value': 'gzip'}]

    if self.log_timing and len(resolved.timings) != 0:
      headers['server-timing'] = [{
          'value': ', '.join(f'{name};dur={ms:.1f}' for name, ms in resolved.timings),
      }]

    res: ResponseResult = {
        'status': str(int(HTTPStatus.OK)),
        'statusDescription': HTTPStatus.OK.phrase,
        'headers': headers,
    }
    if req['method'] != 'HEAD':
      res['body'] = base64.b64encode(body).decode()
      res['bodyEncoding'] = 'base64'
    return res

  def forward(self, req: Request, normalized: NormalizedRequest, resolved: Resolved) -> Request:
    match resolved.source:
      case 'static':
        origin = self.origins.originals
        uri = HttpPath('/' + parse.quote(normalized.asset_key))
      case 'cache':
        origin = self.origins.transformed
        uri = HttpPath('/' + parse.quote(normalized.cache_key))
      case 'transform':
        # The write-back may not have landed yet, so the variant is produced again.
        origin = self.origins.transform
        uri = HttpPath('/' + parse.quote(normalized.cache_key))
      case _:
        raise Exception('system error')

    headers = dict(req['headers'])
    headers['host'] = [{'key': 'Host', 'value': origin_domain(origin)}]

    return {
        'method': req['method'],
        'uri': uri,
        'querystring': '',
        'headers': headers,
        'clientIp': req['clientIp'],
        'origin': origin,
    }

  def dispatch(
      self,
      log: ContextLogger,
      req: Request,
      now: datetime.datetime,
      trail: list[RequestState],
  ) -> tuple[Optional[Resolved], Request | ResponseResult]:
    if req['method'] not in ('GET', 'HEAD', 'OPTIONS'):
      raise MethodNotAllowed(f'method not allowed: {req["method"]}')

    normalized = normalize(
        self.table, req['uri'], req['querystring'], header_value(req, 'accept'))
    trail.append(RequestState.NORMALIZED)

    if req['method'] == 'OPTIONS':
      # Preflights carry no credentials.
      if header_value(req, 'access-control-request-method') == '':
        raise MethodNotAllowed('OPTIONS without Access-Control-Request-Method')
      trail.append(RequestState.RESPONDED)
      return None, preflight_response()

    self.gate.check(log, req, now)
    trail.append(RequestState.AUTHORIZED)

    log = log.bind(path_class=normalized.path_class.name.lower())
    match normalized.path_class:
      case PathClass.IMAGE:
        resolved = self.resolver.resolve(log, normalized, now)
      case PathClass.DOCUMENT:
        resolved = self.static_origin.fetch(log, normalized)
      case _:
        raise Exception('system error')
    trail.append(RequestState.DISPATCHED)

    res = self.respond(req, self.policies[normalized.path_class], resolved)
    size = response_size(res)
    if size > MAX_GENERATED_RESPONSE:
      log.log_debug('response too large to generate', {'size': size, 'source': resolved.source})
      trail.append(RequestState.FORWARDED)
      return resolved, self.forward(req, normalized, resolved)

    trail.append(RequestState.RESPONDED)
    return resolved, res

  def handle(
      self,
      req: Request,
      now: Optional[datetime.datetime] = None,
  ) -> Request | ResponseResult:
    if now is None:
      now = get_now()
    log = self.log.bind(path=req['uri'])
    trail = [RequestState.RECEIVED]

    try:
      resolved, res = self.dispatch(log, req, now, trail)
    except EdgeError as e:
      if e.status < 500:
        log.log_info('rejected', {
            'state': f'Rejected({type(e).__name__})',
            'after': trail[-1].name,
            'status': int(e.status),
            'reason': str(e),
        })
      else:
        log.log_error('failed', {
            'state': f'Failed({type(e).__name__})',
            'after': trail[-1].name,
            'status': int(e.status),
            'reason': str(e),
        })
      return error_response(e.status, self.error_cache_control)
    except Exception as e:
      log.log_error('error during handle()', {'after': trail[-1].name, 'reason': repr(e)})
      return error_response(HTTPStatus.INTERNAL_SERVER_ERROR, self.error_cache_control)

    log.log_debug('done', {
        'state': trail[-1].name,
        'source': 'preflight' if resolved is None else resolved.source,
    })
    return res


def lambda_main(
    event: OriginRequestEvent,
    environ: Mapping[str, str] = os.environ,
) -> Request | ResponseResult:
  req = event['Records'][0]['cf']['request']
  log = ContextLogger(logger)

  try:
    config = Config.from_env(environ)
    router = EdgeRouter.from_config(log, config)
  except InvalidConfig as e:
    log.log_error('invalid configuration', {'reason': str(e)})
    return error_response(HTTPStatus.INTERNAL_SERVER_ERROR, 'no-store')

  res = router.handle(req)

  # Lambda freezes the environment once the handler returns.
  router.resolver.drain(log.bind(path=req['uri']), config.write_back_timeout)

  return res
