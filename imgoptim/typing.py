from typing import Literal, NewType, NotRequired, TypedDict

HttpPath = NewType('HttpPath', str)
S3Key = NewType('S3Key', str)
CacheKey = NewType('CacheKey', str)
OriginSecret = NewType('OriginSecret', str)


class Header(TypedDict):
  key: NotRequired[str]
  value: str


class S3Origin(TypedDict):
  customHeaders: dict[str, list[Header]]
  domainName: str
  path: str
  readTimeout: NotRequired[int]
  responseCompletionTimeout: NotRequired[int]
  authMethod: Literal['origin-access-identity', 'none']
  region: NotRequired[str]


class CustomOrigin(TypedDict):
  customHeaders: dict[str, list[Header]]
  domainName: str
  path: str
  keepaliveTimeout: int
  port: int
  protocol: Literal['http', 'https']
  readTimeout: int
  responseCompletionTimeout: NotRequired[int]
  sslProtocols: list[Literal['TLSv1.2', 'TLSv1.1', 'TLSv1', 'SSLv3']]


class Origin(TypedDict):
  custom: NotRequired[CustomOrigin]
  s3: NotRequired[S3Origin]


class Request(TypedDict):
  method: Literal['GET', 'HEAD', 'OPTIONS', 'TRACE', 'PUT', 'DELETE', 'POST', 'PATCH', 'CONNECT']
  uri: HttpPath
  querystring: str
  headers: dict[str, list[Header]]
  clientIp: str
  origin: NotRequired[Origin]


class OriginRequestConfig(TypedDict):
  distributionDomainName: str
  distributionId: str
  eventType: Literal['origin-request']
  requestId: str


class OriginRequestRecord(TypedDict):
  config: OriginRequestConfig
  request: Request


class OriginRequestRecordContainer(TypedDict):
  cf: OriginRequestRecord


class OriginRequestEvent(TypedDict):
  Records: list[OriginRequestRecordContainer]


class ResponseResult(TypedDict):
  body: NotRequired[str]
  bodyEncoding: NotRequired[Literal['text', 'base64']]
  headers: NotRequired[dict[str, list[Header]]]
  status: str
  statusDescription: NotRequired[str]


class FunctionUrlHttp(TypedDict):
  method: str
  path: str
  sourceIp: NotRequired[str]


class FunctionUrlRequestContext(TypedDict):
  http: FunctionUrlHttp
  requestId: NotRequired[str]


class FunctionUrlEvent(TypedDict):
  rawPath: str
  rawQueryString: NotRequired[str]
  headers: dict[str, str]
  requestContext: FunctionUrlRequestContext


class FunctionUrlResult(TypedDict):
  statusCode: int
  headers: NotRequired[dict[str, str]]
  body: NotRequired[str]
  isBase64Encoded: NotRequired[bool]
