from http import HTTPStatus


class InvalidConfig(Exception):
  pass


class EdgeError(Exception):
  """Failure that ends a request with a minimal response of ``status``.

  The message is for logs only and is never sent to the client.
  """
  status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR


class BadPath(EdgeError):
  status = HTTPStatus.BAD_REQUEST


class Unauthorized(EdgeError):
  status = HTTPStatus.FORBIDDEN


class AssetNotFound(EdgeError):
  status = HTTPStatus.NOT_FOUND


class OriginSecretMismatch(EdgeError):
  status = HTTPStatus.BAD_GATEWAY


class StoreUnavailable(EdgeError):
  status = HTTPStatus.SERVICE_UNAVAILABLE


class TransformFailure(EdgeError):
  status = HTTPStatus.BAD_GATEWAY


class MethodNotAllowed(EdgeError):
  status = HTTPStatus.METHOD_NOT_ALLOWED
