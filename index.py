from aws_lambda_powertools.utilities.typing import LambdaContext

from imgoptim.router import index as router
from imgoptim.transform import index as transform
from imgoptim.typing import (
    FunctionUrlEvent,
    FunctionUrlResult,
    OriginRequestEvent,
    Request,
    ResponseResult
)


def origin_request_lambda_handler(
    event: OriginRequestEvent,
    _: LambdaContext,
) -> Request | ResponseResult:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  ret = router.lambda_main(event)

  # # For debugging
  # print('return:')
  # print(json.dumps(ret))

  return ret


def transform_lambda_handler(
    event: FunctionUrlEvent,
    _: LambdaContext,
) -> FunctionUrlResult:
  return transform.lambda_main(event)
