from typing import Any

from aws_lambda_powertools.utilities.typing import LambdaContext

from imgvariant.imageprocessing import index as imageprocessing
from imgvariant.typing import HttpApiEvent, HttpApiResult, Request, ViewerRequestEvent
from imgvariant.urlrewrite import index as urlrewrite
from imgvariant.warmcache import index as warmcache

S3_EVENT_SOURCE = 'aws:s3'


def is_s3_event(event: dict[str, Any]) -> bool:
  records = event.get('Records')
  if not records:
    return False
  return records[0].get('eventSource') == S3_EVENT_SOURCE


def viewer_request_lambda_handler(
    event: ViewerRequestEvent,
    _: LambdaContext,
) -> Request:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  ret = urlrewrite.lambda_main(event)

  # # For debugging
  # print('return:')
  # print(json.dumps(ret))

  return ret


def image_processing_lambda_handler(
    event: dict[str, Any],
    _: LambdaContext,
) -> HttpApiResult:
  # Upload notifications share this function with the on-demand path.
  if is_s3_event(event):
    return warmcache.lambda_main(event)

  http_event: HttpApiEvent = event  # type: ignore
  return imageprocessing.lambda_main(http_event)


def warm_cache_lambda_handler(
    event: dict[str, Any],
    _: LambdaContext,
) -> HttpApiResult:
  return warmcache.lambda_main(event)
