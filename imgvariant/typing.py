from typing import Literal, NewType, NotRequired, ReadOnly, TypedDict

HttpPath = NewType('HttpPath', str)
S3Key = NewType('S3Key', str)
VariantKey = NewType('VariantKey', str)

Method = Literal['GET', 'HEAD', 'OPTIONS', 'TRACE', 'PUT', 'DELETE', 'POST', 'PATCH', 'CONNECT']


class Header(TypedDict):
  key: NotRequired[ReadOnly[str]]
  value: str


class Request(TypedDict):
  method: ReadOnly[Method]
  uri: HttpPath
  querystring: str
  headers: dict[str, list[Header]]
  clientIp: ReadOnly[str]


class ViewerRequestConfig(TypedDict):
  distributionDomainName: ReadOnly[str]
  distributionId: ReadOnly[str]
  eventType: ReadOnly[Literal['viewer-request']]
  requestId: ReadOnly[str]


class ViewerRequestRecord(TypedDict):
  config: ReadOnly[ViewerRequestConfig]
  request: Request


class ViewerRequestRecordContainer(TypedDict):
  cf: ViewerRequestRecord


class ViewerRequestEvent(TypedDict):
  Records: list[ViewerRequestRecordContainer]


class HttpDescription(TypedDict):
  method: ReadOnly[Method]
  path: HttpPath
  protocol: NotRequired[str]
  sourceIp: NotRequired[str]
  userAgent: NotRequired[str]


class RequestContext(TypedDict):
  http: HttpDescription
  requestId: NotRequired[ReadOnly[str]]


class HttpApiEvent(TypedDict):
  rawPath: NotRequired[str]
  headers: NotRequired[dict[str, str]]
  requestContext: RequestContext


class HttpApiResult(TypedDict):
  statusCode: int
  headers: NotRequired[dict[str, str]]
  body: NotRequired[str]
  isBase64Encoded: NotRequired[bool]
