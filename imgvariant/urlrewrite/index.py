import copy
import dataclasses
import logging
import os
from typing import Mapping, Optional
from urllib import parse

from pathspec import PathSpec
from pathspec.patterns.gitwildmatch import GitWildMatchPattern

from imgvariant.config import Settings
from imgvariant.jsonlog import ContextLogger, init_logging
from imgvariant.operations import AcceptHeader, Operations, parse_width
from imgvariant.typing import HttpPath, Request, ViewerRequestEvent

WIDTH_PARAM = 'width'

logger = init_logging(__name__)


@dataclasses.dataclass(frozen=True)
class Rewritten:
  request: Request
  key: str
  precomputed: bool


@dataclasses.dataclass(frozen=True)
class PassThrough:
  request: Request
  reason: str


def get_header_or(req: Request, name: str, default: str = '') -> str:
  headers = req.get('headers', {})
  if name not in headers or len(headers[name]) == 0:
    return default
  return headers[name][0].get('value', default)


def split_trailing_operations(path: HttpPath, max_width: int) -> tuple[str, Optional[Operations]]:
  head, sep, last = path.rpartition('/')
  if sep == '' or head == '' or not Operations.looks_like(last):
    return path, None
  return head, Operations.from_str(last, max_width)


class UrlRewriter(ContextLogger):
  instances: dict[Settings, 'UrlRewriter'] = {}

  def __init__(self, log: logging.Logger, settings: Settings):
    super().__init__(log)
    self.settings = settings
    self.bypass_path_spec = (
        None if len(settings.bypass_patterns) == 0 else PathSpec.from_lines(
            GitWildMatchPattern, settings.bypass_patterns))

  @classmethod
  def from_env(cls, log: logging.Logger, env: Mapping[str, str]) -> 'UrlRewriter':
    settings = Settings.from_env(env)
    if settings not in cls.instances:
      cls.instances[settings] = cls(log, settings)
    return cls.instances[settings]

  def find_width(self, qs: dict[str, list[str]]) -> Optional[int]:
    # Sorted so that `Width` and `width` resolve the same way in any order.
    for name in sorted(qs):
      if name.lower() != WIDTH_PARAM:
        continue
      for value in qs[name]:
        width = parse_width(value, self.settings.max_width)
        if width is not None:
          return width
    return None

  def rewrite(self, req: Request) -> Rewritten | PassThrough:
    path = req['uri']
    if self.bypass_path_spec is not None and self.bypass_path_spec.match_file(path):
      return PassThrough(request=req, reason='bypassed')

    source, path_ops = split_trailing_operations(path, self.settings.max_width)

    accept = AcceptHeader.from_str(get_header_or(req, 'accept'))
    width = self.find_width(parse.parse_qs(req['querystring'], keep_blank_values=True))
    if width is None and path_ops is not None:
      width = path_ops.width

    ops = Operations(format=accept.preferred(), width=width)
    uri = HttpPath(f'{source}/{ops.to_str()}')

    rewritten = copy.deepcopy(req)
    rewritten['uri'] = uri
    rewritten['querystring'] = ''

    return Rewritten(
        request=rewritten, key=uri, precomputed=self.settings.is_common_width(ops.width))

  def normalize(self, req: Request) -> Rewritten | PassThrough:
    try:
      return self.rewrite(req)
    except Exception as e:
      self.log_error('error during normalize()', {'reason': str(e)})
      return PassThrough(request=req, reason='error occurred')


def lambda_main(event: ViewerRequestEvent) -> Request:
  req = event['Records'][0]['cf']['request']

  try:
    rewriter = UrlRewriter.from_env(logger, os.environ)
  except ValueError as e:
    logger.warning({
        'message': 'invalid environment variable',
        'reason': str(e),
    })
    return req

  rewriter.set_log_context(
      path=req.get('uri', ''),
      qstr=req.get('querystring', ''),
      accept_header=get_header_or(req, 'accept'))
  result = rewriter.normalize(req)

  match result:
    case Rewritten():
      rewriter.log_debug('rewritten', {'uri': result.key, 'precomputed': result.precomputed})
    case PassThrough():
      rewriter.log_debug('passed through', {'reason': result.reason})

  return result.request
