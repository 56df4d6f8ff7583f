import copy
from logging import Logger
from typing import Any, Optional

import pytest

from imgvariant.config import Settings
from imgvariant.typing import HttpPath, Request, ViewerRequestEvent

from . import index
from .index import PassThrough, Rewritten, UrlRewriter

CHROME_ACCEPT_HEADER = 'image/avif,image/webp,image/apng,image/*,*/*;q=0.8'
WEBP_ACCEPT_HEADER = 'image/webp,image/*,*/*;q=0.8'
OLD_SAFARI_ACCEPT_HEADER = 'image/png,image/svg+xml,image/*;q=0.8,video/*;q=0.8,*/*;q=0.5'

IMAGE_PATH = '/images/a.jpg'


def new_request(uri: str, querystring: str = '', accept: Optional[str] = None) -> Request:
  headers = {}
  if accept is not None:
    headers['accept'] = [{'key': 'Accept', 'value': accept}]

  return {
      'method': 'GET',
      'uri': HttpPath(uri),
      'querystring': querystring,
      'headers': headers,
      'clientIp': '203.0.113.10',
  }


def new_event(req: Request) -> ViewerRequestEvent:
  return {
      'Records': [{
          'cf': {
              'config': {
                  'distributionDomainName': 'd111111abcdef8.cloudfront.net',
                  'distributionId': 'EDFDVBD6EXAMPLE',
                  'eventType': 'viewer-request',
                  'requestId': '4TyzHTaYWb1GX1qTfsHhEqV6HUDd_BzoBZnwfnvQc_1oF26ClkoUSEQ==',
              },
              'request': req,
          },
      }],
  }


@pytest.fixture
def rewriter(logger: Logger) -> UrlRewriter:
  return UrlRewriter(logger, Settings(max_width=4000, common_widths=(640, 1200)))


@pytest.mark.parametrize(
    'uri, querystring, accept, expected',
    [
        (IMAGE_PATH, '', CHROME_ACCEPT_HEADER, '/images/a.jpg/format=avif'),
        (IMAGE_PATH, '', WEBP_ACCEPT_HEADER, '/images/a.jpg/format=webp'),
        (IMAGE_PATH, '', OLD_SAFARI_ACCEPT_HEADER, '/images/a.jpg/format=jpeg'),
        (IMAGE_PATH, '', None, '/images/a.jpg/format=jpeg'),
        (IMAGE_PATH, 'width=300', WEBP_ACCEPT_HEADER, '/images/a.jpg/format=webp,width=300'),
        (IMAGE_PATH, 'width=5000', CHROME_ACCEPT_HEADER, '/images/a.jpg/format=avif,width=4000'),
        (IMAGE_PATH, 'width=0', CHROME_ACCEPT_HEADER, '/images/a.jpg/format=avif'),
        (IMAGE_PATH, 'width=-10', CHROME_ACCEPT_HEADER, '/images/a.jpg/format=avif'),
        (IMAGE_PATH, 'width=wide', CHROME_ACCEPT_HEADER, '/images/a.jpg/format=avif'),
        (IMAGE_PATH, 'width=', CHROME_ACCEPT_HEADER, '/images/a.jpg/format=avif'),
        (IMAGE_PATH, 'WIDTH=300', CHROME_ACCEPT_HEADER, '/images/a.jpg/format=avif,width=300'),
        (IMAGE_PATH, 'utm_source=x', CHROME_ACCEPT_HEADER, '/images/a.jpg/format=avif'),
        (
            IMAGE_PATH, 'format=png&quality=10&width=300', CHROME_ACCEPT_HEADER,
            '/images/a.jpg/format=avif,width=300'),
        (
            '/images/a.jpg/format=webp,width=300', '', CHROME_ACCEPT_HEADER,
            '/images/a.jpg/format=avif,width=300'),
        (
            '/images/a.jpg/width=300', 'width=200', CHROME_ACCEPT_HEADER,
            '/images/a.jpg/format=avif,width=200'),
        ('/images/a.jpg/original', '', CHROME_ACCEPT_HEADER, '/images/a.jpg/format=avif'),
    ],
    ids=[
        'no_query/avif',
        'no_query/webp',
        'no_query/old_safari',
        'no_query/no_accept',
        'width',
        'width/clamped',
        'width/zero',
        'width/negative',
        'width/text',
        'width/blank',
        'width/upper_case',
        'unrelated',
        'unrelated_with_width',
        'trailing_operations',
        'trailing_operations/query_wins',
        'trailing_original',
    ])
def test_normalize(
    rewriter: UrlRewriter,
    uri: str,
    querystring: str,
    accept: Optional[str],
    expected: str,
) -> None:
  req = new_request(uri, querystring, accept)
  result = rewriter.normalize(req)

  assert isinstance(result, Rewritten)
  assert result.key == expected
  assert result.request['uri'] == expected
  assert result.request['querystring'] == ''
  assert result.request['headers'] == req['headers']


@pytest.mark.parametrize(
    'querystrings',
    [
        ['width=300&utm=1', 'utm=1&width=300', 'Width=300&utm=1', 'utm=1&WIDTH=300'],
        ['', 'a=1', 'a=1&b=2', 'b=2&a=1', 'width=abc'],
    ],
    ids=['with_width', 'without_width'])
def test_normalize_equivalent_requests(rewriter: UrlRewriter, querystrings: list[str]) -> None:
  keys = set()
  for qs in querystrings:
    result = rewriter.normalize(new_request(IMAGE_PATH, qs, WEBP_ACCEPT_HEADER))
    assert isinstance(result, Rewritten)
    keys.add(result.key)

  assert len(keys) == 1


def test_normalize_is_idempotent(rewriter: UrlRewriter) -> None:
  first = rewriter.normalize(new_request(IMAGE_PATH, 'width=640', CHROME_ACCEPT_HEADER))
  assert isinstance(first, Rewritten)

  second = rewriter.normalize(first.request)
  assert isinstance(second, Rewritten)
  assert second.key == first.key


def test_normalize_does_not_modify_input(rewriter: UrlRewriter) -> None:
  req = new_request(IMAGE_PATH, 'width=640', CHROME_ACCEPT_HEADER)
  before = copy.deepcopy(req)

  rewriter.normalize(req)

  assert req == before


@pytest.mark.parametrize(
    'querystring, expected',
    [
        ('width=640', True),
        ('width=1200', True),
        ('width=641', False),
        ('', False),
    ],
    ids=['common', 'common_large', 'uncommon', 'no_width'])
def test_normalize_precomputed(rewriter: UrlRewriter, querystring: str, expected: bool) -> None:
  result = rewriter.normalize(new_request(IMAGE_PATH, querystring, CHROME_ACCEPT_HEADER))

  assert isinstance(result, Rewritten)
  assert result.precomputed is expected


def test_normalize_bypass(logger: Logger) -> None:
  rewriter = UrlRewriter(logger, Settings(bypass_patterns=('/static/**', '*.ico')))

  for uri in ['/static/logo.png', '/favicon.ico']:
    req = new_request(uri, 'width=100', CHROME_ACCEPT_HEADER)
    result = rewriter.normalize(req)

    assert isinstance(result, PassThrough)
    assert result.reason == 'bypassed'
    assert result.request is req

  result = rewriter.normalize(new_request(IMAGE_PATH, '', CHROME_ACCEPT_HEADER))
  assert isinstance(result, Rewritten)


def test_normalize_fails_open(rewriter: UrlRewriter, monkeypatch: pytest.MonkeyPatch) -> None:

  def broken(*args: Any, **kwargs: Any) -> None:
    raise RuntimeError('boom')

  monkeypatch.setattr(index.AcceptHeader, 'from_str', broken)

  req = new_request(IMAGE_PATH, 'width=100', CHROME_ACCEPT_HEADER)
  before = copy.deepcopy(req)
  result = rewriter.normalize(req)

  assert isinstance(result, PassThrough)
  assert result.reason == 'error occurred'
  assert result.request is req
  assert req == before


def test_normalize_fails_open_on_malformed_request(rewriter: UrlRewriter) -> None:
  req: Any = {'uri': IMAGE_PATH, 'headers': {}}
  result = rewriter.normalize(req)

  assert isinstance(result, PassThrough)
  assert result.request is req


def test_lambda_main(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setenv('MAX_WIDTH', '1000')
  event = new_event(new_request(IMAGE_PATH, 'width=3000&x=1', WEBP_ACCEPT_HEADER))

  req = index.lambda_main(event)

  assert req['uri'] == '/images/a.jpg/format=webp,width=1000'
  assert req['querystring'] == ''


def test_lambda_main_invalid_environment(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setenv('MAX_WIDTH', 'wide')
  req = new_request(IMAGE_PATH, 'width=300', WEBP_ACCEPT_HEADER)

  assert index.lambda_main(new_event(req)) is req


@pytest.mark.parametrize(
    'req',
    [
        {'uri': IMAGE_PATH, 'headers': {}},
        {'uri': IMAGE_PATH},
        {'headers': {'accept': [{'key': 'Accept', 'value': CHROME_ACCEPT_HEADER}]}},
    ],
    ids=['no_querystring', 'no_headers', 'no_uri'])
def test_lambda_main_malformed_request(req: Any) -> None:
  before = copy.deepcopy(req)

  ret = index.lambda_main(new_event(req))

  assert ret is req
  assert req == before
