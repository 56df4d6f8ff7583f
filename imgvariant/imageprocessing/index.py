import base64
import dataclasses
import logging
import os
import time
from http import HTTPStatus
from typing import Mapping, Optional
from urllib import parse

import boto3
from mypy_boto3_s3.client import S3Client

from imgvariant import codec
from imgvariant.config import Settings
from imgvariant.jsonlog import ContextLogger, init_logging
from imgvariant.operations import ImageFormat, Operations, split_variant_path, variant_key
from imgvariant.storage import (
    OriginFetchError,
    PersistenceError,
    SourceObject,
    StorageError,
    VariantRecord,
    fetch_source,
    find_variant,
    put_variant
)
from imgvariant.typing import HttpApiEvent, HttpApiResult, S3Key, VariantKey

REDIRECT_CACHE_CONTROL = 'private,no-store'

logger = init_logging(__name__)


class ServerTiming:
  """Accumulates ``Server-Timing`` entries, one per finished step."""

  def __init__(self) -> None:
    self.entries: list[str] = []
    self.start_ns = time.time_ns()

  def restart(self) -> None:
    self.start_ns = time.time_ns()

  def mark(self, name: str) -> None:
    dur_ms = (time.time_ns() - self.start_ns) // 1_000_000
    self.entries.append(f'{name};dur={dur_ms}')
    self.restart()

  def header(self) -> str:
    return ','.join(self.entries)


@dataclasses.dataclass(frozen=True)
class InstantResponse:
  status: int
  b64_body: Optional[str] = None
  message: Optional[str] = None
  cache_control: Optional[str] = None
  content_type: Optional[str] = None
  location: Optional[str] = None
  server_timing: Optional[str] = None
  img_size: Optional[int] = None

  @classmethod
  def error(cls, status: int, message: str) -> 'InstantResponse':
    return cls(status=status, message=message)

  def to_result(self) -> HttpApiResult:
    result: HttpApiResult = {'statusCode': int(self.status)}

    headers = {}
    if self.content_type is not None:
      headers['Content-Type'] = self.content_type
    if self.location is not None:
      headers['Location'] = self.location
    if self.cache_control is not None:
      headers['Cache-Control'] = self.cache_control
    if self.server_timing is not None:
      headers['Server-Timing'] = self.server_timing
    if 0 < len(headers):
      result['headers'] = headers

    if self.b64_body is not None:
      result['body'] = self.b64_body
      result['isBase64Encoded'] = True
    elif self.message is not None:
      result['body'] = self.message

    return result


def transform(source: SourceObject, ops: Operations, settings: Settings) -> VariantRecord:
  """Resizes, rotates and re-encodes the source according to ``ops``.

  Codec failures propagate as ``codec.CodecError`` subclasses.
  """
  meta = codec.decode(source.data)
  image = codec.resize(source.data, meta, ops.width)
  image = codec.rotate(image, meta)

  quality: Optional[int] = None
  fmt: Optional[ImageFormat] = ops.format
  if fmt is None and not meta.is_vector:
    fmt = meta.passthrough_format()

  if fmt is not None:
    options = settings.encoder_options(fmt, ops.width, source.size, meta.display_width)
    if fmt == ImageFormat.AVIF and meta.limited_color:
      image = codec.reencode_intermediate(image, meta)
    data = codec.encode(image, options)
    content_type = fmt.content_type
    quality = options.quality
  elif meta.is_vector:
    data = codec.encode_raster_default(image)
    content_type = codec.RASTER_DEFAULT[0]
  else:
    content_type, extension = meta.passthrough()
    data = codec.save(image, extension, {'strip': True})

  return VariantRecord(
      data=data,
      content_type=content_type,
      cache_control=settings.cache_control,
      source_width=meta.display_width,
      quality=quality)


class ImageServer(ContextLogger):
  instances: dict[Settings, 'ImageServer'] = {}

  def __init__(self, log: logging.Logger, s3: S3Client, settings: Settings):
    super().__init__(log)
    self.s3 = s3
    self.settings = settings

  @classmethod
  def from_env(cls, log: logging.Logger, env: Mapping[str, str]) -> Optional['ImageServer']:
    try:
      settings = Settings.from_env(env)
    except ValueError as e:
      log.warning({
          'message': 'invalid environment variable',
          'reason': str(e),
      })
      return None

    if settings.original_bucket == '':
      log.warning({
          'message': 'environment variable not found',
          'key': 'ORIGINAL_IMAGE_BUCKET_NAME',
      })
      return None

    if settings not in cls.instances:
      s3 = boto3.client('s3', region_name=settings.region or None)
      cls.instances[settings] = cls(log=log, s3=s3, settings=settings)

    return cls.instances[settings]

  def lookup(self, key: VariantKey, timing: ServerTiming) -> Optional[VariantRecord]:
    if self.settings.transformed_bucket == '':
      return None

    try:
      record = find_variant(self.s3, self.settings.transformed_bucket, key)
    except StorageError as e:
      self.log_warning('failed to look up variant', {'reason': str(e), 'key': key})
      return None
    finally:
      timing.mark('img-lookup')

    return record

  def persist(self, key: VariantKey, record: VariantRecord, timing: ServerTiming) -> bool:
    if self.settings.transformed_bucket == '':
      return False

    try:
      put_variant(self.s3, self.settings.transformed_bucket, key, record)
    except PersistenceError as e:
      self.log_error('could not upload transformed image', {'reason': str(e), 'key': key})
      return False

    timing.mark('img-upload')
    return True

  def respond(
      self,
      source_key: S3Key,
      ops: Operations,
      record: VariantRecord,
      persisted: bool,
      timing: ServerTiming,
  ) -> InstantResponse:
    oversized = self.settings.max_image_size < len(record.data)

    if oversized and persisted:
      qs = ops.to_querystring()
      location = f'/{parse.quote(source_key)}' + ('' if qs == '' else f'?{qs}')
      return InstantResponse(
          status=HTTPStatus.FOUND,
          cache_control=REDIRECT_CACHE_CONTROL,
          location=location,
          server_timing=timing.header(),
          img_size=len(record.data))

    if oversized:
      self.log_warning('transformed image too big', {'img_size': len(record.data)})
      return InstantResponse.error(HTTPStatus.FORBIDDEN, 'Requested transformed image is too big')

    return InstantResponse(
        status=HTTPStatus.OK,
        b64_body=base64.b64encode(record.data).decode(),
        cache_control=record.cache_control or self.settings.cache_control,
        content_type=record.content_type,
        server_timing=timing.header(),
        img_size=len(record.data))

  def process(self, method: str, path: str) -> InstantResponse:
    if method != 'GET':
      return InstantResponse.error(HTTPStatus.BAD_REQUEST, 'Only GET method is supported')

    source_path, ops_str = split_variant_path(path)
    if source_path == '':
      return InstantResponse.error(HTTPStatus.BAD_REQUEST, 'Invalid image path')

    source_key = S3Key(parse.unquote(source_path))
    ops = Operations.from_str(ops_str, self.settings.max_width)
    key = variant_key(source_key, ops)

    timing = ServerTiming()

    cached = self.lookup(key, timing)
    if cached is not None:
      self.log_debug('variant found', {'key': key})
      return self.respond(source_key, ops, cached, True, timing)

    try:
      source = fetch_source(self.s3, self.settings.original_bucket, source_key)
    except OriginFetchError as e:
      self.log_error('error downloading original image', {'reason': str(e), 'key': source_key})
      return InstantResponse.error(
          HTTPStatus.INTERNAL_SERVER_ERROR, 'Error downloading original image')
    timing.mark('img-download')

    try:
      record = transform(source, ops, self.settings)
    except Exception as e:
      self.log_error('error transforming image', {'reason': str(e), 'key': key})
      return InstantResponse.error(HTTPStatus.INTERNAL_SERVER_ERROR, 'Error transforming image')
    timing.mark('img-transform')

    persisted = self.persist(key, record, timing)
    return self.respond(source_key, ops, record, persisted, timing)


def lambda_main(event: HttpApiEvent) -> HttpApiResult:
  server = ImageServer.from_env(logger, os.environ)
  if server is None:
    return InstantResponse.error(HTTPStatus.INTERNAL_SERVER_ERROR,
                                 'Server is not configured').to_result()

  http = event['requestContext']['http']
  server.set_log_context(path=http['path'], method=http['method'])

  result = server.process(http['method'], http['path'])

  server.log_debug(
      'responded', {
          'status': int(result.status),
          'cache_control': result.cache_control,
          'content_type': result.content_type,
          'location': result.location,
          'server_timing': result.server_timing,
          'img_size': result.img_size,
      })

  return result.to_result()
