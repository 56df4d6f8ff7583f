import dataclasses
import logging
import os
from concurrent.futures import ALL_COMPLETED, Future, ThreadPoolExecutor, wait
from http import HTTPStatus
from typing import Any, Mapping, Optional
from urllib import parse

import boto3
from aws_lambda_powertools.utilities.data_classes import S3Event
from mypy_boto3_s3.client import S3Client

from imgvariant.codec import CorruptInput, EmptyOutput, UnsupportedFormat
from imgvariant.config import Settings
from imgvariant.imageprocessing.index import InstantResponse, transform
from imgvariant.jsonlog import ContextLogger, init_logging
from imgvariant.operations import ImageFormat, Operations, variant_key
from imgvariant.storage import (
    OriginFetchError,
    PersistenceError,
    SourceObject,
    VariantRecord,
    fetch_source,
    put_variant
)
from imgvariant.typing import HttpApiResult, S3Key, VariantKey

logger = init_logging(__name__)


@dataclasses.dataclass(eq=True, frozen=True)
class Cell:
  format: ImageFormat
  width: Optional[int]

  def operations(self) -> Operations:
    return Operations(format=self.format, width=self.width)


@dataclasses.dataclass(frozen=True)
class Success:
  key: VariantKey
  record: VariantRecord


@dataclasses.dataclass(frozen=True)
class Skipped:
  key: VariantKey
  reason: str


@dataclasses.dataclass(frozen=True)
class Fatal:
  key: VariantKey
  error: BaseException


CellResult = Success | Skipped | Fatal


@dataclasses.dataclass(frozen=True)
class WarmReport:
  source_key: S3Key
  results: tuple[CellResult, ...]

  @property
  def failed(self) -> bool:
    return any(isinstance(r, Fatal) for r in self.results)

  def counts(self) -> dict[str, int]:
    return {
        'success': sum(1 for r in self.results if isinstance(r, Success)),
        'skipped': sum(1 for r in self.results if isinstance(r, Skipped)),
        'fatal': sum(1 for r in self.results if isinstance(r, Fatal)),
    }


def plan_cells(source: SourceObject, settings: Settings) -> list[Cell]:
  if not source.is_image:
    return []

  formats = settings.warm_formats
  if settings.large_source_threshold < source.size:
    formats = settings.large_source_formats

  widths: list[Optional[int]] = [None, *settings.common_widths]
  return [Cell(format=f, width=w) for f in formats for w in widths]


def is_variant_key(key: str) -> bool:
  head, sep, last = key.rpartition('/')
  return sep != '' and head != '' and Operations.looks_like(last)


class CacheWarmer(ContextLogger):
  instances: dict[Settings, 'CacheWarmer'] = {}

  def __init__(self, log: logging.Logger, s3: S3Client, settings: Settings):
    super().__init__(log)
    self.s3 = s3
    self.settings = settings

  @classmethod
  def from_env(cls, log: logging.Logger, env: Mapping[str, str]) -> Optional['CacheWarmer']:
    try:
      settings = Settings.from_env(env)
    except ValueError as e:
      log.warning({
          'message': 'invalid environment variable',
          'reason': str(e),
      })
      return None

    if settings.transformed_bucket == '':
      log.warning({
          'message': 'environment variable not found',
          'key': 'TRANSFORMED_IMAGE_BUCKET_NAME',
      })
      return None

    if settings not in cls.instances:
      s3 = boto3.client('s3', region_name=settings.region or None)
      cls.instances[settings] = cls(log=log, s3=s3, settings=settings)

    return cls.instances[settings]

  def compute_cell(self, source: SourceObject, cell: Cell) -> CellResult:
    """Computes and stores one variant.

    Expected failures become ``Skipped``; anything else is raised to the
    caller.
    """
    ops = cell.operations()
    key = variant_key(source.key, ops)

    try:
      record = transform(source, ops, self.settings)
    except (UnsupportedFormat, CorruptInput, EmptyOutput) as e:
      self.log_warning('skipped variant', {'reason': str(e), 'key': key})
      return Skipped(key=key, reason=str(e))

    try:
      put_variant(self.s3, self.settings.transformed_bucket, key, record)
    except PersistenceError as e:
      self.log_warning('could not upload variant', {'reason': str(e), 'key': key})
      return Skipped(key=key, reason=str(e))

    self.log_debug('uploaded variant', {'key': key, 'img_size': len(record.data)})
    return Success(key=key, record=record)

  def warm(self, source: SourceObject) -> WarmReport:
    cells = plan_cells(source, self.settings)
    if len(cells) == 0:
      self.log_debug('no variants planned', {'content_type': source.content_type})
      return WarmReport(source_key=source.key, results=())

    futures: dict[Future[CellResult], Cell] = {}
    with ThreadPoolExecutor(max_workers=len(cells)) as executor:
      for cell in cells:
        futures[executor.submit(self.compute_cell, source, cell)] = cell
      wait(futures, return_when=ALL_COMPLETED)

    results: list[CellResult] = []
    for future, cell in futures.items():
      e = future.exception()
      if e is None:
        results.append(future.result())
        continue

      key = variant_key(source.key, cell.operations())
      self.log_error('failed to process variant', {'reason': repr(e), 'key': key})
      results.append(Fatal(key=key, error=e))

    return WarmReport(source_key=source.key, results=tuple(results))

  def process_upload(self, bucket: str, key: S3Key) -> Optional[WarmReport]:
    """Warms the variants of one uploaded object.

    Returns None for objects that are variants themselves. Raises
    ``OriginFetchError`` when the upload cannot be read back.
    """
    if is_variant_key(key):
      self.log_debug('ignored variant upload', {'key': key})
      return None

    source = fetch_source(self.s3, bucket, key)
    return self.warm(source)


def lambda_main(event: dict[str, Any]) -> HttpApiResult:
  warmer = CacheWarmer.from_env(logger, os.environ)
  if warmer is None:
    return InstantResponse.error(HTTPStatus.INTERNAL_SERVER_ERROR,
                                 'Server is not configured').to_result()

  failed = False
  for record in S3Event(event).records:
    bucket = record.s3.bucket.name
    key = S3Key(parse.unquote_plus(record.s3.get_object.key))
    warmer.set_log_context(bucket=bucket, key=key)

    try:
      report = warmer.process_upload(bucket, key)
    except OriginFetchError as e:
      warmer.log_error('error processing new image upload', {'reason': str(e)})
      failed = True
      continue

    if report is None:
      continue

    warmer.log_debug('pre-generated variants', report.counts())
    failed = failed or report.failed

  if failed:
    return InstantResponse.error(HTTPStatus.INTERNAL_SERVER_ERROR,
                                 'Error processing new image upload').to_result()

  return InstantResponse(status=HTTPStatus.OK, message='Image optimization completed').to_result()
