import io
import logging
import threading
from logging import Logger
from pathlib import Path
from typing import Any, Callable, Optional

import pytest
from botocore.exceptions import ClientError
from botocore.response import StreamingBody
from pyvips import GValue, Image  # type: ignore

from imgvariant.config import Settings
from imgvariant.jsonlog import VariantJsonFormatter

ORIGINAL_BUCKET = 'original-bucket'
TRANSFORMED_BUCKET = 'transformed-bucket'

JPEG_MIME = 'image/jpeg'
PNG_MIME = 'image/png'
WEBP_MIME = 'image/webp'
AVIF_MIME = 'image/avif'

LOADER_MAP = {
    'jpegload': JPEG_MIME,
    'jpegload_buffer': JPEG_MIME,
    'pngload': PNG_MIME,
    'pngload_buffer': PNG_MIME,
    'webpload': WEBP_MIME,
    'webpload_buffer': WEBP_MIME,
    'heifload': AVIF_MIME,
    'heifload_buffer': AVIF_MIME,
}


def client_error(code: str, operation: str) -> ClientError:
  return ClientError({'Error': {'Code': code, 'Message': code}}, operation)


class FakeS3:
  """In-memory stand-in for the S3 client calls made by imgvariant."""

  def __init__(self) -> None:
    self.objects: dict[tuple[str, str], dict[str, Any]] = {}
    self.calls: list[tuple[str, str, str]] = []
    self.get_errors: dict[str, ClientError] = {}
    self.put_errors: dict[str, ClientError] = {}
    self.lock = threading.Lock()

  def add(
      self,
      bucket: str,
      key: str,
      data: bytes,
      content_type: str,
      cache_control: str = '',
      metadata: Optional[dict[str, str]] = None,
  ) -> None:
    self.objects[(bucket, key)] = {
        'Body': data,
        'ContentType': content_type,
        'CacheControl': cache_control,
        'Metadata': metadata or {},
    }

  def get(self, bucket: str, key: str) -> Optional[dict[str, Any]]:
    return self.objects.get((bucket, key))

  def keys(self, bucket: str) -> set[str]:
    return {k for b, k in self.objects if b == bucket}

  def put_object(self, **kwargs: Any) -> dict[str, Any]:
    bucket, key = kwargs['Bucket'], kwargs['Key']
    with self.lock:
      self.calls.append(('put_object', bucket, key))
    if bucket in self.put_errors:
      raise self.put_errors[bucket]

    with self.lock:
      self.add(
          bucket,
          key,
          kwargs['Body'],
          kwargs.get('ContentType', 'binary/octet-stream'),
          kwargs.get('CacheControl', ''),
          kwargs.get('Metadata', {}))
    return {}

  def get_object(self, **kwargs: Any) -> dict[str, Any]:
    bucket, key = kwargs['Bucket'], kwargs['Key']
    with self.lock:
      self.calls.append(('get_object', bucket, key))
    if bucket in self.get_errors:
      raise self.get_errors[bucket]

    obj = self.get(bucket, key)
    if obj is None:
      raise client_error('NoSuchKey', 'GetObject')

    data: bytes = obj['Body']
    res = {
        'Body': StreamingBody(io.BytesIO(data), len(data)),
        'ContentType': obj['ContentType'],
        'ContentLength': len(data),
        'Metadata': obj['Metadata'],
    }
    if obj['CacheControl'] != '':
      res['CacheControl'] = obj['CacheControl']
    return res


@pytest.fixture
def s3() -> FakeS3:
  return FakeS3()


@pytest.fixture
def logger(tmp_path: Path) -> Logger:
  log = logging.getLogger(f'{__name__}.{tmp_path.name}')

  log_handler = logging.StreamHandler()
  log_handler.setFormatter(VariantJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log_handler.setStream(open(tmp_path / 'test.log', 'w'))
  log.addHandler(log_handler)
  log.setLevel(logging.DEBUG)

  return log


@pytest.fixture
def settings() -> Settings:
  return Settings(
      original_bucket=ORIGINAL_BUCKET,
      transformed_bucket=TRANSFORMED_BUCKET,
      cache_control='max-age=3600',
      common_widths=(16, 32),
  )


@pytest.fixture
def make_image() -> Callable[..., bytes]:

  def fn(
      width: int,
      height: int,
      suffix: str = '.jpg',
      bands: int = 3,
      orientation: Optional[int] = None,
      **kwargs: Any,
  ) -> bytes:
    image = (Image.black(width, height, bands=bands) + [200, 120, 40][:bands]).cast('uchar')
    if orientation is not None:
      image = image.copy()
      image.set_type(GValue.gint_type, 'orientation', orientation)
    return image.write_to_buffer(suffix, **kwargs)

  return fn


def load(data: bytes) -> Image:
  return Image.new_from_buffer(data, '')


@pytest.fixture
def open_image() -> Callable[[bytes], Image]:
  return load
