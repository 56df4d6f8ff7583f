import dataclasses
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_s3.client import S3Client

from imgvariant.typing import S3Key, VariantKey

OPTIMIZATION_TYPE_METADATA = 'optimization-type'
ORIGINAL_WIDTH_METADATA = 'original-width'
IMAGE_QUALITY_METADATA = 'image-quality'

OPTIMIZATION_TYPE = 'pyvips'


class StorageError(Exception):
  pass


class OriginFetchError(StorageError):
  pass


class PersistenceError(StorageError):
  pass


def is_not_found_client_error(exception: ClientError) -> bool:
  if 'Error' not in exception.response:
    return False
  if 'Code' not in exception.response['Error']:
    return False
  return exception.response['Error']['Code'] in ['404', 'NoSuchKey']


@dataclasses.dataclass(frozen=True)
class SourceObject:
  key: S3Key
  data: bytes
  content_type: str
  size: int

  @property
  def is_image(self) -> bool:
    return self.content_type.startswith('image/')


@dataclasses.dataclass(frozen=True)
class VariantRecord:
  data: bytes
  content_type: str
  cache_control: str
  source_width: Optional[int]
  quality: Optional[int]

  def metadata(self) -> dict[str, str]:
    metadata = {OPTIMIZATION_TYPE_METADATA: OPTIMIZATION_TYPE}
    if self.source_width is not None:
      metadata[ORIGINAL_WIDTH_METADATA] = str(self.source_width)
    if self.quality is not None:
      metadata[IMAGE_QUALITY_METADATA] = str(self.quality)
    return metadata


def fetch_source(s3: S3Client, bucket: str, key: S3Key) -> SourceObject:
  try:
    res = s3.get_object(Bucket=bucket, Key=key)
    data = res['Body'].read()
  except ClientError as e:
    if is_not_found_client_error(e):
      raise OriginFetchError(f'not found: {key}') from e
    raise OriginFetchError(str(e)) from e
  except BotoCoreError as e:
    raise OriginFetchError(str(e)) from e

  return SourceObject(
      key=key,
      data=data,
      content_type=res.get('ContentType', 'application/octet-stream'),
      size=res.get('ContentLength', len(data)))


def find_variant(s3: S3Client, bucket: str, key: VariantKey) -> Optional[VariantRecord]:
  """Returns the stored variant, or None when it has not been computed yet.

  Errors other than "not found" propagate as ``StorageError``.
  """
  try:
    res = s3.get_object(Bucket=bucket, Key=key)
    data = res['Body'].read()
  except ClientError as e:
    if is_not_found_client_error(e):
      return None
    raise StorageError(str(e)) from e
  except BotoCoreError as e:
    raise StorageError(str(e)) from e

  metadata = res.get('Metadata', {})
  width = metadata.get(ORIGINAL_WIDTH_METADATA)
  quality = metadata.get(IMAGE_QUALITY_METADATA)

  return VariantRecord(
      data=data,
      content_type=res.get('ContentType', 'application/octet-stream'),
      cache_control=res.get('CacheControl', ''),
      source_width=int(width) if width is not None and width.isdigit() else None,
      quality=int(quality) if quality is not None and quality.isdigit() else None)


def put_variant(s3: S3Client, bucket: str, key: VariantKey, record: VariantRecord) -> None:
  try:
    s3.put_object(
        Bucket=bucket,
        Key=key,
        Body=record.data,
        ContentType=record.content_type,
        CacheControl=record.cache_control,
        Metadata=record.metadata())
  except (ClientError, BotoCoreError) as e:
    raise PersistenceError(str(e)) from e
