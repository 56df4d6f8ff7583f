import dataclasses
from enum import Enum
from typing import Optional, Self

from imgvariant.typing import S3Key, VariantKey

ORIGINAL_MARKER = 'original'


class ImageFormat(Enum):
  JPEG = 'jpeg'
  WEBP = 'webp'
  AVIF = 'avif'

  @classmethod
  def maybe_from_str(cls, s: str) -> Optional['ImageFormat']:
    try:
      return cls(s.lower())
    except ValueError:
      return None

  @property
  def content_type(self) -> str:
    return f'image/{self.value}'

  def extension(self) -> str:
    if self == ImageFormat.JPEG:
      return '.jpg'
    if self == ImageFormat.WEBP:
      return '.webp'
    if self == ImageFormat.AVIF:
      return '.avif'
    raise Exception('system error')


class AcceptHeader:
  """Client-advertised encodings, matched by substring."""

  types: list[ImageFormat]

  # Most efficient first.
  PRIORITY = (ImageFormat.AVIF, ImageFormat.WEBP)
  FALLBACK = ImageFormat.JPEG

  def __init__(self, types: list[ImageFormat]):
    self.types = types

  @classmethod
  def from_str(cls, accept_header: str) -> Self:
    return cls([t for t in cls.PRIORITY if t.value in accept_header])

  def preferred(self) -> ImageFormat:
    for t in self.PRIORITY:
      if t in self.types:
        return t
    return self.FALLBACK


def parse_width(value: str, max_width: int) -> Optional[int]:
  try:
    width = int(value.strip())
  except ValueError:
    return None

  if width <= 0:
    return None

  return min(width, max_width)


@dataclasses.dataclass(eq=True, frozen=True)
class Operations:
  format: Optional[ImageFormat] = None
  width: Optional[int] = None

  @classmethod
  def from_str(cls, s: str, max_width: int) -> Self:
    """Decodes an operation string such as ``format=webp,width=640``.

    Unknown operations and invalid values are dropped. The first occurrence
    of an operation wins.
    """
    fmt: Optional[ImageFormat] = None
    width: Optional[int] = None

    for op in s.split(','):
      name, sep, value = op.partition('=')
      if sep == '':
        continue

      match name.strip().lower():
        case 'format' if fmt is None:
          fmt = ImageFormat.maybe_from_str(value.strip())
        case 'width' if width is None:
          width = parse_width(value, max_width)
        case _:
          pass

    return cls(fmt, width)

  @staticmethod
  def looks_like(s: str) -> bool:
    if s == ORIGINAL_MARKER:
      return True

    names = [op.partition('=')[0].strip().lower() for op in s.split(',') if '=' in op]
    return 0 < len(names) and all(n in ('format', 'width') for n in names)

  def is_empty(self) -> bool:
    return self.format is None and self.width is None

  def pairs(self) -> list[tuple[str, str]]:
    ps = []
    if self.format is not None:
      ps.append(('format', self.format.value))
    if self.width is not None:
      ps.append(('width', str(self.width)))
    return ps

  def to_str(self) -> str:
    if self.is_empty():
      return ORIGINAL_MARKER
    return ','.join(f'{k}={v}' for k, v in self.pairs())

  def to_querystring(self) -> str:
    return '&'.join(f'{k}={v}' for k, v in self.pairs())


def variant_key(source: S3Key, ops: Operations) -> VariantKey:
  return VariantKey(f'{source}/{ops.to_str()}')


def split_variant_path(path: str) -> tuple[str, str]:
  """Splits ``/a/b.jpg/format=webp`` into ``('a/b.jpg', 'format=webp')``."""
  source, _, ops = path.lstrip('/').rpartition('/')
  return source, ops
