import contextlib
import dataclasses
from typing import Iterator, Optional

import pyvips
from pyvips import GValue, Image  # type: ignore

from imgvariant.config import FormatOptions
from imgvariant.operations import ImageFormat

# VIPS_MAX_COORD, used as the unconstrained side of a thumbnail box.
MAX_COORD = 10_000_000

# 72 DPI expressed in pixels per millimetre.
WEB_RESOLUTION = 72 / 25.4

RASTER_DEFAULT = ('image/png', '.png')

loader_outputs = {
    'jpegload': ('image/jpeg', '.jpg'),
    'pngload': ('image/png', '.png'),
    'webpload': ('image/webp', '.webp'),
    'gifload': ('image/gif', '.gif'),
    'heifload': ('image/avif', '.avif'),
    'tiffload': ('image/tiff', '.tif'),
}

loader_formats = {
    'jpegload': ImageFormat.JPEG,
    'webpload': ImageFormat.WEBP,
    'heifload': ImageFormat.AVIF,
}

resource_markers = [
    'out of memory',
    'memory allocation',
    'unable to allocate',
    'cannot allocate',
]

unsupported_markers = [
    'not in a known format',
    'unsupported',
    'no known saver',
    'not supported',
]


class CodecError(Exception):
  pass


class UnsupportedFormat(CodecError):
  pass


class CorruptInput(CodecError):
  pass


class ResourceExhausted(CodecError):
  pass


class EmptyOutput(CodecError):
  pass


def classify(e: pyvips.Error) -> CodecError:
  text = str(e).lower()
  if any(m in text for m in resource_markers):
    return ResourceExhausted(str(e))
  if any(m in text for m in unsupported_markers):
    return UnsupportedFormat(str(e))
  return CorruptInput(str(e))


@contextlib.contextmanager
def codec_errors() -> Iterator[None]:
  try:
    yield
  except MemoryError as e:
    raise ResourceExhausted('memory allocation failed') from e
  except pyvips.Error as e:
    raise classify(e) from e


def get_int_or(image: Image, name: str, default: int) -> int:
  if image.get_typeof(name) == 0:
    return default
  return int(image.get(name))


def get_str_or(image: Image, name: str, default: str) -> str:
  if image.get_typeof(name) == 0:
    return default
  return str(image.get(name))


@dataclasses.dataclass(frozen=True)
class ImageMeta:
  width: int
  height: int
  orientation: int
  pages: int
  loader: str
  limited_color: bool
  # heifload only: 'av1' for AVIF, 'hevc' for HEIC.
  compression: str = ''

  @classmethod
  def from_image(cls, image: Image) -> 'ImageMeta':
    loader = str(image.get('vips-loader')).removesuffix('_buffer')
    pages = get_int_or(image, 'n-pages', 1)
    bits = get_int_or(image, 'bits-per-sample', 8)
    palette = (
        get_int_or(image, 'palette', 0) != 0 or get_int_or(image, 'palette-bit-depth', 0) != 0)

    return cls(
        width=image.width,
        height=image.height,
        orientation=get_int_or(image, 'orientation', 1),
        pages=pages,
        loader=loader,
        limited_color=loader == 'gifload' or (loader == 'pngload' and (palette or bits < 8)),
        compression=get_str_or(image, 'heif-compression', ''))

  @property
  def animated(self) -> bool:
    return 1 < self.pages

  @property
  def needs_rotation(self) -> bool:
    return self.orientation not in (0, 1)

  @property
  def swaps_axes(self) -> bool:
    return self.orientation in (5, 6, 7, 8)

  @property
  def display_width(self) -> int:
    return self.height if self.swaps_axes else self.width

  @property
  def is_vector(self) -> bool:
    return self.loader == 'svgload'

  @property
  def is_heic(self) -> bool:
    return self.loader == 'heifload' and self.compression != 'av1'

  def load_options(self) -> str:
    return 'n=-1' if self.animated else ''

  def passthrough(self) -> tuple[str, str]:
    if self.is_heic:
      return RASTER_DEFAULT
    return loader_outputs.get(self.loader, RASTER_DEFAULT)

  def passthrough_format(self) -> Optional[ImageFormat]:
    if self.is_heic:
      return None
    return loader_formats.get(self.loader)


def decode(data: bytes) -> ImageMeta:
  if len(data) == 0:
    raise CorruptInput('empty input')

  with codec_errors():
    return ImageMeta.from_image(Image.new_from_buffer(data, ''))


def resize(data: bytes, meta: ImageMeta, width: Optional[int]) -> Image:
  """Fits the image inside ``width`` without enlarging it."""
  with codec_errors():
    if width is None:
      return Image.new_from_buffer(data, meta.load_options())

    if meta.swaps_axes:
      # The stored height becomes the displayed width after rotation.
      box_width, box_height = MAX_COORD, width
    else:
      box_width, box_height = width, MAX_COORD

    return Image.thumbnail_buffer(
        data,
        box_width,
        height=box_height,
        size='down',
        no_rotate=True,
        option_string=meta.load_options())


def rotate(image: Image, meta: ImageMeta) -> Image:
  if not meta.needs_rotation:
    return image

  with codec_errors():
    return image.autorot()


def reencode_intermediate(image: Image, meta: ImageMeta) -> Image:
  """Round-trips low colour depth sources through 8-bit sRGB PNG."""
  with codec_errors():
    page_height = get_int_or(image, 'page-height', image.height)
    if image.interpretation != 'srgb':
      image = image.colourspace('srgb')
    if image.format != 'uchar':
      image = image.cast('uchar')

    out = Image.new_from_buffer(image.write_to_buffer('.png'), '')
    if meta.animated:
      out = out.copy()
      out.set_type(GValue.gint_type, 'page-height', page_height)
    return out


def first_page(image: Image) -> Image:
  page_height = get_int_or(image, 'page-height', image.height)
  if page_height == image.height:
    return image
  return image.crop(0, 0, image.width, page_height)


def save(image: Image, extension: str, kwargs: dict) -> bytes:
  with codec_errors():
    image = image.copy(xres=WEB_RESOLUTION, yres=WEB_RESOLUTION)
    data: bytes = image.write_to_buffer(extension, **kwargs)

  if len(data) == 0:
    raise EmptyOutput(f'encoder returned no data for {extension}')
  return data


def encode(image: Image, options: FormatOptions) -> bytes:
  if options.format == ImageFormat.JPEG:
    with codec_errors():
      image = first_page(image)
  return save(image, options.format.extension(), options.save_kwargs())


def encode_raster_default(image: Image) -> bytes:
  return save(image, RASTER_DEFAULT[1], {'strip': True})
