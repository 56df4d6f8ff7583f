import dataclasses
from typing import Any, Mapping, Optional, Self

from imgvariant.operations import ImageFormat

DEFAULT_CACHE_TTL = 'max-age=31622400'
# Lambda's synchronous response limit is 6MB, base64 inflates by 4/3.
DEFAULT_MAX_IMAGE_SIZE = 4 * 1024 * 1024
DEFAULT_MAX_WIDTH = 4000
DEFAULT_COMMON_WIDTHS = (640, 1200, 1920)
DEFAULT_WARM_FORMATS = (ImageFormat.WEBP, ImageFormat.AVIF, ImageFormat.JPEG)
DEFAULT_LARGE_SOURCE_THRESHOLD = 20 * 1024 * 1024
DEFAULT_LARGE_SOURCE_FORMATS = (ImageFormat.AVIF,)

# Widths at or below this get the small-target quality reduction.
SMALL_TARGET_WIDTH = 640
QUALITY_STEP = 5
QUALITY_FLOOR = 50
LARGE_SOURCE_AVIF_EFFORT = 4


@dataclasses.dataclass(eq=True, frozen=True)
class FormatOptions:
  format: ImageFormat
  quality: int
  effort: Optional[int]
  # Remaining pyvips saver arguments as (name, value) pairs.
  extra: tuple[tuple[str, Any], ...]

  def save_kwargs(self) -> dict[str, Any]:
    kwargs: dict[str, Any] = {'Q': self.quality, 'strip': True}
    if self.effort is not None:
      kwargs['effort'] = self.effort
    kwargs.update(self.extra)
    return kwargs

  def adapt(
      self,
      width: Optional[int],
      source_size: int,
      source_width: int,
      large_source_threshold: int,
  ) -> 'FormatOptions':
    """Lowers quality and effort for large sources and small targets."""
    large = large_source_threshold < source_size
    target_width = source_width if width is None else min(width, source_width)

    quality = self.quality
    if large:
      quality -= QUALITY_STEP
    if target_width <= SMALL_TARGET_WIDTH:
      quality -= QUALITY_STEP
    quality = min(max(QUALITY_FLOOR, quality), self.quality)

    effort = self.effort
    if large and self.format == ImageFormat.AVIF and effort is not None:
      effort = min(effort, LARGE_SOURCE_AVIF_EFFORT)

    return dataclasses.replace(self, quality=quality, effort=effort)


def default_format_options() -> tuple[FormatOptions, ...]:
  return (
      FormatOptions(
          format=ImageFormat.JPEG,
          quality=82,
          effort=None,
          extra=(
              ('interlace', True),
              ('optimize_coding', True),
              ('trellis_quant', True),
              ('overshoot_deringing', True),
              ('optimize_scans', True),
              ('subsample_mode', 'off'),
          )),
      FormatOptions(
          format=ImageFormat.WEBP,
          quality=80,
          effort=6,
          extra=(
              ('smart_subsample', True),
              ('near_lossless', False),
          )),
      FormatOptions(
          format=ImageFormat.AVIF,
          quality=75,
          effort=8,
          extra=(
              ('subsample_mode', 'off'),
              ('lossless', False),
          )),
  )


def parse_int_list(s: str) -> tuple[int, ...]:
  return tuple(int(v) for v in s.split(',') if v.strip() != '')


def parse_format_list(s: str) -> tuple[ImageFormat, ...]:
  fmts = []
  for v in s.split(','):
    if v.strip() == '':
      continue
    fmt = ImageFormat.maybe_from_str(v.strip())
    if fmt is None:
      raise ValueError(f'unknown image format: {v}')
    fmts.append(fmt)
  return tuple(fmts)


def parse_bool(s: str) -> bool:
  return s.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclasses.dataclass(eq=True, frozen=True)
class Settings:
  """Process-wide configuration, built once per distinct environment."""

  region: str = ''
  original_bucket: str = ''
  transformed_bucket: str = ''
  cache_control: str = DEFAULT_CACHE_TTL
  max_image_size: int = DEFAULT_MAX_IMAGE_SIZE
  max_width: int = DEFAULT_MAX_WIDTH
  common_widths: tuple[int, ...] = DEFAULT_COMMON_WIDTHS
  warm_formats: tuple[ImageFormat, ...] = DEFAULT_WARM_FORMATS
  large_source_threshold: int = DEFAULT_LARGE_SOURCE_THRESHOLD
  large_source_formats: tuple[ImageFormat, ...] = DEFAULT_LARGE_SOURCE_FORMATS
  adaptive_quality: bool = True
  bypass_patterns: tuple[str, ...] = ()
  format_options: tuple[FormatOptions, ...] = dataclasses.field(
      default_factory=default_format_options)

  @classmethod
  def from_env(cls, env: Mapping[str, str]) -> Self:
    """Reads the settings from environment variables.

    Raises ``ValueError`` on malformed values. Missing variables fall back to
    the defaults; callers decide which of them are mandatory.
    """
    options = []
    for o in default_format_options():
      quality = env.get(f'{o.format.name}_QUALITY', '')
      if quality != '':
        o = dataclasses.replace(o, quality=int(quality))
      options.append(o)

    return cls(
        region=env.get('AWS_REGION', ''),
        original_bucket=env.get('ORIGINAL_IMAGE_BUCKET_NAME', ''),
        transformed_bucket=env.get('TRANSFORMED_IMAGE_BUCKET_NAME', ''),
        cache_control=env.get('TRANSFORMED_IMAGE_CACHE_TTL', '') or DEFAULT_CACHE_TTL,
        max_image_size=int(env.get('MAX_IMAGE_SIZE', '') or DEFAULT_MAX_IMAGE_SIZE),
        max_width=int(env.get('MAX_WIDTH', '') or DEFAULT_MAX_WIDTH),
        common_widths=parse_int_list(env.get('COMMON_WIDTHS', ''))
        or DEFAULT_COMMON_WIDTHS,
        warm_formats=parse_format_list(env.get('WARM_FORMATS', '')) or DEFAULT_WARM_FORMATS,
        large_source_threshold=int(
            env.get('LARGE_SOURCE_THRESHOLD', '') or DEFAULT_LARGE_SOURCE_THRESHOLD),
        large_source_formats=parse_format_list(env.get('LARGE_SOURCE_FORMATS', ''))
        or DEFAULT_LARGE_SOURCE_FORMATS,
        adaptive_quality=parse_bool(env.get('ADAPTIVE_QUALITY', 'true')),
        bypass_patterns=tuple(p for p in env.get('BYPASS_PATTERNS', '').split(',') if p != ''),
        format_options=tuple(options))

  def options_for(self, fmt: ImageFormat) -> FormatOptions:
    for o in self.format_options:
      if o.format == fmt:
        return o
    raise KeyError(fmt)

  def encoder_options(
      self,
      fmt: ImageFormat,
      width: Optional[int],
      source_size: int,
      source_width: int,
  ) -> FormatOptions:
    options = self.options_for(fmt)
    if not self.adaptive_quality:
      return options
    return options.adapt(width, source_size, source_width, self.large_source_threshold)

  def is_common_width(self, width: Optional[int]) -> bool:
    return width is not None and width in self.common_widths
