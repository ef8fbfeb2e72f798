import dataclasses
from typing import Any, Optional, TypeVar, cast

from pixelserve.config.index import Bounds
from pixelserve.typing import Category, ImageFormat, RawParams, Visibility

PLACEHOLDER_SRC = '/placeholder/noimage.jpg'

SCHEMA_MIN_DIMENSION = 50
SCHEMA_MAX_DIMENSION = 4000
MIN_QUALITY = 1
MAX_QUALITY = 100
MAX_IDENTITY_LENGTH = 128

DEFAULT_FORMAT: ImageFormat = 'jpeg'

formats: list[ImageFormat] = ['jpeg', 'jpg', 'png', 'webp', 'gif', 'tiff', 'avif', 'svg']
visibilities: list[Visibility] = ['public', 'private']
categories: list[Category] = ['normal', 'avatar']

T = TypeVar('T', bound=str)

param_names = frozenset(['src', 'format', 'width', 'height', 'quality', 'folder', 'userId', 'type'])


class ParameterValidationError(ValueError):

  def __init__(self, field: str, reason: str):
    super().__init__(f'invalid parameter "{field}": {reason}')
    self.field = field
    self.reason = reason


@dataclasses.dataclass(eq=True, frozen=True)
class ImageRequest:
  source: str
  format: ImageFormat
  width: Optional[int]
  height: Optional[int]
  quality: int
  visibility: Visibility
  category: Category
  identity: Optional[str]

  @property
  def wants_resize(self) -> bool:
    return self.width is not None or self.height is not None


ParamResult = ImageRequest | ParameterValidationError


def to_int(field: str, value: Any) -> Optional[int]:
  if value is None:
    return None

  if isinstance(value, bool):
    raise ParameterValidationError(field, 'must be a number')

  if isinstance(value, int):
    return value

  if isinstance(value, str):
    s = value.strip()
    try:
      return int(s)
    except ValueError:
      pass
    try:
      value = float(s)
    except ValueError:
      raise ParameterValidationError(field, 'must be a number')

  if isinstance(value, float):
    if not value.is_integer():
      raise ParameterValidationError(field, 'must be an integer')
    return int(value)

  raise ParameterValidationError(field, 'must be a number')


def resolve_dimension(field: str, value: Any, lower: int, upper: int) -> Optional[int]:
  n = to_int(field, value)
  if n is None:
    return None

  if n < SCHEMA_MIN_DIMENSION:
    raise ParameterValidationError(field, f'{field} too small')
  if SCHEMA_MAX_DIMENSION < n:
    raise ParameterValidationError(field, f'{field} too large')

  # Inside the schema range but outside the configured one: clamp.
  return max(lower, min(upper, n))


def resolve_quality(value: Any, default: int) -> int:
  n = to_int('quality', value)
  if n is None:
    return default

  if n < MIN_QUALITY or MAX_QUALITY < n:
    raise ParameterValidationError('quality', f'must be between {MIN_QUALITY} and {MAX_QUALITY}')

  return n


def resolve_format(value: Any) -> ImageFormat:
  if isinstance(value, str) and value.lower() in formats:
    return cast(ImageFormat, value.lower())
  return DEFAULT_FORMAT


def resolve_source(value: Any) -> str:
  if value is None:
    return PLACEHOLDER_SRC
  if not isinstance(value, str):
    raise ParameterValidationError('src', 'must be a string')
  return value


def resolve_choice(field: str, value: Any, choices: list[T], default: T) -> T:
  if value is None:
    return default
  if value not in choices:
    raise ParameterValidationError(field, f'must be one of {", ".join(choices)}')
  return cast(T, value)


def resolve_identity(value: Any) -> Optional[str]:
  match value:
    case None:
      return None
    case bool():
      raise ParameterValidationError('userId', 'must be a string or number')
    case int():
      identity = str(value)
    case float() if value.is_integer():
      identity = str(int(value))
    case float():
      identity = str(value)
    case str():
      identity = value.strip()
    case _:
      raise ParameterValidationError('userId', 'must be a string or number')

  if identity == '':
    raise ParameterValidationError('userId', 'userId cannot be empty')
  if MAX_IDENTITY_LENGTH < len(identity):
    raise ParameterValidationError('userId', 'userId too long')

  return identity


def resolve_params(raw: RawParams, bounds: Bounds) -> ImageRequest:
  for name in raw:
    if name not in param_names:
      raise ParameterValidationError(name, 'unknown parameter')

  return ImageRequest(
      source=resolve_source(raw.get('src')),
      format=resolve_format(raw.get('format')),
      width=resolve_dimension('width', raw.get('width'), bounds.min_width, bounds.max_width),
      height=resolve_dimension('height', raw.get('height'), bounds.min_height, bounds.max_height),
      quality=resolve_quality(raw.get('quality'), bounds.default_quality),
      visibility=resolve_choice('folder', raw.get('folder'), visibilities, 'public'),
      category=resolve_choice('type', raw.get('type'), categories, 'normal'),
      identity=resolve_identity(raw.get('userId')))


def parse_params(raw: RawParams, bounds: Bounds) -> ParamResult:
  try:
    return resolve_params(raw, bounds)
  except ParameterValidationError as e:
    return e
