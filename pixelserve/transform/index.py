import dataclasses
from typing import Optional, Protocol

from pyvips import Image, Interesting, Size  # type: ignore

from pixelserve.typing import ImageFormat

savers: dict[ImageFormat, str] = {
    'jpeg': '.jpg',
    'jpg': '.jpg',
    'png': '.png',
    'webp': '.webp',
    'gif': '.gif',
    'tiff': '.tif',
    'avif': '.avif',
}

lossy_formats: frozenset[ImageFormat] = frozenset(['jpeg', 'jpg', 'webp', 'tiff', 'avif'])


class TransformError(Exception):
  pass


@dataclasses.dataclass(eq=True, frozen=True)
class TransformOptions:
  width: Optional[int]
  height: Optional[int]
  format: ImageFormat
  quality: int


class Transformer(Protocol):

  def transform(self, data: bytes, options: TransformOptions) -> bytes:
    ...


def shrink_to(image: Image, width: Optional[int], height: Optional[int]) -> Image:
  if width is not None:
    scale = width / image.width
  elif height is not None:
    scale = height / image.height
  else:
    return image

  if scale >= 1:
    return image
  return image.resize(scale)


class VipsTransformer:

  def resize(self, data: bytes, width: Optional[int], height: Optional[int]) -> Image:
    if width is not None and height is not None:
      return Image.thumbnail_buffer(data, width, height=height, crop=Interesting.CENTRE, size=Size.DOWN)

    image: Image = Image.new_from_buffer(data, '').autorot()
    return shrink_to(image, width, height)

  def transform(self, data: bytes, options: TransformOptions) -> bytes:
    suffix = savers.get(options.format)
    if suffix is None:
      raise TransformError(f'unsupported output format: {options.format}')

    try:
      image = self.resize(data, options.width, options.height)
      if options.format in lossy_formats:
        return image.write_to_buffer(suffix, Q=options.quality)
      return image.write_to_buffer(suffix)
    except Exception as e:
      raise TransformError(str(e)) from e
