from typing import Literal, Mapping, NewType

LocalPath = NewType('LocalPath', str)

Category = Literal['normal', 'avatar']
Visibility = Literal['public', 'private']
ImageFormat = Literal['jpeg', 'jpg', 'png', 'webp', 'gif', 'tiff', 'avif', 'svg']

RawValue = str | int | float | None
RawParams = Mapping[str, RawValue]

Headers = Mapping[str, str]
