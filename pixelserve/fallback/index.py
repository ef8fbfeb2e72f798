import asyncio
import dataclasses
import threading
from pathlib import Path

from pixelserve.typing import Category

ASSETS_DIR = Path(__file__).resolve().with_name('assets')


class FallbackUnavailableError(Exception):
  pass


@dataclasses.dataclass(eq=True, frozen=True)
class FallbackAsset:
  filename: str
  content_type: str
  download_name: str


# Each placeholder is labelled with its own type, so the avatar one goes out
# as image/png rather than under a fixed jpeg content type.
fallback_assets: dict[Category, FallbackAsset] = {
    'normal': FallbackAsset('noimage.jpg', 'image/jpeg', 'fallback.jpeg'),
    'avatar': FallbackAsset('noavatar.png', 'image/png', 'fallback.png'),
}


class FallbackImages:
  """Placeholder bytes per category, read once and kept for the process lifetime."""

  def __init__(self, assets_dir: Path = ASSETS_DIR):
    self.assets_dir = assets_dir
    self.lock = threading.Lock()
    self.cache: dict[Category, bytes] = {}

  def asset(self, category: Category) -> FallbackAsset:
    return fallback_assets[category]

  def load_sync(self, category: Category) -> bytes:
    data = self.cache.get(category)
    if data is not None:
      return data

    with self.lock:
      if category not in self.cache:
        path = self.assets_dir / self.asset(category).filename
        try:
          self.cache[category] = path.read_bytes()
        except OSError as e:
          raise FallbackUnavailableError(f'cannot read fallback image: {path}') from e
      return self.cache[category]

  async def load(self, category: Category) -> bytes:
    data = self.cache.get(category)
    if data is not None:
      return data
    return await asyncio.to_thread(self.load_sync, category)


default_fallback_images = FallbackImages()
