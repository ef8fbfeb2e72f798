import asyncio
import dataclasses
import os
import re
from enum import Enum
from typing import Optional, Protocol

import httpx

from pixelserve.fallback.index import FallbackImages
from pixelserve.log import log_debug, log_warning
from pixelserve.pathsafety.index import resolve_safe_path
from pixelserve.typing import Category, ImageFormat, LocalPath

mime_types: dict[ImageFormat, str] = {
    'jpeg': 'image/jpeg',
    'jpg': 'image/jpeg',
    'png': 'image/png',
    'webp': 'image/webp',
    'gif': 'image/gif',
    'tiff': 'image/tiff',
    'avif': 'image/avif',
    'svg': 'image/svg+xml',
}

allowed_mime_types = frozenset(mime_types.values())

remote_schemes = ['http', 'https']


class Origin(Enum):
  LOCAL = 0
  INTERNAL = 1
  REMOTE = 2
  FALLBACK = 3


@dataclasses.dataclass(frozen=True)
class SourceResult:
  data: bytes
  origin: Origin
  reason: Optional[str] = None

  @property
  def is_fallback(self) -> bool:
    return self.origin == Origin.FALLBACK


@dataclasses.dataclass(eq=True, frozen=True)
class Limits:
  timeout_ms: int
  max_bytes: int

  @property
  def timeout(self) -> float:
    return self.timeout_ms / 1000


@dataclasses.dataclass(frozen=True)
class Rejected:
  reason: str


@dataclasses.dataclass(frozen=True)
class FetchedResponse:
  status: int
  content_type: Optional[str]
  body: bytes


class FetchError(Exception):
  pass


class RemoteFetcher(Protocol):

  async def get(self, url: str, timeout: float, max_bytes: int) -> FetchedResponse:
    ...


class HttpxFetcher:
  """Bounded GET. Exceeding the time or size limit aborts the transfer."""

  def __init__(self, client: Optional[httpx.AsyncClient] = None):
    self.client = client

  async def get(self, url: str, timeout: float, max_bytes: int) -> FetchedResponse:
    try:
      if self.client is not None:
        return await asyncio.wait_for(self.stream(self.client, url, timeout, max_bytes), timeout)

      async with httpx.AsyncClient() as client:
        return await asyncio.wait_for(self.stream(client, url, timeout, max_bytes), timeout)
    except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError, TimeoutError) as e:
      raise FetchError(f'{type(e).__name__}: {e}') from e

  async def stream(
      self,
      client: httpx.AsyncClient,
      url: str,
      timeout: float,
      max_bytes: int,
  ) -> FetchedResponse:
    async with client.stream('GET', url, timeout=timeout, follow_redirects=False) as res:
      declared = res.headers.get('content-length', '')
      if declared.isdigit() and max_bytes < int(declared):
        raise FetchError(f'declared size too large: {declared}')

      body = bytearray()
      async for chunk in res.aiter_bytes():
        body.extend(chunk)
        if max_bytes < len(body):
          raise FetchError(f'response exceeds {max_bytes} bytes')

      return FetchedResponse(
          status=res.status_code, content_type=res.headers.get('content-type'), body=bytes(body))


def parse_absolute_url(source: str) -> Optional[httpx.URL]:
  try:
    url = httpx.URL(source)
  except httpx.InvalidURL:
    return None

  if not url.is_absolute_url:
    return None

  return url


def host_with_port(url: httpx.URL) -> str:
  return url.host if url.port is None else f'{url.host}:{url.port}'


def is_internal_host(url: httpx.URL, internal_host: Optional[str]) -> bool:
  if internal_host is None:
    return False
  return url.host in [internal_host, f'www.{internal_host}']


def is_allowed_host(url: httpx.URL, allowed_remote_hosts: frozenset[str]) -> bool:
  return url.host in allowed_remote_hosts or host_with_port(url) in allowed_remote_hosts


def strip_routing_prefix(path: str, routing_prefix: re.Pattern[str]) -> LocalPath:
  return LocalPath(routing_prefix.sub('', path, count=1))


def normalize_content_type(content_type: Optional[str]) -> str:
  if content_type is None:
    return ''
  return content_type.split(';', 1)[0].strip().lower()


def read_local_file(file_path: LocalPath, base_dir: str, max_bytes: Optional[int]) -> bytes | Rejected:
  real_path = resolve_safe_path(base_dir, file_path)
  if real_path is None:
    return Rejected('path rejected')

  # Open the checked real path itself and refuse a symlink swapped in since.
  try:
    fd = os.open(real_path, os.O_RDONLY | os.O_NOFOLLOW)
    with os.fdopen(fd, 'rb') as f:
      if max_bytes is None:
        return f.read()
      if max_bytes < os.fstat(fd).st_size:
        return Rejected('file too large')
      data = f.read(max_bytes + 1)
      if max_bytes < len(data):
        return Rejected('file too large')
      return data
  except OSError as e:
    return Rejected(f'read failed: {type(e).__name__}')


class SourceResolver:

  def __init__(self, fetcher: RemoteFetcher, fallback_images: FallbackImages):
    self.fetcher = fetcher
    self.fallback_images = fallback_images

  async def fallback(self, category: Category, reason: str) -> SourceResult:
    data = await self.fallback_images.load(category)
    return SourceResult(data=data, origin=Origin.FALLBACK, reason=reason)

  async def read_local(
      self,
      file_path: LocalPath,
      base_dir: str,
      category: Category,
      origin: Origin,
      max_bytes: Optional[int],
  ) -> SourceResult:
    match await asyncio.to_thread(read_local_file, file_path, base_dir, max_bytes):
      case Rejected(reason=reason):
        log_warning('local source rejected', {'reason': reason, 'file_path': file_path})
        return await self.fallback(category, reason)
      case bytes() as data:
        return SourceResult(data=data, origin=origin)
      case _:
        raise Exception('system error')

  async def fetch_remote(
      self,
      url: httpx.URL,
      category: Category,
      limits: Limits,
  ) -> SourceResult:
    try:
      res = await self.fetcher.get(str(url), limits.timeout, limits.max_bytes)
    except FetchError as e:
      log_warning('fetch failed', {'reason': str(e), 'url': str(url)})
      return await self.fallback(category, 'fetch failed')

    if not 200 <= res.status < 300:
      log_warning('unexpected status', {'status': res.status, 'url': str(url)})
      return await self.fallback(category, 'unexpected status')

    content_type = normalize_content_type(res.content_type)
    if content_type not in allowed_mime_types:
      log_warning('bad content-type', {'content_type': content_type, 'url': str(url)})
      return await self.fallback(category, 'bad content-type')

    return SourceResult(data=res.body, origin=Origin.REMOTE)

  async def resolve(
      self,
      source: str,
      base_dir: str,
      category: Category,
      internal_host: Optional[str],
      routing_prefix: re.Pattern[str],
      allowed_remote_hosts: frozenset[str],
      limits: Limits,
  ) -> SourceResult:
    """Turn a source string into image bytes, or the category's fallback.

    Expected failures (bad path, disallowed host, bad mime, timeout, ...)
    resolve to the fallback; only an unreadable fallback raises.
    """
    if source == '':
      return await self.fallback(category, 'empty source')

    url = parse_absolute_url(source)
    if url is None:
      return await self.read_local(LocalPath(source), base_dir, category, Origin.LOCAL, limits.max_bytes)

    if is_internal_host(url, internal_host):
      local_path = strip_routing_prefix(url.path, routing_prefix)
      log_debug('internal source', {'local_path': local_path})
      return await self.read_local(local_path, base_dir, category, Origin.INTERNAL, limits.max_bytes)

    if url.scheme not in remote_schemes:
      log_warning('scheme not allowed', {'scheme': url.scheme})
      return await self.fallback(category, 'scheme not allowed')

    if not is_allowed_host(url, allowed_remote_hosts):
      log_warning('host not allowed', {'host': host_with_port(url)})
      return await self.fallback(category, 'host not allowed')

    return await self.fetch_remote(url, category, limits)
