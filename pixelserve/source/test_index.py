import asyncio
import os
from pathlib import Path
from typing import AsyncIterator, Optional

import httpx
import pytest
import respx

from pixelserve.config.index import ROUTING_PREFIX_RE
from pixelserve.fallback.index import ASSETS_DIR, default_fallback_images
from pixelserve.typing import Category, LocalPath

from . import index
from .index import (
    FetchedResponse,
    FetchError,
    HttpxFetcher,
    Limits,
    Origin,
    Rejected,
    SourceResolver,
    normalize_content_type,
    parse_absolute_url
)

INTERNAL_HOST = 'example.com'
ALLOWED_HOSTS = frozenset(['allowed.test', 'ports.test:8443'])
LIMITS = Limits(timeout_ms=1000, max_bytes=1024)

PHOTO = b'local-photo-bytes'
REMOTE = b'remote-image-bytes'

FALLBACK = {
    'normal': (ASSETS_DIR / 'noimage.jpg').read_bytes(),
    'avatar': (ASSETS_DIR / 'noavatar.png').read_bytes(),
}


class RecordingFetcher:

  def __init__(
      self,
      response: Optional[FetchedResponse] = None,
      error: Optional[Exception] = None,
  ):
    self.response = response or FetchedResponse(status=200, content_type='image/jpeg', body=REMOTE)
    self.error = error
    self.calls: list[tuple[str, float, int]] = []

  async def get(self, url: str, timeout: float, max_bytes: int) -> FetchedResponse:
    self.calls.append((url, timeout, max_bytes))
    if self.error is not None:
      raise self.error
    return self.response


@pytest.fixture
def base_dir(tmp_path: Path) -> Path:
  base = tmp_path / 'public'
  (base / 'photos').mkdir(parents=True)
  (base / 'photo.jpg').write_bytes(PHOTO)
  (base / 'photos' / 'cat.jpg').write_bytes(PHOTO)
  (base / 'httpfoo').write_bytes(PHOTO)
  (base / 'big.jpg').write_bytes(b'x' * (LIMITS.max_bytes + 1))
  (tmp_path / 'secret.jpg').write_bytes(b'secret')
  return base


@pytest.fixture
def fetcher() -> RecordingFetcher:
  return RecordingFetcher()


@pytest.fixture
def resolver(fetcher: RecordingFetcher) -> SourceResolver:
  return SourceResolver(fetcher, default_fallback_images)


async def resolve(
    resolver: SourceResolver,
    source: str,
    base_dir: Path,
    category: Category = 'normal',
    internal_host: Optional[str] = INTERNAL_HOST,
) -> index.SourceResult:
  return await resolver.resolve(
      source,
      str(base_dir),
      category,
      internal_host,
      ROUTING_PREFIX_RE,
      ALLOWED_HOSTS,
      LIMITS,
  )


@pytest.mark.parametrize(
    'source,origin', [
        ('photo.jpg', Origin.LOCAL),
        ('photos/cat.jpg', Origin.LOCAL),
        ('httpfoo', Origin.LOCAL),
        ('https://example.com/api/v1/photo.jpg', Origin.INTERNAL),
        ('http://www.example.com/api/v1/photos/cat.jpg', Origin.INTERNAL),
        ('http://example.com:3000/api/v1/photo.jpg', Origin.INTERNAL),
        ('https://EXAMPLE.com/api/v1/photo.jpg?v=2', Origin.INTERNAL),
    ],
    ids=[
        'local',
        'local_subdir',
        'http_prefixed_name',
        'internal',
        'internal_www',
        'internal_port_ignored',
        'internal_case_and_query',
    ])
@pytest.mark.asyncio
async def test_local_sources(
    resolver: SourceResolver,
    fetcher: RecordingFetcher,
    base_dir: Path,
    source: str,
    origin: Origin,
) -> None:
  result = await resolve(resolver, source, base_dir)

  assert result.data == PHOTO
  assert result.origin == origin
  assert not result.is_fallback
  assert fetcher.calls == []


@pytest.mark.parametrize(
    'source,category', [
        ('', 'normal'),
        ('', 'avatar'),
        ('../secret.jpg', 'normal'),
        ('photos/../../secret.jpg', 'avatar'),
        ('missing.jpg', 'normal'),
        ('photos', 'normal'),
        ('big.jpg', 'normal'),
        ('/placeholder/noimage.jpg', 'avatar'),
        ('httpbar', 'normal'),
        ('https://example.com/api/v1/../../secret.jpg', 'normal'),
        ('https://example.com/api/v1/%2e%2e/secret.jpg', 'normal'),
        ('https://example.com/uploads/photo.jpg', 'normal'),
        ('https://example.com/api/v1/missing.jpg', 'avatar'),
    ],
    ids=[
        'empty_normal',
        'empty_avatar',
        'traversal',
        'inner_traversal',
        'missing',
        'directory',
        'too_large',
        'default_placeholder',
        'http_prefixed_missing',
        'internal_dot_segments',
        'internal_encoded_traversal',
        'internal_without_prefix',
        'internal_missing',
    ])
@pytest.mark.asyncio
async def test_local_fallbacks(
    resolver: SourceResolver,
    fetcher: RecordingFetcher,
    base_dir: Path,
    source: str,
    category: Category,
) -> None:
  result = await resolve(resolver, source, base_dir, category)

  assert result.is_fallback
  assert result.data == FALLBACK[category]
  assert fetcher.calls == []


@pytest.mark.parametrize(
    'source,category', [
        ('https://disallowed.test/img.jpg', 'normal'),
        ('https://disallowed.test/img.jpg', 'avatar'),
        ('https://sub.allowed.test/img.jpg', 'normal'),
        ('https://ports.test/img.jpg', 'normal'),
        ('ftp://allowed.test/img.jpg', 'normal'),
        ('file://allowed.test/etc/passwd', 'normal'),
        ('javascript://allowed.test/%0aalert(1)', 'avatar'),
    ],
    ids=[
        'disallowed_host',
        'disallowed_host_avatar',
        'subdomain_not_implied',
        'port_specific_entry',
        'ftp',
        'file',
        'javascript',
    ])
@pytest.mark.asyncio
async def test_remote_rejected_without_io(
    resolver: SourceResolver,
    fetcher: RecordingFetcher,
    base_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
    source: str,
    category: Category,
) -> None:

  def no_local_read(*_: object) -> None:
    raise AssertionError('local read attempted')

  monkeypatch.setattr(index, 'read_local_file', no_local_read)

  result = await resolve(resolver, source, base_dir, category)

  assert result.is_fallback
  assert result.data == FALLBACK[category]
  assert fetcher.calls == []


def test_read_local_opens_real_path(base_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
  os.symlink(base_dir / 'photos' / 'cat.jpg', base_dir / 'alias.jpg')
  opened: list[str] = []
  os_open = os.open

  def recording_open(path: str, flags: int, *args: int) -> int:
    opened.append(path)
    return os_open(path, flags, *args)

  monkeypatch.setattr(index.os, 'open', recording_open)

  assert index.read_local_file(LocalPath('alias.jpg'), str(base_dir), LIMITS.max_bytes) == PHOTO
  assert opened == [os.path.realpath(base_dir / 'photos' / 'cat.jpg')]


def test_read_local_rejects_symlink_swapped_after_check(
    tmp_path: Path,
    base_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
  resolve_safe_path = index.resolve_safe_path

  def swap_after_check(base: str, candidate: str) -> Optional[str]:
    real_path = resolve_safe_path(base, candidate)
    os.remove(base_dir / 'photo.jpg')
    os.symlink(tmp_path / 'secret.jpg', base_dir / 'photo.jpg')
    return real_path

  monkeypatch.setattr(index, 'resolve_safe_path', swap_after_check)

  result = index.read_local_file(LocalPath('photo.jpg'), str(base_dir), LIMITS.max_bytes)
  assert isinstance(result, Rejected)


def test_read_local_bounded_when_file_grows(base_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
  # Size reported before the read is stale; the read itself stops past the cap.
  monkeypatch.setattr(index.os, 'fstat', lambda _: os.stat_result((0,) * 10))

  result = index.read_local_file(LocalPath('big.jpg'), str(base_dir), LIMITS.max_bytes)
  assert result == Rejected('file too large')
  assert index.read_local_file(LocalPath('photo.jpg'), str(base_dir), LIMITS.max_bytes) == PHOTO


@pytest.mark.parametrize(
    'source,expected_url', [
        ('https://allowed.test/img.jpg', 'https://allowed.test/img.jpg'),
        ('http://ALLOWED.test/a/b.png?x=1', 'http://allowed.test/a/b.png?x=1'),
        ('https://ports.test:8443/img.jpg', 'https://ports.test:8443/img.jpg'),
    ],
    ids=['https', 'http_query', 'host_with_port'])
@pytest.mark.asyncio
async def test_remote_fetched(
    resolver: SourceResolver,
    fetcher: RecordingFetcher,
    base_dir: Path,
    source: str,
    expected_url: str,
) -> None:
  result = await resolve(resolver, source, base_dir)

  assert result.data == REMOTE
  assert result.origin == Origin.REMOTE
  assert fetcher.calls == [(expected_url, LIMITS.timeout, LIMITS.max_bytes)]


@pytest.mark.asyncio
async def test_remote_without_internal_host(
    resolver: SourceResolver, fetcher: RecordingFetcher, base_dir: Path) -> None:
  result = await resolve(
      resolver, 'https://example.com/api/v1/photo.jpg', base_dir, internal_host=None)

  assert result.is_fallback
  assert fetcher.calls == []


@pytest.mark.parametrize(
    'response,error', [
        (FetchedResponse(status=404, content_type='image/jpeg', body=b'nope'), None),
        (FetchedResponse(status=302, content_type='image/jpeg', body=b''), None),
        (FetchedResponse(status=500, content_type='image/jpeg', body=b'err'), None),
        (FetchedResponse(status=200, content_type='text/html', body=b'<html>'), None),
        (FetchedResponse(status=200, content_type=None, body=REMOTE), None),
        (FetchedResponse(status=200, content_type='', body=REMOTE), None),
        (FetchedResponse(status=200, content_type='image/x-icon', body=REMOTE), None),
        (None, FetchError('TimeoutError: ')),
        (None, FetchError('response exceeds 1024 bytes')),
    ],
    ids=[
        'not_found',
        'redirect',
        'server_error',
        'html',
        'missing_content_type',
        'empty_content_type',
        'unlisted_image_type',
        'timeout',
        'oversize',
    ])
@pytest.mark.asyncio
async def test_remote_failures(
    base_dir: Path,
    response: Optional[FetchedResponse],
    error: Optional[Exception],
) -> None:
  fetcher = RecordingFetcher(response=response, error=error)
  resolver = SourceResolver(fetcher, default_fallback_images)

  result = await resolve(resolver, 'https://allowed.test/img.jpg', base_dir, 'avatar')

  assert result.is_fallback
  assert result.data == FALLBACK['avatar']
  assert len(fetcher.calls) == 1


@pytest.mark.parametrize(
    'content_type', [
        'image/jpeg',
        'IMAGE/PNG',
        'image/webp; charset=binary',
        ' image/svg+xml ;q=1',
    ],
    ids=['jpeg', 'upper', 'params', 'padded'])
@pytest.mark.asyncio
async def test_remote_content_types(base_dir: Path, content_type: str) -> None:
  fetcher = RecordingFetcher(
      response=FetchedResponse(status=200, content_type=content_type, body=REMOTE))
  resolver = SourceResolver(fetcher, default_fallback_images)

  result = await resolve(resolver, 'https://allowed.test/img', base_dir)

  assert result.data == REMOTE


@pytest.mark.parametrize(
    'value,expected', [
        (None, ''),
        ('image/JPEG; charset=x', 'image/jpeg'),
        ('text/plain', 'text/plain'),
    ],
    ids=['none', 'params', 'plain'])
def test_normalize_content_type(value: Optional[str], expected: str) -> None:
  assert normalize_content_type(value) == expected


@pytest.mark.parametrize(
    'source,absolute', [
        ('https://a.test/x.jpg', True),
        ('http://a.test', True),
        ('ftp://a.test/x', True),
        ('httpfoo', False),
        ('http:foo', False),
        ('//a.test/x.jpg', False),
        ('photos/cat.jpg', False),
        ('/abs/path.jpg', False),
        ('my photo.jpg', False),
        ('bad\x00url', False),
    ],
    ids=[
        'https',
        'no_path',
        'ftp',
        'http_prefixed',
        'scheme_without_host',
        'scheme_relative',
        'relative_path',
        'absolute_path',
        'space',
        'nul',
    ])
def test_parse_absolute_url(source: str, absolute: bool) -> None:
  assert (parse_absolute_url(source) is not None) == absolute


@pytest.mark.asyncio
@respx.mock
async def test_httpx_fetcher_success() -> None:
  respx.get('https://allowed.test/img.jpg').mock(
      return_value=httpx.Response(
          200, headers={'content-type': 'image/png'}, content=REMOTE))

  res = await HttpxFetcher().get('https://allowed.test/img.jpg', 1.0, 1024)

  assert res == FetchedResponse(status=200, content_type='image/png', body=REMOTE)


@pytest.mark.asyncio
@respx.mock(assert_all_called=False)
async def test_httpx_fetcher_does_not_follow_redirects(respx_mock: respx.MockRouter) -> None:
  respx_mock.get('https://allowed.test/img.jpg').mock(
      return_value=httpx.Response(302, headers={'location': 'http://169.254.169.254/'}))
  metadata = respx_mock.get('http://169.254.169.254/')

  res = await HttpxFetcher().get('https://allowed.test/img.jpg', 1.0, 1024)

  assert res.status == 302
  assert not metadata.called


@pytest.mark.asyncio
@respx.mock
async def test_httpx_fetcher_declared_size_too_large() -> None:
  respx.get('https://allowed.test/img.jpg').mock(
      return_value=httpx.Response(
          200, headers={'content-type': 'image/png'}, content=b'x' * 2048))

  with pytest.raises(FetchError):
    await HttpxFetcher().get('https://allowed.test/img.jpg', 1.0, 1024)


@pytest.mark.asyncio
@respx.mock
async def test_httpx_fetcher_transport_error() -> None:
  respx.get('https://allowed.test/img.jpg').mock(side_effect=httpx.ConnectError('refused'))

  with pytest.raises(FetchError) as e:
    await HttpxFetcher().get('https://allowed.test/img.jpg', 1.0, 1024)
  assert isinstance(e.value.__cause__, httpx.ConnectError)


@pytest.mark.asyncio
async def test_httpx_fetcher_streamed_size_too_large() -> None:
  chunks_sent = 0

  async def body() -> AsyncIterator[bytes]:
    nonlocal chunks_sent
    for _ in range(100):
      chunks_sent += 1
      yield b'x' * 512

  def handler(_: httpx.Request) -> httpx.Response:
    return httpx.Response(200, headers={'content-type': 'image/png'}, content=body())

  async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
    with pytest.raises(FetchError):
      await HttpxFetcher(client).get('https://allowed.test/img.jpg', 1.0, 1024)

  assert chunks_sent < 100


@pytest.mark.asyncio
async def test_httpx_fetcher_timeout() -> None:

  async def handler(_: httpx.Request) -> httpx.Response:
    await asyncio.sleep(5)
    return httpx.Response(200, headers={'content-type': 'image/png'}, content=REMOTE)

  async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(FetchError):
      await HttpxFetcher(client).get('https://allowed.test/img.jpg', 0.05, 1024)
    assert loop.time() - started < 2


@pytest.mark.asyncio
@respx.mock
async def test_resolver_with_httpx_fetcher(base_dir: Path) -> None:
  respx.get('https://allowed.test/img.jpg').mock(
      return_value=httpx.Response(
          200, headers={'content-type': 'image/jpeg'}, content=REMOTE))
  respx.get('https://allowed.test/big.jpg').mock(
      return_value=httpx.Response(
          200, headers={'content-type': 'image/jpeg'}, content=b'x' * 4096))

  resolver = SourceResolver(HttpxFetcher(), default_fallback_images)

  ok = await resolve(resolver, 'https://allowed.test/img.jpg', base_dir)
  assert ok.data == REMOTE

  too_big = await resolve(resolver, 'https://allowed.test/big.jpg', base_dir)
  assert too_big.is_fallback
  assert too_big.data == FALLBACK['normal']
