import asyncio
import dataclasses
import hashlib
import os
import posixpath
import re
import time
from http import HTTPStatus
from typing import Any, Awaitable, Callable, Optional

from pixelserve.config.index import HandlerConfig
from pixelserve.fallback.index import FallbackImages, FallbackUnavailableError, default_fallback_images
from pixelserve.folder.index import FolderAuthorizer
from pixelserve.log import log_context, log_debug, log_error, log_warning
from pixelserve.params.index import ImageRequest, ParameterValidationError, parse_params
from pixelserve.source.index import (
    HttpxFetcher,
    Limits,
    RemoteFetcher,
    SourceResolver,
    mime_types,
    parse_absolute_url
)
from pixelserve.transform.index import TransformError, TransformOptions, Transformer, VipsTransformer
from pixelserve.typing import Category, Headers, ImageFormat, RawParams

FALLBACK_CACHE_CONTROL = 'public, max-age=60'
DEFAULT_FILENAME = 'image'

unsafe_filename_chars_re = re.compile(r'["\\\x00-\x1f\x7f]')


class FatalServeError(Exception):
  pass


@dataclasses.dataclass(frozen=True)
class ServeRequest:
  params: RawParams
  headers: Headers = dataclasses.field(default_factory=dict)
  context: Any = None

  def header(self, name: str) -> Optional[str]:
    name = name.lower()
    for k, v in self.headers.items():
      if k.lower() == name:
        return v
    return None


@dataclasses.dataclass(frozen=True)
class ServeResponse:
  status: HTTPStatus
  headers: dict[str, str]
  body: Optional[bytes]


def sanitize_filename(name: str) -> str:
  return unsafe_filename_chars_re.sub('_', name)


def output_filename(source: str, format: ImageFormat) -> str:
  url = parse_absolute_url(source)
  path = url.path if url is not None else source

  stem, _ = os.path.splitext(posixpath.basename(path))
  if stem == '':
    stem = DEFAULT_FILENAME

  return sanitize_filename(f'{stem}.{format}')


def content_disposition(filename: str) -> str:
  return f'inline; filename="{sanitize_filename(filename)}"'


def compute_etag(data: bytes) -> str:
  return f'"{hashlib.sha1(data).hexdigest()}"'


class PixelServer:

  def __init__(
      self,
      config: HandlerConfig,
      fetcher: Optional[RemoteFetcher] = None,
      transformer: Optional[Transformer] = None,
      fallback_images: FallbackImages = default_fallback_images,
  ):
    self.config = config
    self.fallback_images = fallback_images
    self.resolver = SourceResolver(fetcher or HttpxFetcher(), fallback_images)
    self.transformer = transformer or VipsTransformer()
    self.folders = FolderAuthorizer(config.folder_resolver, config.id_transform, config.request_timeout)
    self.limits = Limits(timeout_ms=config.request_timeout_ms, max_bytes=config.max_download_bytes)

  async def fallback(self, category: Category) -> ServeResponse:
    asset = self.fallback_images.asset(category)
    try:
      data = await self.fallback_images.load(category)
    except FallbackUnavailableError as e:
      log_error('fallback unavailable', {'category': category, 'reason': str(e)})
      raise FatalServeError(f'fallback image unavailable: {category}') from e

    return ServeResponse(
        status=HTTPStatus.OK,
        headers={
            'Content-Type': asset.content_type,
            'Content-Disposition': content_disposition(asset.download_name),
            'Cache-Control': FALLBACK_CACHE_CONTROL,
            'Content-Length': str(len(data)),
        },
        body=data)

  async def base_dir_for(self, request: ServeRequest, params: ImageRequest) -> str:
    if params.visibility != 'private':
      return self.config.base_dir

    folder = await self.folders.authorize(self.config.base_dir, request.context, params.identity)
    log_debug('folder', {'path': folder.path, 'resolved': folder.resolved, 'timed_out': folder.timed_out})
    return folder.path

  async def process(self, request: ServeRequest, params: ImageRequest) -> ServeResponse:
    base_dir = await self.base_dir_for(request, params)

    source = await self.resolver.resolve(
        params.source,
        base_dir,
        params.category,
        self.config.internal_host,
        self.config.routing_prefix,
        self.config.allowed_remote_hosts,
        self.limits,
    )
    if source.is_fallback:
      log_debug('source fallback', {'reason': source.reason})
      return await self.fallback(params.category)

    options = TransformOptions(
        width=params.width, height=params.height, format=params.format, quality=params.quality)

    start_ns = time.time_ns()
    try:
      body = await asyncio.to_thread(self.transformer.transform, source.data, options)
    except TransformError as e:
      log_warning('transform failed', {'reason': str(e), 'origin': source.origin.name})
      return await self.fallback(params.category)
    vips_us = (time.time_ns() - start_ns) // 1000

    headers = {
        'Content-Type': mime_types[params.format],
        'Content-Disposition': content_disposition(output_filename(params.source, params.format)),
        'Cache-Control': self.config.cache_control,
    }

    if self.config.etag:
      etag = compute_etag(body)
      headers['ETag'] = etag
      if request.header('If-None-Match') == etag:
        log_debug('not modified', {'etag': etag})
        return ServeResponse(
            status=HTTPStatus.NOT_MODIFIED,
            headers={
                'Cache-Control': self.config.cache_control,
                'ETag': etag,
            },
            body=None)

    headers['Content-Length'] = str(len(body))

    log_debug('transformed', {
        'origin': source.origin.name,
        'vips_us': vips_us,
        'img_size': len(body),
    })

    return ServeResponse(status=HTTPStatus.OK, headers=headers, body=body)

  async def run(self, request: ServeRequest) -> ServeResponse:
    match parse_params(request.params, self.config.bounds):
      case ParameterValidationError() as e:
        # Client input errors are answered like any other miss: 200 with the
        # normal fallback. The category is unknown at this point.
        log_warning('invalid parameter', {'field': e.field, 'reason': e.reason})
        return await self.fallback('normal')
      case ImageRequest() as params:
        pass
      case _:
        raise Exception('system error')

    log_context.set({
        'src': params.source,
        'format': params.format,
        'category': params.category,
    })

    try:
      return await self.process(request, params)
    except FatalServeError:
      raise
    except FallbackUnavailableError as e:
      log_error('fallback unavailable', {'reason': str(e)})
      raise FatalServeError(f'fallback image unavailable: {params.category}') from e
    except Exception as e:
      log_error('unexpected error', {'reason': str(e), 'type': type(e).__name__})
      return await self.fallback(params.category)

  async def serve(self, request: ServeRequest) -> ServeResponse:
    token = log_context.set({})
    try:
      return await self.run(request)
    finally:
      log_context.reset(token)


def register_serve(**options: Any) -> Callable[[ServeRequest], Awaitable[ServeResponse]]:
  config = HandlerConfig.create(**options)
  server = PixelServer(config)

  log_debug('registered', {
      'base_dir': config.base_dir,
      'internal_host': config.internal_host,
      'allowed_remote_hosts': sorted(config.allowed_remote_hosts),
      'etag': config.etag,
  })

  return server.serve
