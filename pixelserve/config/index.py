import dataclasses
import re
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

import httpx

IdTransform = Callable[[str], str]
FolderResolver = Callable[[Any, Optional[str]], Awaitable[Optional[str]] | Optional[str]]

ROUTING_PREFIX_RE = re.compile(r'^/api/v1/')
DEFAULT_CACHE_CONTROL = 'public, max-age=86400, stale-while-revalidate=604800'

ENV_PREFIX = 'PIXELSERVE_'

hostname_re = re.compile(r'^[\w.-]+$')


class ConfigValidationError(ValueError):

  def __init__(self, field: str, reason: str):
    super().__init__(f'invalid option "{field}": {reason}')
    self.field = field
    self.reason = reason


def identity(id: str) -> str:
  return id


@dataclasses.dataclass(eq=True, frozen=True)
class Bounds:
  min_width: int
  max_width: int
  min_height: int
  max_height: int
  default_quality: int


@dataclasses.dataclass(frozen=True)
class HandlerConfig:
  base_dir: str
  id_transform: IdTransform = identity
  folder_resolver: Optional[FolderResolver] = None
  internal_host: Optional[str] = None
  routing_prefix: re.Pattern[str] = ROUTING_PREFIX_RE
  allowed_remote_hosts: frozenset[str] = frozenset()
  cache_control: str = DEFAULT_CACHE_CONTROL
  etag: bool = True
  min_width: int = 50
  max_width: int = 4000
  min_height: int = 50
  max_height: int = 4000
  default_quality: int = 80
  request_timeout_ms: int = 5000
  max_download_bytes: int = 5_000_000

  @property
  def bounds(self) -> Bounds:
    return Bounds(
        min_width=self.min_width,
        max_width=self.max_width,
        min_height=self.min_height,
        max_height=self.max_height,
        default_quality=self.default_quality)

  @property
  def request_timeout(self) -> float:
    return self.request_timeout_ms / 1000

  @classmethod
  def create(cls, **options: Any) -> 'HandlerConfig':
    """Validate user supplied options and fill in defaults.

    Raises ConfigValidationError on the first offending option. Option names
    follow the dataclass fields; anything else is rejected.
    """
    known = {f.name for f in dataclasses.fields(cls)}
    for name in options:
      if name not in known:
        raise ConfigValidationError(name, 'unknown option')

    values: dict[str, Any] = {}

    base_dir = options.get('base_dir')
    if not isinstance(base_dir, str) or base_dir == '':
      raise ConfigValidationError('base_dir', 'is required')
    values['base_dir'] = base_dir

    id_transform = options.get('id_transform')
    if id_transform is not None:
      if not callable(id_transform):
        raise ConfigValidationError('id_transform', 'must be callable')
      values['id_transform'] = id_transform

    folder_resolver = options.get('folder_resolver')
    if folder_resolver is not None:
      if not callable(folder_resolver):
        raise ConfigValidationError('folder_resolver', 'must be callable')
      values['folder_resolver'] = folder_resolver

    internal_host = options.get('internal_host')
    if internal_host is not None:
      values['internal_host'] = normalize_internal_host(internal_host)

    routing_prefix = options.get('routing_prefix')
    if routing_prefix is not None:
      values['routing_prefix'] = compile_routing_prefix(routing_prefix)

    allowed_remote_hosts = options.get('allowed_remote_hosts')
    if allowed_remote_hosts is not None:
      values['allowed_remote_hosts'] = to_host_set(allowed_remote_hosts)

    cache_control = options.get('cache_control')
    if cache_control is not None:
      if not isinstance(cache_control, str) or cache_control == '':
        raise ConfigValidationError('cache_control', 'must be a non-empty string')
      values['cache_control'] = cache_control

    etag = options.get('etag')
    if etag is not None:
      if not isinstance(etag, bool):
        raise ConfigValidationError('etag', 'must be a boolean')
      values['etag'] = etag

    for name in [
        'min_width',
        'max_width',
        'min_height',
        'max_height',
        'request_timeout_ms',
        'max_download_bytes',
    ]:
      if options.get(name) is not None:
        values[name] = positive_int(name, options[name])

    default_quality = options.get('default_quality')
    if default_quality is not None:
      default_quality = positive_int('default_quality', default_quality)
      if 100 < default_quality:
        raise ConfigValidationError('default_quality', 'must be between 1 and 100')
      values['default_quality'] = default_quality

    config = cls(**values)

    if config.max_width < config.min_width:
      raise ConfigValidationError('min_width', 'must not be greater than max_width')
    if config.max_height < config.min_height:
      raise ConfigValidationError('min_height', 'must not be greater than max_height')

    return config

  @classmethod
  def from_environ(cls, environ: Mapping[str, str], **overrides: Any) -> 'HandlerConfig':
    options: dict[str, Any] = {}

    for suffix, (name, convert) in ENV_OPTIONS.items():
      key = f'{ENV_PREFIX}{suffix}'
      if key not in environ or environ[key] == '':
        continue
      options[name] = convert(name, environ[key])

    return cls.create(**{**options, **overrides})


def positive_int(name: str, value: Any) -> int:
  if isinstance(value, bool) or not isinstance(value, int):
    raise ConfigValidationError(name, 'must be an integer')
  if value <= 0:
    raise ConfigValidationError(name, 'must be positive')
  return value


def normalize_internal_host(value: Any) -> str:
  if not isinstance(value, str) or value == '':
    raise ConfigValidationError('internal_host', 'must be a hostname or URL')

  if hostname_re.match(value):
    return value.lower()

  try:
    url = httpx.URL(value)
  except httpx.InvalidURL:
    raise ConfigValidationError('internal_host', 'must be a hostname or URL')

  if url.scheme not in ['http', 'https'] or url.host == '':
    raise ConfigValidationError('internal_host', 'must be a hostname or URL')

  return url.host


def compile_routing_prefix(value: Any) -> re.Pattern[str]:
  if isinstance(value, re.Pattern):
    return value
  if not isinstance(value, str):
    raise ConfigValidationError('routing_prefix', 'must be a pattern')
  try:
    return re.compile(value)
  except re.error as e:
    raise ConfigValidationError('routing_prefix', str(e))


def to_host_set(value: Any) -> frozenset[str]:
  if isinstance(value, str) or not isinstance(value, Iterable):
    raise ConfigValidationError('allowed_remote_hosts', 'must be a collection of hosts')

  hosts = set()
  for host in value:
    if not isinstance(host, str) or host == '':
      raise ConfigValidationError('allowed_remote_hosts', f'invalid host: {host!r}')
    hosts.add(host.lower())
  return frozenset(hosts)


def env_str(_: str, value: str) -> str:
  return value


def env_int(name: str, value: str) -> int:
  try:
    return int(value)
  except ValueError:
    raise ConfigValidationError(name, f'must be an integer: {value}')


def env_bool(name: str, value: str) -> bool:
  match value.strip().lower():
    case 'true' | '1' | 'yes':
      return True
    case 'false' | '0' | 'no':
      return False
    case _:
      raise ConfigValidationError(name, f'must be a boolean: {value}')


def env_list(_: str, value: str) -> list[str]:
  return [h.strip() for h in value.split(',') if h.strip() != '']


ENV_OPTIONS: dict[str, tuple[str, Callable[[str, str], Any]]] = {
    'BASE_DIR': ('base_dir', env_str),
    'INTERNAL_HOST': ('internal_host', env_str),
    'ROUTING_PREFIX': ('routing_prefix', env_str),
    'ALLOWED_REMOTE_HOSTS': ('allowed_remote_hosts', env_list),
    'CACHE_CONTROL': ('cache_control', env_str),
    'ETAG': ('etag', env_bool),
    'MIN_WIDTH': ('min_width', env_int),
    'MAX_WIDTH': ('max_width', env_int),
    'MIN_HEIGHT': ('min_height', env_int),
    'MAX_HEIGHT': ('max_height', env_int),
    'DEFAULT_QUALITY': ('default_quality', env_int),
    'REQUEST_TIMEOUT_MS': ('request_timeout_ms', env_int),
    'MAX_DOWNLOAD_BYTES': ('max_download_bytes', env_int),
}
