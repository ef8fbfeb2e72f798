import asyncio
import contextvars
import dataclasses
import inspect
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Optional

from pixelserve.config.index import FolderResolver, IdTransform
from pixelserve.log import log_debug, log_error, log_warning

RESOLVER_THREADS = 4


@dataclasses.dataclass(eq=True, frozen=True)
class FolderResult:
  path: str
  resolved: bool = False
  timed_out: bool = False


class FolderAuthorizer:
  """Races the external folder resolver against a timer.

  A resolver that loses the race is left running but its outcome is dropped.
  The base directory is used whenever no usable folder comes back in time.
  Sync resolvers run on a pool of their own, so hung calls only ever hold
  those threads.
  """

  def __init__(
      self,
      resolver: Optional[FolderResolver],
      id_transform: IdTransform,
      timeout: float,
      max_threads: int = RESOLVER_THREADS,
  ):
    self.resolver = resolver
    self.id_transform = id_transform
    self.timeout = timeout
    self.abandoned: set[asyncio.Task[Any]] = set()
    self.executor = ThreadPoolExecutor(max_workers=max_threads, thread_name_prefix='folder-resolver')

  async def call(self, context: Any, identity: Optional[str]) -> Any:
    assert self.resolver is not None

    if inspect.iscoroutinefunction(self.resolver):
      result = self.resolver(context, identity)
    else:
      loop = asyncio.get_running_loop()
      ctx = contextvars.copy_context()
      result = await loop.run_in_executor(self.executor, ctx.run, self.resolver, context, identity)

    if inspect.isawaitable(result):
      result = await result
    return result

  def forget(self, task: asyncio.Task[Any]) -> None:
    self.abandoned.discard(task)
    if not task.cancelled() and task.exception() is not None:
      log_debug('abandoned folder resolver failed', {'reason': str(task.exception())})

  async def authorize(self, base_dir: str, context: Any, identity: Optional[str]) -> FolderResult:
    if self.resolver is None:
      return FolderResult(path=base_dir)

    if identity is not None:
      try:
        identity = self.id_transform(identity)
      except Exception as e:
        log_error('id transform failed', {'reason': str(e)})
        return FolderResult(path=base_dir)

    task = asyncio.ensure_future(self.call(context, identity))
    done, _ = await asyncio.wait({task}, timeout=self.timeout)

    if task not in done:
      self.abandoned.add(task)
      task.add_done_callback(self.forget)
      log_warning('folder resolver timed out', {'timeout': self.timeout})
      return FolderResult(path=base_dir, timed_out=True)

    try:
      folder = task.result()
    except Exception as e:
      log_error('folder resolver failed', {'reason': str(e)})
      return FolderResult(path=base_dir)

    if not folder:
      return FolderResult(path=base_dir)

    return FolderResult(path=os.fspath(folder), resolved=True)
