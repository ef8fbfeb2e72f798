import datetime
import logging
import sys
from contextvars import ContextVar
from logging import Logger
from typing import Any

from pythonjsonlogger.json import JsonFormatter

import pixelserve

log_context: ContextVar[dict[str, Any]] = ContextVar('log_context', default={})


class PixelJsonFormatter(JsonFormatter):

  def __init__(self) -> None:
    super().__init__(json_ensure_ascii=False)

  def add_fields(self, log_record: Any, record: Any, message_dict: Any) -> None:
    log_record['_ts'] = datetime.datetime.now(datetime.UTC).strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    if log_record.get('level'):
      log_record['level'] = log_record['level'].upper()
    else:
      log_record['level'] = record.levelname

    log_record['version'] = pixelserve.version

    super().add_fields(log_record, record, message_dict)


def init_logging() -> Logger:
  logging.getLogger('httpx').setLevel(logging.WARNING)
  logging.getLogger('httpcore').setLevel(logging.WARNING)

  log = logging.getLogger('pixelserve')
  log.setLevel(logging.DEBUG)
  for h in log.handlers:
    log.removeHandler(h)

  log_handler = logging.StreamHandler()
  log_handler.setFormatter(PixelJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log_handler.setStream(sys.stderr)
  log.addHandler(log_handler)
  log.propagate = False

  return log


logger = init_logging()


def log_debug(message: str, dict: dict[str, Any]) -> None:
  logger.debug({
      'message': message,
      **log_context.get(),
      **dict,
  })


def log_warning(message: str, dict: dict[str, Any]) -> None:
  logger.warning({
      'message': message,
      **log_context.get(),
      **dict,
  })


def log_error(message: str, dict: dict[str, Any]) -> None:
  logger.error({
      'message': message,
      **log_context.get(),
      **dict,
  })
