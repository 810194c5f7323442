import datetime
import logging
import sys
from logging import Logger
from typing import Any, Self

from pythonjsonlogger.jsonlogger import JsonFormatter

import imgoptim


class MyJsonFormatter(JsonFormatter):

  def __init__(self) -> None:
    super().__init__(json_ensure_ascii=False)

  def add_fields(self, log_record: Any, record: Any, message_dict: Any) -> None:
    log_record['_ts'] = datetime.datetime.now(datetime.UTC).strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    if log_record.get('level'):
      log_record['level'] = log_record['level'].upper()
    else:
      log_record['level'] = record.levelname

    log_record['version'] = imgoptim.version

    super().add_fields(log_record, record, message_dict)


def init_logging(name: str) -> Logger:
  # https://stackoverflow.com/a/11548754/1160341
  logger = logging.getLogger()
  logger.setLevel(logging.DEBUG)
  for h in logger.handlers:
    logger.removeHandler(h)

  logging.getLogger('botocore').setLevel(logging.WARNING)
  logging.getLogger('urllib3').setLevel(logging.INFO)
  logging.getLogger('httpx').setLevel(logging.WARNING)
  logging.getLogger('httpcore').setLevel(logging.WARNING)

  log = logging.getLogger(name)
  if not any(isinstance(h.formatter, MyJsonFormatter) for h in log.handlers):
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(MyJsonFormatter())
    log_handler.setLevel(logging.DEBUG)
    log_handler.setStream(sys.stderr)
    log.addHandler(log_handler)
  log.propagate = False

  return log


class ContextLogger:
  """Logger carrying a per-request context merged into every record."""

  def __init__(self, log: Logger, context: dict[str, Any] | None = None):
    self.log = log
    self.context = dict(context or {})

  def bind(self, **context: Any) -> Self:
    return type(self)(self.log, {**self.context, **context})

  def log_debug(self, message: str, dict: dict[str, Any] | None = None) -> None:
    self.log.debug({
        'message': message,
        **self.context,
        **(dict or {}),
    })

  def log_info(self, message: str, dict: dict[str, Any] | None = None) -> None:
    self.log.info({
        'message': message,
        **self.context,
        **(dict or {}),
    })

  def log_warning(self, message: str, dict: dict[str, Any] | None = None) -> None:
    self.log.warning({
        'message': message,
        **self.context,
        **(dict or {}),
    })

  def log_error(self, message: str, dict: dict[str, Any] | None = None) -> None:
    self.log.error({
        'message': message,
        **self.context,
        **(dict or {}),
    })
