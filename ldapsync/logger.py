#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
"""
Logger -- sets the logging and provides a `logger` global object.
"""

import contextlib
import logging
import time
from datetime import datetime, timezone
from types import TracebackType
from typing import Mapping, Optional, Tuple, Type, Union

import ecs_logging
from dateutil.tz import tzlocal

from ldapsync import __version__

logger_initialized = False


class ColorFormatter(logging.Formatter):
    GREY = "\x1b[38;20m"
    GREEN = "\x1b[32;20m"
    YELLOW = "\x1b[33;20m"
    RED = "\x1b[31;20m"
    BOLD_RED = "\x1b[31;1m"
    RESET = "\x1b[0m"
    COLORS = {
        logging.DEBUG: GREY,
        logging.INFO: GREEN,
        logging.WARNING: YELLOW,
        logging.ERROR: RED,
        logging.CRITICAL: BOLD_RED,
    }

    DATE_FMT = "%H:%M:%S"

    def __init__(self, prefix) -> None:
        self.custom_format = "[" + prefix + "][%(asctime)s][%(levelname)s] %(message)s"
        super().__init__(datefmt=self.DATE_FMT)
        self.local_tz = tzlocal()

    def converter(self, timestamp: float) -> datetime:
        dt = datetime.fromtimestamp(timestamp, self.local_tz)
        return dt.astimezone(timezone.utc)

    # override logging.Formatter to use an aware datetime object
    def formatTime(
        self, record: logging.LogRecord, datefmt: Optional[str] = None
    ) -> str:
        dt = self.converter(record.created)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat(timespec="milliseconds")

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        self._style._fmt = self.COLORS[record.levelno] + self.custom_format + self.RESET
        return super().format(record)


class JobLogger:
    """Logs on behalf of one reconciliation run.

    Every message is prefixed with the tenant and job ids, and the same ids are
    attached as ECS labels when logging to filebeat.
    """

    def __init__(self, tenant_id, job_id) -> None:
        self._prefix = f"[tenant {tenant_id}][job {job_id}]"
        self._extra = {
            "labels.tenant_id": str(tenant_id),
            "labels.job_id": str(job_id),
        }

    def isEnabledFor(self, level):
        return logger.isEnabledFor(level)

    def _log(self, level, msg, *args, **kwargs):
        logger.log(
            level,
            msg,
            *args,
            prefix=self._prefix,  # pyright: ignore
            extra=dict(self._extra),
            **kwargs,
        )

    def debug(self, msg, *args, **kwargs) -> None:
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg, *args, **kwargs) -> None:
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg, *args, **kwargs) -> None:
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg, *args, **kwargs) -> None:
        self._log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg, *args, exc_info: bool = True, **kwargs) -> None:
        self._log(logging.ERROR, msg, *args, exc_info=exc_info, **kwargs)


class ExtraLogger(logging.Logger):
    def _log(
        self,
        level: int,
        msg: str,
        args: Union[Mapping[str, object], Tuple[object, ...]],
        exc_info: Union[
            None,
            BaseException,
            bool,
            Tuple[Type[BaseException], BaseException, Optional[TracebackType]],
            Tuple[None, ...],
        ] = None,
        extra: Optional[Mapping[str, object]] = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        prefix=None,
    ) -> None:
        if (
            not (hasattr(self, "filebeat") and self.filebeat)  # pyright: ignore
            and prefix
        ):
            msg = f"{prefix} {msg}"

        extra = dict(extra) if extra else {}
        extra.update(
            {
                "service.type": "ldapsync",
                "service.version": __version__,
            }
        )
        super(ExtraLogger, self)._log(
            level, msg, args, exc_info, extra, stack_info, stacklevel
        )


def _get_extra_logger(name):
    # the logger class is only swapped while our own logger gets created
    previous_klass = logging.getLoggerClass()
    logging.setLoggerClass(ExtraLogger)
    try:
        return logging.getLogger(name)
    finally:
        logging.setLoggerClass(previous_klass)


logger: logging.Logger = _get_extra_logger("ldapsync")


def set_logger(log_level: Union[int, str] = logging.INFO, filebeat: bool = False):
    global logger
    global logger_initialized
    if filebeat:
        formatter = ecs_logging.StdlibFormatter()
    else:
        formatter = ColorFormatter("LDAPSYNC")

    if not logger_initialized:
        logger = _get_extra_logger("ldapsync")
        logger.handlers.clear()
        handler = logging.StreamHandler()
        logger.addHandler(handler)
        logger_initialized = True

    logger.propagate = False
    logger.setLevel(log_level)
    logger.handlers[0].setLevel(log_level)
    logger.handlers[0].setFormatter(formatter)
    logger.filebeat = filebeat  # pyright: ignore
    return logger


@contextlib.contextmanager
def timed_execution(name, func_name, slow_log=None):
    """Context manager to log time execution in DEBUG

    - name: prefix used for the log message
    - func_name: additional prefix for the function name
    - slow_log: if given a treshold time in seconds. if it runs faster, no log
      is emited
    """
    start = time.time()
    try:
        yield
    finally:
        delta = time.time() - start
        if slow_log is None or delta > slow_log:
            logger.debug(f"[{name}] {func_name} took {delta} seconds.")


set_logger()
