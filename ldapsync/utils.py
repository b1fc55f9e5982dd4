#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
import asyncio
import base64
import functools
import hashlib
import inspect
import time
from copy import deepcopy
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from ldapsync.logger import logger


def iso_utc(when: Optional[datetime] = None) -> str:
    if when is None:
        when = datetime.now(timezone.utc)
    return when.isoformat()


def hash_content(content: bytes) -> str:
    # S324 rule considers md5 unsafe, but it only fingerprints photos here
    return base64.b64encode(hashlib.md5(content).digest()).decode()  # noqa S324


def domain_from_dn(dn: Optional[str]) -> Optional[str]:
    """Builds a DNS-like domain out of the `dc=` components of a DN.

    `ou=People,dc=example,dc=com` -> `example.com`
    """
    if not dn:
        return None

    parts = []
    for rdn in dn.split(","):
        key, _, value = rdn.strip().partition("=")
        if key.strip().lower() == "dc" and value.strip():
            parts.append(value.strip())

    return ".".join(parts).lower() if parts else None


def split_patterns(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [pattern.strip() for pattern in value.split(",") if pattern.strip()]


def progress_steps(start: float, budget: float, count: int) -> Iterable[int]:
    """Spreads `budget` percentage points linearly over `count` items.

    Yields the integer percentage to report before handling each item.
    """
    if count == 0:
        return
    step = budget / count
    current = start
    for _ in range(count):
        yield int(current)
        current += step


class Counters:
    """
    A utility to provide code readability to managing a collection of counts
    """

    def __init__(self) -> None:
        self._storage = {}

    def increment(self, key: str, value: int = 1) -> None:
        self._storage[key] = self._storage.get(key, 0) + value

    def get(self, key: str) -> int:
        return self._storage.get(key, 0)

    def to_dict(self) -> Dict[str, int]:
        return deepcopy(self._storage)


class NonBlockingBoundedSemaphore(asyncio.BoundedSemaphore):
    """A bounded semaphore with non-blocking acquire implementation.

    This introduces a new try_acquire method, which will return if it can't acquire immediately.
    """

    def try_acquire(self) -> bool:
        if self.locked():
            return False

        self._value -= 1
        return True


class ConcurrentTasks:
    """Async task manager.

    Runs coroutines as tasks with a maximum concurrency value.

    - `max_concurrency`: max concurrent tasks allowed, default: 5
    """

    def __init__(self, max_concurrency: int = 5) -> None:
        self.tasks = []
        self._sem = NonBlockingBoundedSemaphore(max_concurrency)

    def __len__(self) -> int:
        return len(self.tasks)

    def _callback(self, task: asyncio.Task) -> None:
        self.tasks.remove(task)
        self._sem.release()
        if task.cancelled():
            logger.error(
                f"Task {task.get_name()} was cancelled",
            )
        elif task.exception():
            logger.error(
                f"Exception found for task {task.get_name()}", exc_info=task.exception()
            )

    def _add_task(self, coroutine: Callable, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coroutine(), name=name)
        self.tasks.append(task)
        task.add_done_callback(functools.partial(self._callback))
        return task

    def try_put(self, coroutine: Callable, name: Optional[str] = None) -> Optional[asyncio.Task]:
        """Tries to add a coroutine for immediate execution.

        If the number of running tasks reach `max_concurrency`, this
        function return a None task immediately
        """

        if self._sem.try_acquire():
            return self._add_task(coroutine, name=name)
        return None

    async def join(self) -> None:
        """Wait for all tasks to finish."""
        await asyncio.gather(*self.tasks, return_exceptions=True)


class RetryStrategy(Enum):
    CONSTANT = 0
    LINEAR_BACKOFF = 1
    EXPONENTIAL_BACKOFF = 2


class UnknownRetryStrategyError(Exception):
    pass


def retryable(
    retries: int = 3,
    interval: float = 1.0,
    strategy: RetryStrategy = RetryStrategy.LINEAR_BACKOFF,
    skipped_exceptions: Optional[Any] = None,
) -> Callable:
    def wrapper(func):
        if skipped_exceptions is None:
            processed_skipped_exceptions = []
        elif not isinstance(skipped_exceptions, list):
            processed_skipped_exceptions = [skipped_exceptions]
        else:
            processed_skipped_exceptions = skipped_exceptions

        if inspect.isfunction(func) and not inspect.iscoroutinefunction(func):
            return retryable_sync_function(
                func, retries, interval, strategy, processed_skipped_exceptions
            )
        else:
            msg = f"Retryable decorator is not implemented for {func.__class__}."
            raise NotImplementedError(msg)

    return wrapper


def _skipped(error: Exception, skipped_exceptions: List[Any]) -> bool:
    return any(isinstance(error, klass) for klass in skipped_exceptions)


def retryable_sync_function(
    func: Callable,
    retries: int,
    interval: Union[float, int],
    strategy: RetryStrategy,
    skipped_exceptions: List[Any],
) -> Callable:
    @functools.wraps(func)
    def wrapped(*args, **kwargs):
        retry = 1
        while retry <= retries:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if retry >= retries or _skipped(e, skipped_exceptions):
                    raise e
                logger.debug(
                    f"Retrying ({retry} of {retries}) with interval: {interval} and strategy: {strategy.name}"
                )
                time.sleep(time_to_sleep_between_retries(strategy, interval, retry))
                retry += 1

    return wrapped


def time_to_sleep_between_retries(
    strategy: RetryStrategy, interval: Union[float, int], retry: int
) -> Union[float, int]:
    match strategy:
        case RetryStrategy.CONSTANT:
            return interval
        case RetryStrategy.LINEAR_BACKOFF:
            return interval * retry
        case RetryStrategy.EXPONENTIAL_BACKOFF:
            return interval**retry
        case _:
            raise UnknownRetryStrategyError()
