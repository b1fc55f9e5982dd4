#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
import asyncio
import functools
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from ldapsync.utils import (
    ConcurrentTasks,
    Counters,
    RetryStrategy,
    UnknownRetryStrategyError,
    domain_from_dn,
    hash_content,
    iso_utc,
    progress_steps,
    retryable,
    split_patterns,
    time_to_sleep_between_retries,
)


@pytest.mark.parametrize(
    "dn, expected",
    [
        ("ou=People,dc=example,dc=com", "example.com"),
        ("OU=Users, DC=Corp , DC=Example, DC=org", "corp.example.org"),
        ("ou=People,o=example", None),
        ("", None),
        (None, None),
    ],
)
def test_domain_from_dn(dn, expected):
    assert domain_from_dn(dn) == expected


@pytest.mark.parametrize(
    "value, expected",
    [
        ("Admins", ["Admins"]),
        (" Admins , IT*,, ", ["Admins", "IT*"]),
        ("", []),
        (None, []),
    ],
)
def test_split_patterns(value, expected):
    assert split_patterns(value) == expected


def test_progress_steps():
    assert list(progress_steps(30, 35, 5)) == [30, 37, 44, 51, 58]
    assert list(progress_steps(90, 5, 10)) == [90, 90, 91, 91, 92, 92, 93, 93, 94, 94]
    assert list(progress_steps(10, 5, 0)) == []


def test_progress_steps_stay_within_budget():
    steps = list(progress_steps(20, 8, 1000))

    assert len(steps) == 1000
    assert steps == sorted(steps)
    assert steps[0] == 20
    assert steps[-1] < 28


def test_hash_content():
    assert hash_content(b"photo") == hash_content(b"photo")
    assert hash_content(b"photo") != hash_content(b"other photo")
    # base64 of a 16 bytes digest
    assert len(hash_content(b"")) == 24


def test_iso_utc():
    when = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    assert iso_utc(when) == "2024-01-02T03:04:05+00:00"
    assert iso_utc().endswith("+00:00")


def test_counters():
    counters = Counters()
    counters.increment("created_users")
    counters.increment("created_users", 2)

    assert counters.get("created_users") == 3
    assert counters.get("deleted_groups") == 0

    stats = counters.to_dict()
    stats["created_users"] = 100
    assert counters.get("created_users") == 3


@pytest.mark.asyncio
async def test_concurrent_tasks():
    results = []

    async def coroutine(i):
        await asyncio.sleep(0.01)
        results.append(i)

    runner = ConcurrentTasks(max_concurrency=10)
    for i in range(10):
        assert runner.try_put(functools.partial(coroutine, i)) is not None

    await runner.join()
    assert sorted(results) == list(range(10))
    assert len(runner) == 0


@pytest.mark.asyncio
async def test_concurrent_tasks_try_put():
    event = asyncio.Event()

    async def coroutine():
        await event.wait()

    runner = ConcurrentTasks(max_concurrency=1)
    assert runner.try_put(coroutine) is not None
    assert runner.try_put(coroutine) is None

    event.set()
    await runner.join()
    assert runner.try_put(coroutine) is not None
    await runner.join()


@pytest.mark.asyncio
async def test_concurrent_tasks_failure_does_not_stop_others(patch_logger):
    results = []

    async def coroutine(i):
        await asyncio.sleep(0)
        if i == 2:
            msg = "I FAILED"
            raise Exception(msg)
        results.append(i)

    runner = ConcurrentTasks()
    for i in range(5):
        runner.try_put(functools.partial(coroutine, i), name=f"task-{i}")

    await runner.join()
    assert sorted(results) == [0, 1, 3, 4]
    patch_logger.assert_present("Exception found for task task-2")


class CustomException(Exception):
    pass


def test_retryable_sync_gives_up():
    mock_func = Mock()

    @retryable(retries=3, interval=0, strategy=RetryStrategy.CONSTANT)
    def raises():
        mock_func()
        raise CustomException()

    with pytest.raises(CustomException):
        raises()

    assert mock_func.call_count == 3


def test_retryable_sync_succeeds_after_failures():
    calls = []

    @retryable(retries=3, interval=0, strategy=RetryStrategy.CONSTANT)
    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise CustomException()
        return "ok"

    assert flaky() == "ok"
    assert len(calls) == 3


@pytest.mark.parametrize(
    "skipped_exceptions", [CustomException, [CustomException, RuntimeError]]
)
def test_retryable_skipped_exceptions(skipped_exceptions):
    mock_func = Mock()

    @retryable(retries=10, interval=0, skipped_exceptions=skipped_exceptions)
    def raises():
        mock_func()
        raise CustomException()

    with pytest.raises(CustomException):
        raises()

    assert mock_func.call_count == 1


def test_retryable_rejects_non_functions():
    class Callable:
        def __call__(self):
            pass

    with pytest.raises(NotImplementedError):
        retryable()(Callable())

    async def coroutine():
        pass

    with pytest.raises(NotImplementedError):
        retryable()(coroutine)


def test_time_to_sleep_between_retries():
    assert time_to_sleep_between_retries(RetryStrategy.CONSTANT, 2, 3) == 2
    assert time_to_sleep_between_retries(RetryStrategy.LINEAR_BACKOFF, 2, 3) == 6
    assert time_to_sleep_between_retries(RetryStrategy.EXPONENTIAL_BACKOFF, 2, 3) == 8

    with pytest.raises(UnknownRetryStrategyError):
        time_to_sleep_between_retries("random", 2, 3)
