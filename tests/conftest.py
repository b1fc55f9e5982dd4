#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
import os
import traceback

import pytest

from ldapsync.localization import MessageCatalog
from ldapsync.store import InMemoryLocalStore, InMemoryPhotoStore, InMemorySettingsStore
from tests.fake_sources import SECRET_KEY, FakeDirectory


class Logger:
    def __init__(self, silent=True):
        self.logs = []
        self.silent = silent

    def debug(self, msg, *args, exc_info=False, **kwargs):
        if not self.silent:
            print(msg)  # noqa: T201
        self.logs.append(msg)
        if exc_info:
            self.logs.append(traceback.format_exc())

    def log(self, level, msg, *args, exc_info=False, **kwargs):
        self.debug(msg, exc_info=exc_info)

    def assert_not_present(self, lines):
        if isinstance(lines, str):
            lines = [lines]
        for msg in lines:
            for log in self.logs:
                if isinstance(log, str) and msg in log:
                    msg = f"'{msg}' found in {self.logs}"
                    raise AssertionError(msg)

    def assert_present(self, lines):
        if isinstance(lines, str):
            lines = [lines]
        for msg in lines:
            found = False
            for log in self.logs:
                if isinstance(log, str) and msg in log:
                    found = True
                    break
            if not found:
                msg = f"'{msg}' not found in {self.logs}"
                raise AssertionError(msg)

    error = exception = critical = info = warning = debug


@pytest.fixture
def patch_logger(silent=True):
    new_logger = Logger(silent)

    from ldapsync.logger import logger

    methods = ("exception", "error", "critical", "info", "debug", "warning", "log")
    for method in methods:
        setattr(logger, f"_old_{method}", getattr(logger, method))
        setattr(logger, method, getattr(new_logger, method))

    try:
        yield new_logger
    finally:
        for method in methods:
            setattr(logger, method, getattr(logger, f"_old_{method}"))
            delattr(logger, f"_old_{method}")


@pytest.fixture
def set_env():
    variables = {
        "LDAPSYNC_BIND_PASSWORD": "s3cr3t",
        "LDAPSYNC_SECRET_KEY": SECRET_KEY,
    }
    old = {name: os.environ.get(name) for name in variables}
    os.environ.update(variables)
    try:
        yield
    finally:
        for name, value in old.items():
            if value is None:
                del os.environ[name]
            else:
                os.environ[name] = value


@pytest.fixture
def catalog():
    return MessageCatalog()


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def local_store():
    return InMemoryLocalStore()


@pytest.fixture
def settings_store():
    return InMemorySettingsStore()


@pytest.fixture
def photo_store():
    return InMemoryPhotoStore()
