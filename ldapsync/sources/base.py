#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
"""Contract of the directories a reconciliation run reads from."""
from dataclasses import dataclass
from typing import Optional

from ldapsync.logger import logger
from ldapsync.protocol import ConnectStatus


@dataclass(frozen=True)
class ConnectResult:
    status: ConnectStatus
    certificate_token: Optional[str] = None

    @property
    def ok(self):
        return self.status == ConnectStatus.OK


class DirectorySource:
    """Base class, defines a loose contract.

    A source is created for one run out of the run's `DirectorySettings` and
    closed when the run ends.
    """

    def __init__(self, settings):
        self._logger = logger
        self.settings = settings

    def __str__(self):
        return f"Directory source `{self.__class__.__name__}`"

    def set_logger(self, logger_):
        self._logger = logger_

    async def bind(self):
        """Connects and authenticates against the directory.

        Returns a `ConnectResult`: a failed bind is a value, not an exception.
        """
        raise NotImplementedError

    async def list_users(self):
        """Returns the `DirectoryUser`s matching the user base DN and filter."""
        raise NotImplementedError

    async def list_groups(self):
        """Returns the `DirectoryGroup`s matching the group base DN and filter."""
        raise NotImplementedError

    async def resolve_group_members(self, group):
        """Returns the `DirectoryUser`s that are members of `group`.

        Members that are not part of `list_users()` are left out.
        """
        raise NotImplementedError

    async def find_groups_by_name_pattern(self, patterns):
        """Returns the `DirectoryGroup`s whose name matches one of `patterns`.

        `*` matches any run of characters; matching is case-insensitive.
        """
        raise NotImplementedError

    async def close(self):
        """Called when the run is over, releases the connection."""
        pass
