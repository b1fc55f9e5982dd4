#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
"""
Collaborators persisting the tenant's state.

- `LocalStore`: users, groups, memberships and product admin rights
- `SettingsStore`: tenant-scoped settings records (last writer wins)
- `PhotoStore`: cached user photos

Each interface comes with an in-memory implementation, used by the command
line tool against a JSON state file and by the test suite.
"""
import base64
from copy import deepcopy

from ldapsync.exceptions import QuotaExceededError
from ldapsync.models import LocalGroup, LocalUser
from ldapsync.protocol import AccessRight
from ldapsync.settings import (
    AccessRightsSnapshot,
    AvatarHashMap,
    DirectoryDomain,
    DirectorySettings,
)

SYSTEM_PRINCIPAL = "system"


class LocalStore:
    """Tenant-scoped CRUD over local users and groups.

    Lookups return `None` when nothing matches. Implementations raise
    `QuotaExceededError` when a write would exceed the tenant quota and
    `UserFormatError` when they reject the data of a user.
    """

    async def authenticate_as_system(self):
        raise NotImplementedError

    async def logout(self):
        raise NotImplementedError

    async def get_users(self):
        raise NotImplementedError

    async def get_user(self, user_id):
        raise NotImplementedError

    async def get_user_by_sid(self, sid):
        raise NotImplementedError

    async def get_user_by_email(self, email):
        raise NotImplementedError

    async def get_user_by_name(self, user_name):
        raise NotImplementedError

    async def create_user(self, user):
        raise NotImplementedError

    async def update_user(self, user):
        raise NotImplementedError

    async def get_groups(self):
        raise NotImplementedError

    async def get_group_by_sid(self, sid):
        raise NotImplementedError

    async def create_group(self, group):
        raise NotImplementedError

    async def update_group(self, group):
        raise NotImplementedError

    async def delete_group(self, group_id):
        raise NotImplementedError

    async def get_group_members(self, group_id):
        raise NotImplementedError

    async def add_member(self, user_id, group_id):
        raise NotImplementedError

    async def remove_member(self, user_id, group_id):
        raise NotImplementedError

    async def is_product_admin(self, right, user_id):
        raise NotImplementedError

    async def set_product_admin(self, right, user_id, value):
        raise NotImplementedError


class SettingsStore:
    async def load(self, record_class):
        """Returns the stored record, or `record_class.default()`."""
        raise NotImplementedError

    async def save(self, record):
        """Stores `record`, returns `False` when it could not be saved."""
        raise NotImplementedError


class PhotoStore:
    async def sync_photo(self, user_id, content):
        raise NotImplementedError

    async def remove_photo(self, user_id):
        raise NotImplementedError


def _lower(value):
    return value.lower() if value else value


class InMemoryLocalStore(LocalStore):
    def __init__(self, users=None, groups=None, memberships=None, admins=None, max_users=None):
        self._users = {user.id: user for user in users or []}
        self._groups = {group.id: group for group in groups or []}
        self._memberships = set(memberships or [])
        self._admins = {right: set(ids) for right, ids in (admins or {}).items()}
        self.max_users = max_users
        self.principal = None
        self.journal = []

    def _write(self, action, entity_id):
        self.journal.append((self.principal, action, entity_id))

    async def authenticate_as_system(self):
        self.principal = SYSTEM_PRINCIPAL

    async def logout(self):
        self.principal = None

    async def get_users(self):
        return [user.copy() for user in self._users.values()]

    async def get_user(self, user_id):
        user = self._users.get(user_id)
        return user.copy() if user else None

    def _find_user(self, predicate):
        for user in self._users.values():
            if predicate(user):
                return user.copy()
        return None

    async def get_user_by_sid(self, sid):
        if not sid:
            return None
        return self._find_user(lambda user: user.sid == sid)

    async def get_user_by_email(self, email):
        if not email:
            return None
        return self._find_user(lambda user: _lower(user.email) == _lower(email))

    async def get_user_by_name(self, user_name):
        if not user_name:
            return None
        return self._find_user(lambda user: _lower(user.user_name) == _lower(user_name))

    async def create_user(self, user):
        if self.max_users is not None and len(self._users) >= self.max_users:
            msg = f"Tenant quota of {self.max_users} users reached"
            raise QuotaExceededError(msg)
        self._users[user.id] = user.copy()
        self._write("create_user", user.id)
        return user.copy()

    async def update_user(self, user):
        self._users[user.id] = user.copy()
        self._write("update_user", user.id)
        return user.copy()

    async def get_groups(self):
        return [deepcopy(group) for group in self._groups.values()]

    async def get_group_by_sid(self, sid):
        if not sid:
            return None
        for group in self._groups.values():
            if group.sid == sid:
                return deepcopy(group)
        return None

    async def create_group(self, group):
        self._groups[group.id] = deepcopy(group)
        self._write("create_group", group.id)
        return deepcopy(group)

    async def update_group(self, group):
        self._groups[group.id] = deepcopy(group)
        self._write("update_group", group.id)
        return deepcopy(group)

    async def delete_group(self, group_id):
        self._groups.pop(group_id, None)
        self._memberships = {
            (user_id, gid) for user_id, gid in self._memberships if gid != group_id
        }
        self._write("delete_group", group_id)

    async def get_group_members(self, group_id):
        return [
            self._users[user_id].copy()
            for user_id, gid in sorted(self._memberships)
            if gid == group_id and user_id in self._users
        ]

    async def add_member(self, user_id, group_id):
        self._memberships.add((user_id, group_id))
        self._write("add_member", f"{group_id}/{user_id}")

    async def remove_member(self, user_id, group_id):
        self._memberships.discard((user_id, group_id))
        self._write("remove_member", f"{group_id}/{user_id}")

    async def is_product_admin(self, right, user_id):
        return user_id in self._admins.get(right, set())

    async def set_product_admin(self, right, user_id, value):
        holders = self._admins.setdefault(right, set())
        if value:
            holders.add(user_id)
        else:
            holders.discard(user_id)
        self._write("set_product_admin", f"{right.value}/{user_id}/{value}")

    def to_dict(self):
        return {
            "users": [user.to_dict() for user in self._users.values()],
            "groups": [group.to_dict() for group in self._groups.values()],
            "memberships": [list(pair) for pair in sorted(self._memberships)],
            "admins": {
                right.value: sorted(ids) for right, ids in self._admins.items() if ids
            },
        }

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        return cls(
            users=[LocalUser.from_dict(doc) for doc in data.get("users", [])],
            groups=[LocalGroup.from_dict(doc) for doc in data.get("groups", [])],
            memberships=[tuple(pair) for pair in data.get("memberships", [])],
            admins={
                AccessRight(key): set(ids) for key, ids in data.get("admins", {}).items()
            },
        )


RECORD_CLASSES = {
    record_class.__name__: record_class
    for record_class in (
        DirectorySettings,
        AccessRightsSnapshot,
        AvatarHashMap,
        DirectoryDomain,
    )
}


class InMemorySettingsStore(SettingsStore):
    def __init__(self, documents=None):
        self._documents = deepcopy(documents or {})
        self.saved = []

    async def load(self, record_class):
        doc = self._documents.get(record_class.__name__)
        if doc is None:
            return record_class.default()
        return record_class.from_dict(deepcopy(doc))

    async def save(self, record):
        name = type(record).__name__
        if name not in RECORD_CLASSES:
            return False
        self._documents[name] = deepcopy(record.to_dict())
        self.saved.append(name)
        return True

    def to_dict(self):
        return deepcopy(self._documents)

    @classmethod
    def from_dict(cls, data):
        return cls(documents=data)


class InMemoryPhotoStore(PhotoStore):
    def __init__(self, photos=None):
        self.photos = dict(photos or {})
        self.writes = 0

    async def sync_photo(self, user_id, content):
        self.photos[user_id] = content
        self.writes += 1

    async def remove_photo(self, user_id):
        self.photos.pop(user_id, None)
        self.writes += 1

    def to_dict(self):
        return {
            user_id: base64.b64encode(content).decode()
            for user_id, content in self.photos.items()
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            photos={
                user_id: base64.b64decode(content)
                for user_id, content in (data or {}).items()
            }
        )
