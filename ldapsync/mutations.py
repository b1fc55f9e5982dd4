#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
"""
Write strategies of a reconciliation run.

The operation kind of a job is resolved once, when the job starts, into one of
two strategies sharing the `MutationStrategy` interface:

- `ApplyMutator` writes to the `LocalStore` and counts what it did
- `DryRunRecorder` leaves the store untouched and appends `ChangeRecord`s to a
  `ChangeLedger`; entities it would have created or modified stay resolvable
  for the rest of the run so later phases see the same picture as an apply run
"""
from dataclasses import replace

from ldapsync.ledger import ChangeRecord, group_snapshot, user_snapshot
from ldapsync.protocol import ChangeKind, EmployeeStatus, EntityKind
from ldapsync.utils import Counters


def _lower(value):
    return value.lower() if value else value


class MutationStrategy:
    dry_run = False

    async def find_user_by_sid(self, sid):
        raise NotImplementedError

    async def find_user_by_email(self, email):
        raise NotImplementedError

    async def find_user_by_name(self, user_name):
        raise NotImplementedError

    async def create_user(self, user):
        raise NotImplementedError

    async def update_user(self, before, after):
        raise NotImplementedError

    async def rename_user(self, user, new_name):
        raise NotImplementedError

    async def release_user(self, user, terminate):
        """Turns a directory-managed user into an ordinary one."""
        raise NotImplementedError

    async def skip_user(self, sid, name):
        raise NotImplementedError

    async def create_group(self, group):
        raise NotImplementedError

    async def update_group(self, before, after):
        raise NotImplementedError

    async def release_group(self, group):
        raise NotImplementedError

    async def delete_group(self, group):
        raise NotImplementedError

    async def skip_group(self, group):
        raise NotImplementedError

    async def add_members(self, group, users):
        raise NotImplementedError

    async def remove_members(self, group, users):
        raise NotImplementedError


def released(user, terminate):
    user = user.copy(sid=None)
    if terminate:
        user.status = EmployeeStatus.TERMINATED
    user.convert_external_contacts_to_ordinary()
    return user


class ApplyMutator(MutationStrategy):
    def __init__(self, store, counters=None):
        self.store = store
        self.counters = counters or Counters()

    async def find_user_by_sid(self, sid):
        return await self.store.get_user_by_sid(sid)

    async def find_user_by_email(self, email):
        return await self.store.get_user_by_email(email)

    async def find_user_by_name(self, user_name):
        return await self.store.get_user_by_name(user_name)

    async def create_user(self, user):
        created = await self.store.create_user(user)
        self.counters.increment("created_users")
        return created

    async def update_user(self, before, after):
        updated = await self.store.update_user(after)
        self.counters.increment("updated_users")
        return updated

    async def rename_user(self, user, new_name):
        updated = await self.store.update_user(user.copy(user_name=new_name))
        self.counters.increment("renamed_users")
        return updated

    async def release_user(self, user, terminate):
        updated = await self.store.update_user(released(user, terminate))
        self.counters.increment("released_users")
        return updated

    async def skip_user(self, sid, name):
        self.counters.increment("skipped_users")

    async def create_group(self, group):
        created = await self.store.create_group(group)
        self.counters.increment("created_groups")
        return created

    async def update_group(self, before, after):
        updated = await self.store.update_group(after)
        self.counters.increment("updated_groups")
        return updated

    async def release_group(self, group):
        updated = await self.store.update_group(replace(group, sid=None))
        self.counters.increment("released_groups")
        return updated

    async def delete_group(self, group):
        await self.store.delete_group(group.id)
        self.counters.increment("deleted_groups")

    async def skip_group(self, group):
        self.counters.increment("skipped_groups")

    async def add_members(self, group, users):
        for user in users:
            await self.store.add_member(user.id, group.id)
            self.counters.increment("added_members")

    async def remove_members(self, group, users):
        for user in users:
            await self.store.remove_member(user.id, group.id)
            self.counters.increment("removed_members")


class DryRunRecorder(MutationStrategy):
    dry_run = True

    def __init__(self, store, ledger):
        self.store = store
        self.ledger = ledger
        # users this run would have created or modified, by id
        self._pending = {}

    def _remember(self, user):
        self._pending[user.id] = user.copy()
        return user.copy()

    async def _find(self, predicate, stored):
        for user in self._pending.values():
            if predicate(user):
                return user.copy()
        if stored is None:
            return None
        if stored.id in self._pending:
            # the stored version is outdated by a change of this run
            return None
        return stored

    async def find_user_by_sid(self, sid):
        if not sid:
            return None
        return await self._find(
            lambda user: user.sid == sid, await self.store.get_user_by_sid(sid)
        )

    async def find_user_by_email(self, email):
        if not email:
            return None
        return await self._find(
            lambda user: _lower(user.email) == _lower(email),
            await self.store.get_user_by_email(email),
        )

    async def find_user_by_name(self, user_name):
        if not user_name:
            return None
        return await self._find(
            lambda user: _lower(user.user_name) == _lower(user_name),
            await self.store.get_user_by_name(user_name),
        )

    async def create_user(self, user):
        self.ledger.append(
            ChangeRecord(
                kind=ChangeKind.ADD_USER,
                entity_kind=EntityKind.USER,
                sid=user.sid,
                name=user.display_name,
                after=user_snapshot(user),
            )
        )
        return self._remember(user)

    async def update_user(self, before, after):
        before_doc = user_snapshot(before)
        after_doc = user_snapshot(after)
        changed = [key for key in before_doc if before_doc[key] != after_doc[key]]
        self.ledger.append(
            ChangeRecord(
                kind=ChangeKind.UPDATE_USER,
                entity_kind=EntityKind.USER,
                sid=after.sid,
                name=after.display_name,
                before={key: before_doc[key] for key in changed},
                after={key: after_doc[key] for key in changed},
            )
        )
        return self._remember(after)

    async def rename_user(self, user, new_name):
        return self._remember(user.copy(user_name=new_name))

    async def release_user(self, user, terminate):
        self.ledger.append(
            ChangeRecord(
                kind=ChangeKind.SAVE_AS_PORTAL_USER,
                entity_kind=EntityKind.USER,
                sid=user.sid,
                name=user.display_name,
                before=user_snapshot(user, only=("sid", "status")),
            )
        )
        return self._remember(released(user, terminate))

    async def skip_user(self, sid, name):
        self.ledger.append(
            ChangeRecord(
                kind=ChangeKind.SKIP_USER,
                entity_kind=EntityKind.USER,
                sid=sid,
                name=name,
            )
        )

    async def create_group(self, group):
        self.ledger.append(
            ChangeRecord(
                kind=ChangeKind.ADD_GROUP,
                entity_kind=EntityKind.GROUP,
                sid=group.sid,
                name=group.name,
                after=group_snapshot(group),
            )
        )
        return group

    async def update_group(self, before, after):
        self.ledger.append(
            ChangeRecord(
                kind=ChangeKind.UPDATE_GROUP,
                entity_kind=EntityKind.GROUP,
                sid=after.sid,
                name=after.name,
                before=group_snapshot(before),
                after=group_snapshot(after),
            )
        )
        return after

    async def release_group(self, group):
        self.ledger.append(
            ChangeRecord(
                kind=ChangeKind.UPDATE_GROUP,
                entity_kind=EntityKind.GROUP,
                sid=group.sid,
                name=group.name,
                before=group_snapshot(group),
                after={"name": group.name, "sid": None},
            )
        )
        return group

    async def delete_group(self, group):
        self.ledger.append(
            ChangeRecord(
                kind=ChangeKind.REMOVE_GROUP,
                entity_kind=EntityKind.GROUP,
                sid=group.sid,
                name=group.name,
                before=group_snapshot(group),
            )
        )

    async def skip_group(self, group):
        self.ledger.append(
            ChangeRecord(
                kind=ChangeKind.SKIP_GROUP,
                entity_kind=EntityKind.GROUP,
                sid=group.sid,
                name=group.name,
            )
        )

    async def add_members(self, group, users):
        if not users:
            return
        self.ledger.append(
            ChangeRecord(
                kind=ChangeKind.ADD_GROUP_MEMBERS,
                entity_kind=EntityKind.GROUP,
                sid=group.sid,
                name=group.name,
                members=[user.display_name for user in users],
            )
        )

    async def remove_members(self, group, users):
        if not users:
            return
        self.ledger.append(
            ChangeRecord(
                kind=ChangeKind.REMOVE_GROUP_MEMBERS,
                entity_kind=EntityKind.GROUP,
                sid=group.sid,
                name=group.name,
                members=[user.display_name for user in users],
            )
        )
