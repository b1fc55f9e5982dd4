#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
"""
A single reconciliation run.

`ReconciliationJob.run()` walks the phases of the run:

    CREATED -> VALIDATING_SETTINGS -> CHECKING_CONNECTIVITY -> SYNCING
            -> FINALIZING -> COMPLETED | FAILED | CANCELED

and publishes an immutable `JobState` snapshot on every update, so pollers
never observe a half-written state.
"""
import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, replace
from typing import Callable, Optional

from ldapsync.access_rights import AccessRightsReconciler
from ldapsync.avatars import AvatarReconciler
from ldapsync.crypto import CredentialCipher
from ldapsync.exceptions import (
    CertificateConfirmationRequired,
    ConnectivityError,
    GroupsNotFoundError,
    JobAlreadyRunningError,
    JobCanceledError,
    ReconcileError,
    SaveSettingsError,
    SettingsError,
    UsersNotFoundError,
)
from ldapsync.ledger import ChangeLedger
from ldapsync.localization import MessageCatalog
from ldapsync.logger import JobLogger, timed_execution
from ldapsync.models import JobState, LocalGroup, Tenant
from ldapsync.mutations import ApplyMutator, DryRunRecorder
from ldapsync.protocol import ConnectStatus, JobPhase, OperationKind, Scope
from ldapsync.settings import (
    AccessRightsSnapshot,
    AvatarHashMap,
    DirectoryDomain,
    DirectorySettings,
)
from ldapsync.sources.base import DirectorySource
from ldapsync.store import LocalStore, PhotoStore, SettingsStore
from ldapsync.users import UserSynchronizer
from ldapsync.utils import Counters, progress_steps

STALE_USERS_BUDGET = 8
STALE_GROUPS_BUDGET = 10
FLAT_USERS_BUDGET = 35
GROUP_USERS_BUDGET = 30
GROUPS_BUDGET = 20
TURN_OFF_START = 48
TURN_OFF_BUDGET = 48
AVATARS_CHECKPOINT = 90
ACCESS_RIGHTS_CHECKPOINT = 95


@dataclass
class TenantContext:
    """Everything a run needs to reach the tenant's state."""

    tenant: Tenant
    local_store: LocalStore
    settings_store: SettingsStore
    photo_store: PhotoStore
    source_factory: Callable[[DirectorySettings], DirectorySource]
    cipher: Optional[CredentialCipher] = None


def need_update_group(local_group, directory_group):
    return (local_group.name or "").lower() != (directory_group.name or "").lower() or (
        local_group.sid or ""
    ).lower() != (directory_group.sid or "").lower()


class ReconciliationJob:
    def __init__(
        self,
        settings,
        tenant_context,
        operation_kind,
        catalog=None,
        requesting_user_id=None,
        job_id=None,
    ):
        self.id = job_id or uuid.uuid4().hex
        self.settings = settings
        self.context = tenant_context
        self.tenant = tenant_context.tenant
        self.operation_kind = operation_kind
        self.catalog = catalog or MessageCatalog()
        self.locale = self.catalog.locale
        self.requesting_user_id = requesting_user_id
        self.logger = JobLogger(self.tenant.id, self.id)
        self.counters = Counters()
        self.ledger = ChangeLedger()
        if operation_kind.is_dry_run:
            self.mutator = DryRunRecorder(tenant_context.local_store, self.ledger)
        else:
            self.mutator = ApplyMutator(tenant_context.local_store, self.counters)
        self.source = None
        self.running = False
        self._cancel_requested = False
        self._lock = threading.Lock()
        self._state = JobState(
            job_id=self.id,
            tenant_id=self.tenant.id,
            operation_kind=operation_kind,
        )

    @property
    def state(self):
        with self._lock:
            return self._state

    @property
    def dry_run(self):
        return self.operation_kind.is_dry_run

    def _publish(self, **changes):
        with self._lock:
            if self._state.finished:
                return self._state
            self._state = self._state.evolve(**changes)
            return self._state

    def _set_phase(self, phase):
        self.logger.debug(f"Entering phase {phase.value}")
        self._publish(phase=phase)

    async def set_progress(self, percentage=None, status=None, source=None):
        if percentage is None and status is None and source is None:
            return
        changes = {}
        if percentage is not None:
            changes["percentage"] = int(percentage)
        if status is not None:
            changes["status"] = status
        if source is not None:
            changes["source"] = source
        state = self._publish(**changes)
        self.logger.info(
            f"Progress: {state.percentage}%, status: '{state.status}', source: '{state.source}'"
        )

    def set_warning(self, key):
        self._publish(warning=self.catalog[key])

    def take_warning(self):
        """Returns the current warning and clears it."""
        with self._lock:
            warning = self._state.warning
            if warning:
                self._state = self._state.evolve(warning="")
            return warning

    def mark_finished(self):
        with self._lock:
            if self._state.finished:
                return False
            phase = self._state.phase
            self._state = self._state.evolve(
                phase=phase if phase.terminal else JobPhase.CANCELED,
                percentage=100,
                finished=True,
            )
            return True

    def cancel(self):
        self.logger.info("Cancellation requested")
        self._cancel_requested = True

    def check_canceled(self):
        if self._cancel_requested:
            raise JobCanceledError

    def _fail(self, message_key):
        self._publish(phase=JobPhase.FAILED, error=self.catalog[message_key])

    async def run(self):
        if self.running:
            msg = f"Reconciliation job {self.id} is already running."
            raise JobAlreadyRunningError(msg)

        self.running = True
        start = time.time()
        local_store = self.context.local_store
        self.logger.info(f"Starting {self.operation_kind.value} operation")

        try:
            await local_store.authenticate_as_system()
            await self._run_phases()
            self._publish(phase=JobPhase.COMPLETED)
        except (JobCanceledError, asyncio.CancelledError):
            self.logger.info("Operation canceled")
            self._publish(phase=JobPhase.CANCELED)
        except CertificateConfirmationRequired as e:
            self.logger.warning(
                f"Certificate confirmation required (accept_certificate: {self.settings.accept_certificate})"
            )
            self._publish(certificate_confirmation=e.token)
            self._fail(e.message_key)
        except ReconcileError as e:
            self.logger.error(f"Operation failed: {e}")
            self._fail(e.message_key)
        except Exception as e:
            self.logger.exception(f"Operation failed with an internal error: {e}")
            self._fail("internal_error")
        finally:
            try:
                if self.source is not None:
                    await self.source.close()
                await local_store.logout()
            except Exception as e:
                self.logger.exception(f"Problem while finalizing the operation: {e}")
            self.mark_finished()
            self.running = False
            self._log_summary(time.time() - start)

    def _log_summary(self, duration):
        state = self.state
        if self.dry_run:
            stats = f"{len(self.ledger)} proposed changes"
        else:
            stats = str(self.counters.to_dict())
        self.logger.info(
            f"{self.operation_kind.value} operation ended in phase {state.phase.value} after {round(duration, 2)} seconds, {stats}"
        )

    async def _run_phases(self):
        if self.settings is None:
            msg = "No directory settings given"
            raise SettingsError(msg)

        with timed_execution(f"job {self.id}", "validate_settings"):
            await self._validate_settings()
        self.check_canceled()

        if self.operation_kind == OperationKind.SAVE:
            await self._save_settings()
            self.check_canceled()

        if self.settings.enable_ldap_authentication:
            with timed_execution(f"job {self.id}", "check_connectivity"):
                await self._check_connectivity()
            self.check_canceled()

        self._set_phase(JobPhase.SYNCING)
        with timed_execution(f"job {self.id}", "sync"):
            if self.settings.enable_ldap_authentication:
                await self._sync()
            else:
                self.logger.debug("Directory authentication is off, turning it off")
                await self._turn_off()
        self.check_canceled()

        self._set_phase(JobPhase.FINALIZING)
        await self.set_progress(99, status=self.catalog["disconnecting"], source="")
        await self.set_progress(
            100, status=self.ledger.to_json() if self.dry_run else "", source=""
        )

    async def _validate_settings(self):
        self._set_phase(JobPhase.VALIDATING_SETTINGS)
        await self.set_progress(1, status=self.catalog["checking_settings"])
        problems = self.settings.prepare(self.context.cipher)
        if problems:
            for problem in problems:
                self.logger.error(f"Wrong directory settings: {problem}")
            raise SettingsError("; ".join(problems))

    async def _save_settings(self):
        await self.set_progress(10, status=self.catalog["saving_settings"])
        self.settings.compute_is_default()
        if not await self.context.settings_store.save(self.settings):
            msg = "Directory settings could not be saved"
            raise SaveSettingsError(msg)

    async def _check_connectivity(self):
        self._set_phase(JobPhase.CHECKING_CONNECTIVITY)
        await self.set_progress(12, status=self.catalog["loading_base_info"])

        self.source = self.context.source_factory(self.settings)
        self.source.set_logger(self.logger)
        result = await self.source.bind()

        if result.status == ConnectStatus.CERTIFICATE_REQUEST:
            raise CertificateConfirmationRequired(result.certificate_token)
        if not result.ok:
            raise ConnectivityError(result.status)

    def _user_synchronizer(self):
        return UserSynchronizer(
            self.settings,
            self.tenant,
            self.mutator,
            self.catalog,
            logger_=self.logger,
        )

    async def _sync(self):
        if self.logger.isEnabledFor(logging.DEBUG):
            for line in self.settings.debug_lines():
                self.logger.debug(line)

        await self._record_domain()

        if self.settings.group_membership:
            directory_users = await self._sync_users_in_groups()
        else:
            directory_users = await self._sync_users()

        self.check_canceled()
        await self.set_progress(
            AVATARS_CHECKPOINT, status=self.catalog["updating_user_photos"]
        )
        # dry runs leave photos and rights alone
        if not self.dry_run:
            await AvatarReconciler(
                self,
                self.context.local_store,
                self.context.settings_store,
                self.context.photo_store,
            ).run(directory_users, AVATARS_CHECKPOINT)

        self.check_canceled()
        if self.dry_run:
            await self.set_progress(
                ACCESS_RIGHTS_CHECKPOINT, status=self.catalog["updating_access_rights"]
            )
        else:
            lost = await AccessRightsReconciler(
                self, self.context.local_store, self.context.settings_store, self.source
            ).run(self.requesting_user_id, ACCESS_RIGHTS_CHECKPOINT)
            if lost:
                self.logger.warning(
                    f"Kept rights of the requesting user: {', '.join(right.value for right in lost)}"
                )
                self.set_warning("lost_rights")
            if not await self.context.settings_store.save(self.settings):
                msg = "Directory settings could not be saved"
                raise SaveSettingsError(msg)

    async def _record_domain(self):
        domain = self.settings.ldap_domain
        current = await self.context.settings_store.load(DirectoryDomain)
        if current.domain == domain or self.dry_run:
            return
        self.logger.debug(f"Directory domain changed from '{current.domain}' to '{domain}'")
        await self.context.settings_store.save(DirectoryDomain(domain=domain))

    def _saving_users_status(self):
        if self.operation_kind.scope == Scope.SAVE:
            return self.catalog["saving_users"]
        return self.catalog["syncing_users"]

    async def _sync_users(self):
        await self.set_progress(15, status=self.catalog["getting_users"])
        directory_users = await self.source.list_users()
        if not directory_users:
            msg = "No users found in the directory"
            raise UsersNotFoundError(msg)
        self.logger.debug(f"Found {len(directory_users)} directory users")

        await self.set_progress(20, status=self.catalog["removing_old_users"], source="")
        directory_users = await self.remove_stale_local_users(directory_users)

        await self.set_progress(30, status=self._saving_users_status(), source="")
        await self.sync_users(directory_users, FLAT_USERS_BUDGET)

        await self.set_progress(70, status=self.catalog["removing_old_groups"], source="")
        # without group membership no group is directory-managed
        await self.remove_stale_local_groups([])
        return directory_users

    async def _sync_users_in_groups(self):
        await self.set_progress(15, status=self.catalog["getting_groups"])
        directory_groups = await self.source.list_groups()
        if not directory_groups:
            msg = "No groups found in the directory"
            raise GroupsNotFoundError(msg)
        self.logger.debug(f"Found {len(directory_groups)} directory groups")

        await self.set_progress(20, status=self.catalog["getting_users"])
        group_members, unique_members = await self._resolve_groups(directory_groups)
        if not unique_members:
            msg = "No users found in the directory groups"
            raise UsersNotFoundError(msg)
        self.logger.debug(f"Found {len(unique_members)} unique group members")

        await self.set_progress(30, status=self._saving_users_status(), source="")
        synced_users = await self.sync_users(unique_members, GROUP_USERS_BUDGET)

        await self.set_progress(60, status=self.catalog["saving_groups"], source="")
        await self.sync_groups(group_members)

        await self.set_progress(80, status=self.catalog["removing_old_groups"], source="")
        await self.remove_stale_local_groups(directory_groups)

        await self.set_progress(90, status=self.catalog["removing_old_users"], source="")
        await self.remove_stale_local_users(synced_users)
        return unique_members

    async def _resolve_groups(self, directory_groups):
        group_members = []
        unique_members = []
        seen = set()
        for directory_group in directory_groups:
            self.check_canceled()
            members = [
                member
                for member in await self.source.resolve_group_members(directory_group)
                if member.sid
            ]
            group_members.append((directory_group, members))
            for member in members:
                if member.sid not in seen:
                    seen.add(member.sid)
                    unique_members.append(member)
        return group_members, unique_members

    async def _resolve_local_members(self, directory_users):
        """Local counterparts of `directory_users`; unknown users are dropped."""
        members = []
        for directory_user in directory_users:
            user = await self.mutator.find_user_by_sid(directory_user.sid)
            if user is not None:
                members.append(user)
        return members

    def _is_protected(self, user):
        if self.tenant.owner_id is not None and user.id == self.tenant.owner_id:
            return True
        return (
            self.requesting_user_id is not None
            and user.id == self.requesting_user_id
            and user.is_admin
        )

    async def remove_stale_local_users(self, present):
        """Releases the local users whose Sid is not among `present`.

        Returns `present` minus the released identities.
        """
        present_sids = {item.sid for item in present if item.sid}
        stale = [
            user
            for user in await self.context.local_store.get_users()
            if user.sid is not None and user.sid not in present_sids
        ]
        if not stale:
            return present

        count = len(stale)
        steps = progress_steps(self.state.percentage, STALE_USERS_BUDGET, count)
        for index, (percentage, user) in enumerate(zip(steps, stale), start=1):
            self.check_canceled()
            await self.set_progress(
                percentage, source=f"({index}/{count}): {user.display_name}"
            )
            protected = self._is_protected(user)
            if protected and not self.dry_run:
                self.logger.debug(f"Not disabling user {user.id}, who owns or requested the run")
                self.set_warning("removed_yourself")
            await self.mutator.release_user(user, terminate=not protected)

        stale_sids = {user.sid for user in stale}
        return [item for item in present if item.sid not in stale_sids]

    async def remove_stale_local_groups(self, present):
        present_sids = {group.sid for group in present if group.sid}
        stale = [
            group
            for group in await self.context.local_store.get_groups()
            if group.sid is not None and group.sid not in present_sids
        ]
        if not stale:
            return

        count = len(stale)
        steps = progress_steps(self.state.percentage, STALE_GROUPS_BUDGET, count)
        for index, (percentage, group) in enumerate(zip(steps, stale), start=1):
            self.check_canceled()
            await self.set_progress(percentage, source=f"({index}/{count}): {group.name}")
            await self.mutator.delete_group(group)

    async def sync_users(self, directory_users, budget):
        synchronizer = self._user_synchronizer()
        synced = []
        count = len(directory_users)
        steps = progress_steps(self.state.percentage, budget, count)
        for index, (percentage, directory_user) in enumerate(
            zip(steps, directory_users), start=1
        ):
            self.check_canceled()
            name = directory_user.get(self.settings.login_attribute) or directory_user.dn
            await self.set_progress(percentage, source=f"({index}/{count}): {name}")
            user = await synchronizer.sync(directory_user, directory_users)
            if user is not None:
                synced.append(user)
        return synced

    async def sync_groups(self, group_members):
        count = len(group_members)
        steps = progress_steps(self.state.percentage, GROUPS_BUDGET, count)
        for index, (percentage, (directory_group, members)) in enumerate(
            zip(steps, group_members), start=1
        ):
            self.check_canceled()
            await self.set_progress(
                percentage, source=f"({index}/{count}): {directory_group.name}"
            )
            try:
                local_group = await self.context.local_store.get_group_by_sid(
                    directory_group.sid
                )
                if local_group is None:
                    await self._add_group(directory_group, members)
                else:
                    await self._update_group(local_group, directory_group, members)
            except (ReconcileError, JobCanceledError):
                raise
            except Exception:
                self.logger.exception(
                    f"Failed to sync directory group '{directory_group.name}' (sid: {directory_group.sid})"
                )

    async def _add_group(self, directory_group, members):
        group = LocalGroup(name=directory_group.name, sid=directory_group.sid)
        to_add = await self._resolve_local_members(members) if members else []
        if not to_add:
            # empty groups are never created
            await self.mutator.skip_group(group)
            return

        group = await self.mutator.create_group(group)
        await self.mutator.add_members(group, to_add)

    async def _update_group(self, local_group, directory_group, members):
        local_members = await self.context.local_store.get_group_members(local_group.id)
        directory_managed = [user for user in local_members if user.sid is not None]
        member_sids = {member.sid for member in members}
        local_sids = {user.sid for user in directory_managed}

        to_remove = [user for user in directory_managed if user.sid not in member_sids]
        to_add = await self._resolve_local_members(
            [member for member in members if member.sid not in local_sids]
        )

        if need_update_group(local_group, directory_group):
            local_group = await self.mutator.update_group(
                local_group,
                replace(local_group, name=directory_group.name, sid=directory_group.sid),
            )
        await self.mutator.remove_members(local_group, to_remove)
        await self.mutator.add_members(local_group, to_add)

        removed_ids = {user.id for user in to_remove}
        remaining = [user for user in local_members if user.id not in removed_ids]
        if not remaining and not to_add:
            await self.mutator.delete_group(local_group)

    async def _turn_off(self):
        await self.set_progress(TURN_OFF_START, status=self.catalog["modify_ldap_users"])
        local_store = self.context.local_store

        users = [user for user in await local_store.get_users() if user.sid is not None]
        count = len(users)
        steps = progress_steps(TURN_OFF_START, TURN_OFF_BUDGET, count)
        for index, (percentage, user) in enumerate(zip(steps, users), start=1):
            self.check_canceled()
            await self.set_progress(
                percentage, source=f"({index}/{count}): {user.display_name}"
            )
            await self.mutator.release_user(user, terminate=False)

        for group in await local_store.get_groups():
            if group.sid is not None:
                self.check_canceled()
                await self.mutator.release_group(group)

        if self.dry_run:
            return

        # access rights granted by previous runs are not revoked here
        await self.context.settings_store.save(AvatarHashMap.default())
        await self.context.settings_store.save(AccessRightsSnapshot.default())
