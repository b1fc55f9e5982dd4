#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
"""
Product admin rights derived from directory group membership.

Every run first revokes what the previous run granted (as recorded in the
`AccessRightsSnapshot`), then grants the rights mapped to directory groups to
the current local members of those groups. A user's rights are recomputed from
scratch on their first grant of the run.

The user who requested the run never loses a right through it: their rights
are kept and reported back so the run can warn them.
"""
from ldapsync.protocol import AccessRight
from ldapsync.settings import AccessRightsSnapshot
from ldapsync.utils import split_patterns

GRANT_PROGRESS_BUDGET = 3


class AccessRightsReconciler:
    def __init__(self, job, local_store, settings_store, source):
        self.job = job
        self.local_store = local_store
        self.settings_store = settings_store
        self.source = source
        self._logger = job.logger

    async def run(self, requesting_user_id, start):
        """Reconciles the rights and returns the rights the requesting user
        would have lost."""
        await self.job.set_progress(
            start, status=self.job.catalog["updating_access_rights"]
        )
        lost = []
        await self.revoke(requesting_user_id, lost, start)

        settings = self.job.settings
        if settings.group_membership and settings.access_rights:
            await self.grant(settings.access_rights, requesting_user_id, lost, start)

        return lost

    async def revoke(self, requesting_user_id, lost, start):
        snapshot = await self.settings_store.load(AccessRightsSnapshot)
        if not snapshot.rights:
            self._logger.debug("No access rights granted by a previous run")
            return

        await self.job.set_progress(start, status=self.job.catalog["removing_old_rights"])
        for right, user_ids in snapshot.rights.items():
            for user_id in user_ids:
                if requesting_user_id is not None and user_id == requesting_user_id:
                    self._logger.debug(
                        f"Not taking {right.value} rights from {user_id}, who requested the run"
                    )
                    if right not in lost:
                        lost.append(right)
                else:
                    self._logger.debug(f"Taking {right.value} rights from {user_id}")
                    await self.local_store.set_product_admin(right, user_id, False)

        snapshot.rights = {}
        await self.settings_store.save(snapshot)

    async def _clear_rights(self, user, keep):
        cleared = False
        for right in AccessRight:
            if right in keep:
                continue
            if await self.local_store.is_product_admin(right, user.id):
                await self.local_store.set_product_admin(right, user.id, False)
                cleared = True
        if cleared:
            self._logger.debug(f"Cleared the rights of {user.display_name} before granting")

    async def grant(self, access_rights, requesting_user_id, lost, start):
        snapshot = AccessRightsSnapshot()
        granted_users = set()
        step = GRANT_PROGRESS_BUDGET / len(access_rights)
        percentage = float(start)

        for right, patterns in access_rights.items():
            self.job.check_canceled()
            percentage += step

            groups = await self.source.find_groups_by_name_pattern(
                split_patterns(patterns)
            )
            if not groups:
                self._logger.debug(f"No directory groups found for {right.value} rights")
                continue

            for directory_group in groups:
                local_group = await self.local_store.get_group_by_sid(directory_group.sid)
                if local_group is None:
                    self._logger.debug(
                        f"No local group for directory group {directory_group.sid}"
                    )
                    continue

                members = await self.local_store.get_group_members(local_group.id)
                self._logger.debug(
                    f"Found {len(members)} users in group {local_group.name} ({local_group.id})"
                )
                for user in members:
                    if user.is_guest:
                        continue

                    is_requester = user.id == requesting_user_id
                    if user.id not in granted_users:
                        granted_users.add(user.id)
                        await self._clear_rights(user, lost if is_requester else [])

                    holders = snapshot.rights.setdefault(right, [])
                    if user.id not in holders:
                        holders.append(user.id)

                    await self.job.set_progress(
                        int(percentage),
                        status=self.job.catalog.get(
                            "giving_rights", user=user.display_name, right=right.value
                        ),
                    )
                    await self.local_store.set_product_admin(right, user.id, True)
                    if is_requester and right in lost:
                        lost.remove(right)

        await self.settings_store.save(snapshot)
