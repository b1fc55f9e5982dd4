#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
from ldapsync.settings import AvatarHashMap
from ldapsync.utils import hash_content, progress_steps

AVATAR_PROGRESS_BUDGET = 5


class AvatarReconciler:
    """Syncs cached user photos out of the mapped avatar attribute.

    The content hash of every synced photo is kept in the `AvatarHashMap`
    record, so unchanged photos are never written twice.
    """

    def __init__(self, job, local_store, settings_store, photo_store):
        self.job = job
        self.local_store = local_store
        self.settings_store = settings_store
        self.photo_store = photo_store
        self._logger = job.logger

    async def remove_all(self, hashes):
        if not hashes.photos:
            return

        for user_id in list(hashes.photos):
            self._logger.info(f"Removing photo of user {user_id}")
            await self.photo_store.remove_photo(user_id)

        hashes.photos = {}
        await self.settings_store.save(hashes)

    async def run(self, directory_users, start):
        attribute = self.job.settings.avatar_attribute
        hashes = await self.settings_store.load(AvatarHashMap)

        if not attribute:
            await self.remove_all(hashes)
            return

        eligible = [
            user
            for user in directory_users
            if not user.disabled and isinstance(user.get(attribute), (bytes, bytearray))
        ]

        for percentage, directory_user in zip(
            progress_steps(start, AVATAR_PROGRESS_BUDGET, len(eligible)), eligible
        ):
            self.job.check_canceled()

            content = bytes(directory_user.get(attribute))
            digest = hash_content(content)
            user = await self.local_store.get_user_by_sid(directory_user.sid)
            if user is None:
                self._logger.debug(
                    f"No local user for directory user '{directory_user.dn}', skipping photo"
                )
                continue

            self._logger.debug(f"Found photo for sid {directory_user.sid}")
            if hashes.photos.get(user.id) == digest:
                self._logger.debug("Photo is unchanged, skipping")
                continue

            try:
                await self.job.set_progress(
                    percentage,
                    source=f"{self.job.catalog['saving_user_photo']}: {user.display_name}",
                )
                await self.photo_store.sync_photo(user.id, content)
                hashes.photos[user.id] = digest
            except Exception:
                self._logger.exception(f"Could not save photo of user {user.id}")
                hashes.photos.pop(user.id, None)

        await self.settings_store.save(hashes)
