#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
from unittest.mock import AsyncMock, Mock

import pytest

from ldapsync.avatars import AvatarReconciler
from ldapsync.localization import MessageCatalog
from ldapsync.protocol import MappingField
from ldapsync.settings import AvatarHashMap
from ldapsync.store import InMemoryLocalStore, InMemoryPhotoStore, InMemorySettingsStore
from ldapsync.utils import hash_content
from tests.fake_sources import directory_user, flat_settings, local_user_of


def make_job(settings):
    job = Mock()
    job.settings = settings
    job.catalog = MessageCatalog()
    job.logger = Mock()
    job.set_progress = AsyncMock()
    job.check_canceled = Mock()
    return job


def avatar_settings():
    settings = flat_settings()
    settings.mapping[MappingField.AVATAR] = "jpegPhoto"
    return settings


@pytest.mark.asyncio
async def test_photos_are_synced_once():
    du = directory_user("jdoe", jpegPhoto=b"photo")
    user = local_user_of(du)
    settings_store = InMemorySettingsStore()
    photo_store = InMemoryPhotoStore()
    reconciler = AvatarReconciler(
        make_job(avatar_settings()),
        InMemoryLocalStore(users=[user]),
        settings_store,
        photo_store,
    )

    await reconciler.run([du], 90)
    await reconciler.run([du], 90)

    assert photo_store.photos == {user.id: b"photo"}
    assert photo_store.writes == 1
    hashes = await settings_store.load(AvatarHashMap)
    assert hashes.photos == {user.id: hash_content(b"photo")}


@pytest.mark.asyncio
async def test_changed_photo_is_synced_again():
    du = directory_user("jdoe", jpegPhoto=b"new photo")
    user = local_user_of(du)
    settings_store = InMemorySettingsStore(
        {"AvatarHashMap": {user.id: hash_content(b"old photo")}}
    )
    photo_store = InMemoryPhotoStore()

    await AvatarReconciler(
        make_job(avatar_settings()),
        InMemoryLocalStore(users=[user]),
        settings_store,
        photo_store,
    ).run([du], 90)

    assert photo_store.photos == {user.id: b"new photo"}


@pytest.mark.asyncio
async def test_ineligible_users_are_skipped():
    disabled = directory_user("alice", disabled=True, jpegPhoto=b"photo")
    text_photo = directory_user("bob", jpegPhoto="not bytes")
    unknown = directory_user("carol", jpegPhoto=b"photo")
    settings_store = InMemorySettingsStore()
    photo_store = InMemoryPhotoStore()

    await AvatarReconciler(
        make_job(avatar_settings()),
        InMemoryLocalStore(users=[local_user_of(disabled), local_user_of(text_photo)]),
        settings_store,
        photo_store,
    ).run([disabled, text_photo, unknown], 90)

    assert photo_store.writes == 0
    assert (await settings_store.load(AvatarHashMap)).photos == {}


@pytest.mark.asyncio
async def test_unmapped_avatar_removes_all_photos():
    settings_store = InMemorySettingsStore({"AvatarHashMap": {"u1": "h1", "u2": "h2"}})
    photo_store = InMemoryPhotoStore({"u1": b"a", "u2": b"b"})

    await AvatarReconciler(
        make_job(flat_settings()), InMemoryLocalStore(), settings_store, photo_store
    ).run([], 90)

    assert photo_store.photos == {}
    assert (await settings_store.load(AvatarHashMap)).photos == {}


@pytest.mark.asyncio
async def test_photo_failure_forgets_the_hash():
    du = directory_user("jdoe", jpegPhoto=b"photo")
    user = local_user_of(du)
    settings_store = InMemorySettingsStore({"AvatarHashMap": {user.id: "stale"}})
    photo_store = Mock()
    photo_store.sync_photo = AsyncMock(side_effect=Exception("disk full"))
    job = make_job(avatar_settings())

    await AvatarReconciler(
        job, InMemoryLocalStore(users=[user]), settings_store, photo_store
    ).run([du], 90)

    assert (await settings_store.load(AvatarHashMap)).photos == {}
    job.logger.exception.assert_called_once()
