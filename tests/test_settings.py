#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
import base64

import pytest

from ldapsync.crypto import CredentialCipher, CredentialError, generate_key
from ldapsync.protocol import AccessRight, MappingField
from ldapsync.settings import (
    AccessRightsSnapshot,
    AvatarHashMap,
    DirectoryDomain,
    DirectorySettings,
)
from tests.fake_sources import CIPHER, flat_settings, group_settings


def test_prepare_disabled_feature_clears_password():
    settings = DirectorySettings(password="secret")

    assert settings.prepare(CIPHER) == []
    assert settings.password == ""
    assert settings.password_bytes is None


def test_prepare_trims_and_prefixes_server():
    settings = flat_settings(
        server="  ldap.example.com ",
        user_dn=" ou=People,dc=example,dc=com ",
        login_attribute=" uid ",
    )

    assert settings.prepare(CIPHER) == []
    assert settings.server == "LDAP://ldap.example.com"
    assert settings.user_dn == "ou=People,dc=example,dc=com"
    assert settings.login_attribute == "uid"


def test_prepare_keeps_existing_prefix():
    settings = flat_settings(server="ldap://ldap.example.com")

    assert settings.prepare(CIPHER) == []
    assert settings.server == "ldap://ldap.example.com"

    settings = flat_settings(server="ldaps://dc.example.com", ssl=True)

    assert settings.prepare(CIPHER) == []
    assert settings.server == "ldaps://dc.example.com"


@pytest.mark.parametrize(
    "field, problem",
    [
        ("server", "server is empty"),
        ("user_dn", "user DN is empty"),
        ("login_attribute", "login attribute is empty"),
        ("login", "login is empty"),
    ],
)
def test_prepare_required_fields(field, problem):
    settings = flat_settings(**{field: "  "})

    assert problem in settings.prepare(CIPHER)


@pytest.mark.parametrize(
    "field, problem",
    [
        ("group_dn", "group DN is empty"),
        ("group_attribute", "group attribute is empty"),
        ("user_attribute", "user attribute is empty"),
    ],
)
def test_prepare_required_group_fields(field, problem):
    settings = group_settings(**{field: ""})

    assert problem in settings.prepare(CIPHER)


def test_prepare_group_fields_not_required_in_flat_mode():
    settings = flat_settings(group_dn="", group_attribute="", user_attribute="")

    assert settings.prepare(CIPHER) == []


def test_prepare_encrypts_password():
    settings = flat_settings(password="secret")

    assert settings.prepare(CIPHER) == []
    assert settings.password == ""
    assert settings.password_bytes
    assert b"secret" not in settings.password_bytes
    assert settings.bind_password(CIPHER) == "secret"

    # a second run reuses the stored credential
    assert settings.prepare(CIPHER) == []
    assert settings.bind_password(CIPHER) == "secret"

    # a new password replaces it
    settings.password = "changed"
    assert settings.prepare(CIPHER) == []
    assert settings.bind_password(CIPHER) == "changed"


def test_prepare_without_secret_key():
    settings = flat_settings(password="secret")

    assert settings.prepare() == ["no secret key to encrypt the password"]
    assert settings.password == ""
    assert settings.password_bytes is None


def test_bind_password_needs_the_right_key():
    settings = flat_settings(password="secret")
    settings.prepare(CIPHER)

    with pytest.raises(CredentialError):
        settings.bind_password(None)

    with pytest.raises(CredentialError):
        settings.bind_password(CredentialCipher(generate_key()))


def test_prepare_password_required():
    settings = flat_settings(password="")

    assert settings.prepare(CIPHER) == ["password is empty"]


def test_prepare_anonymous_bind():
    settings = flat_settings(authentication=False, login="", password="secret")

    assert settings.prepare(CIPHER) == []
    assert settings.password == ""
    assert settings.password_bytes is None


def test_prepare_drops_blank_mappings():
    settings = flat_settings()
    settings.mapping[MappingField.TITLE] = "   "
    settings.mapping[MappingField.MAIL] = " mail "

    settings.prepare(CIPHER)

    assert MappingField.TITLE not in settings.mapping
    assert settings.mapping[MappingField.MAIL] == "mail"


def test_is_default():
    settings = DirectorySettings.default()
    assert settings.compute_is_default()

    settings.accept_certificate = True
    settings.password = "whatever"
    assert settings.compute_is_default()

    settings.enable_ldap_authentication = True
    assert not settings.compute_is_default()
    assert not settings.is_default


def test_equality_treats_empty_text_alike():
    assert DirectorySettings(server="", login="") == DirectorySettings(
        server=None, login=None
    )
    assert DirectorySettings(server="a") != DirectorySettings(server="b")


def test_ldap_domain_and_avatar_attribute():
    settings = flat_settings()

    assert settings.ldap_domain == "example.com"
    assert settings.avatar_attribute is None

    settings.mapping[MappingField.AVATAR] = "jpegPhoto"
    assert settings.avatar_attribute == "jpegPhoto"


def test_to_dict_never_contains_the_password():
    settings = group_settings(password="secret")
    settings.access_rights = {AccessRight.FULL_ACCESS: "Admins"}
    settings.prepare(CIPHER)

    doc = settings.to_dict()

    assert "password" not in doc
    assert "secret" not in doc["password_bytes"]
    assert b"secret" not in base64.urlsafe_b64decode(doc["password_bytes"])
    assert doc["mapping"]["FirstNameAttribute"] == "givenName"
    assert doc["access_rights"] == {"FullAccess": "Admins"}

    restored = DirectorySettings.from_dict(doc)
    assert restored == settings
    assert restored.bind_password(CIPHER) == "secret"
    assert restored.access_rights == {AccessRight.FULL_ACCESS: "Admins"}


def test_from_dict_ignores_unknown_fields():
    settings = DirectorySettings.from_dict(
        {"server": "ldap.example.com", "unknown": True, "mapping": {"MailAttribute": "mail"}}
    )

    assert settings.server == "ldap.example.com"
    assert settings.mapping == {MappingField.MAIL: "mail"}
    assert DirectorySettings.from_dict(None) is None


def test_debug_lines_do_not_leak_credentials():
    settings = group_settings(password="secret")
    settings.prepare(CIPHER)

    lines = settings.debug_lines()

    assert "Groups: True" in lines
    assert any(line.startswith("GroupDN: ") for line in lines)
    assert not any("secret" in line for line in lines)


def test_access_rights_snapshot():
    snapshot = AccessRightsSnapshot(
        rights={AccessRight.FULL_ACCESS: ["u1", "u2"], AccessRight.PEOPLE: ["u2", "u3"]}
    )

    assert AccessRightsSnapshot.from_dict(snapshot.to_dict()) == snapshot
    assert AccessRightsSnapshot.default().rights == {}


def test_avatar_hash_map_and_domain_records():
    hashes = AvatarHashMap(photos={"u1": "hash"})

    assert AvatarHashMap.from_dict(hashes.to_dict()) == hashes
    assert AvatarHashMap.from_dict(None) == AvatarHashMap.default()
    assert DirectoryDomain.from_dict({"domain": "example.com"}).domain == "example.com"
    assert DirectoryDomain.default().domain is None
