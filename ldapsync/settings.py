#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
"""
Tenant-scoped settings records.

`DirectorySettings` is the connection and mapping configuration of the
directory. The other records are written by reconciliation runs and read back
by the next one:

- `AccessRightsSnapshot`: the rights granted by the previous run
- `AvatarHashMap`: content hashes of the photos synced so far
- `DirectoryDomain`: the domain derived from the user base DN
"""
from dataclasses import dataclass, field, fields
from typing import Dict, List, Optional

from ldapsync.crypto import CredentialError
from ldapsync.protocol import AccessRight, MappingField
from ldapsync.utils import domain_from_dn

DEFAULT_LDAP_PORT = 389
SERVER_PREFIX = "LDAP://"
SERVER_SCHEMES = ("LDAP://", "LDAPS://")


def _blank(value):
    return value is None or not value.strip()


def _same_text(left, right):
    return (not left and not right) or left == right


@dataclass
class DirectorySettings:
    enable_ldap_authentication: bool = False
    start_tls: bool = False
    ssl: bool = False
    server: str = ""
    port_number: int = DEFAULT_LDAP_PORT
    user_dn: str = ""
    user_filter: str = "(uid=*)"
    login_attribute: str = "uid"
    mapping: Dict[MappingField, str] = field(default_factory=dict)
    access_rights: Dict[AccessRight, str] = field(default_factory=dict)
    group_membership: bool = False
    group_dn: str = ""
    group_name_attribute: str = "cn"
    group_filter: str = "(objectClass=posixGroup)"
    user_attribute: str = "uid"
    group_attribute: str = "memberUid"
    authentication: bool = True
    login: str = ""
    password: str = ""
    password_bytes: Optional[bytes] = None
    is_default: bool = False
    accept_certificate: bool = False
    accept_certificate_hash: Optional[str] = None

    @classmethod
    def default(cls):
        return cls(
            mapping={
                MappingField.FIRST_NAME: "givenName",
                MappingField.SECOND_NAME: "sn",
                MappingField.MAIL: "mail",
                MappingField.TITLE: "title",
                MappingField.MOBILE_PHONE: "mobile",
                MappingField.LOCATION: "street",
            }
        )

    def __eq__(self, other):
        # credentials other than the login, certificate acceptance and the
        # is_default flag itself are not part of the comparison
        if not isinstance(other, DirectorySettings):
            return NotImplemented
        return (
            self.enable_ldap_authentication == other.enable_ldap_authentication
            and self.start_tls == other.start_tls
            and self.ssl == other.ssl
            and _same_text(self.server, other.server)
            and _same_text(self.user_dn, other.user_dn)
            and self.port_number == other.port_number
            and self.user_filter == other.user_filter
            and self.login_attribute == other.login_attribute
            and self.mapping == other.mapping
            and self.access_rights == other.access_rights
            and self.group_membership == other.group_membership
            and _same_text(self.group_dn, other.group_dn)
            and self.group_filter == other.group_filter
            and self.user_attribute == other.user_attribute
            and self.group_attribute == other.group_attribute
            and _same_text(self.login, other.login)
            and self.authentication == other.authentication
        )

    __hash__ = None

    def compute_is_default(self):
        self.is_default = self == self.default()
        return self.is_default

    @property
    def ldap_domain(self):
        return domain_from_dn(self.user_dn)

    @property
    def avatar_attribute(self):
        return self.mapping.get(MappingField.AVATAR) or None

    def bind_password(self, cipher):
        """The plain password to bind with, decrypted with `cipher`."""
        if self.password_bytes:
            if cipher is None:
                msg = "A secret key is needed to decrypt the stored credential"
                raise CredentialError(msg)
            return cipher.decrypt(self.password_bytes)
        return self.password or None

    def prepare(self, cipher=None) -> List[str]:
        """Trims and validates the settings before a run.

        Returns the list of problems found; an empty list means the settings
        are usable. Plain-text passwords never survive this call: a new
        password is encrypted with `cipher` into `password_bytes`.
        """
        if not self.enable_ldap_authentication:
            self.password = ""
            return []

        problems = []

        if _blank(self.server):
            problems.append("server is empty")
        else:
            self.server = self.server.strip()
            if not self.server.upper().startswith(SERVER_SCHEMES):
                self.server = SERVER_PREFIX + self.server

        if _blank(self.user_dn):
            problems.append("user DN is empty")
        else:
            self.user_dn = self.user_dn.strip()

        if _blank(self.login_attribute):
            problems.append("login attribute is empty")
        else:
            self.login_attribute = self.login_attribute.strip()

        if not _blank(self.user_filter):
            self.user_filter = self.user_filter.strip()

        self.mapping = {
            key: value.strip() for key, value in self.mapping.items() if not _blank(value)
        }

        if self.group_membership:
            if _blank(self.group_dn):
                problems.append("group DN is empty")
            else:
                self.group_dn = self.group_dn.strip()

            if not _blank(self.group_filter):
                self.group_filter = self.group_filter.strip()

            if _blank(self.group_attribute):
                problems.append("group attribute is empty")
            else:
                self.group_attribute = self.group_attribute.strip()

            if _blank(self.user_attribute):
                problems.append("user attribute is empty")
            else:
                self.user_attribute = self.user_attribute.strip()

        if not self.authentication:
            self.password = ""
            return problems

        if _blank(self.login):
            problems.append("login is empty")
        else:
            self.login = self.login.strip()

        if self.password:
            if cipher is None:
                problems.append("no secret key to encrypt the password")
            else:
                self.password_bytes = cipher.encrypt(self.password)
        elif not self.password_bytes:
            problems.append("password is empty")

        self.password = ""
        return problems

    def debug_lines(self):
        lines = [
            f"Server: {self.server}:{self.port_number}",
            f"UserDN: {self.user_dn}",
            f"LoginAttr: {self.login_attribute}",
            f"UserFilter: {self.user_filter}",
            f"Groups: {self.group_membership}",
        ]
        if self.group_membership:
            lines.extend(
                [
                    f"GroupDN: {self.group_dn}",
                    f"UserAttr: {self.user_attribute}",
                    f"GroupFilter: {self.group_filter}",
                    f"GroupName: {self.group_name_attribute}",
                    f"GroupMember: {self.group_attribute}",
                ]
            )
        return lines

    def to_dict(self):
        doc = {}
        for f in fields(self):
            if f.name == "password":
                continue
            doc[f.name] = getattr(self, f.name)

        doc["mapping"] = {key.value: value for key, value in self.mapping.items()}
        doc["access_rights"] = {
            key.value: value for key, value in self.access_rights.items()
        }
        # a Fernet token is url-safe base64 text
        doc["password_bytes"] = (
            self.password_bytes.decode("ascii") if self.password_bytes else None
        )
        return doc

    @classmethod
    def from_dict(cls, data):
        if data is None:
            return None

        known = {f.name for f in fields(cls)}
        kwargs = {key: value for key, value in data.items() if key in known}
        kwargs["mapping"] = {
            MappingField(key): value for key, value in data.get("mapping", {}).items()
        }
        kwargs["access_rights"] = {
            AccessRight(key): value
            for key, value in data.get("access_rights", {}).items()
        }
        if kwargs.get("password_bytes"):
            kwargs["password_bytes"] = kwargs["password_bytes"].encode("ascii")
        return cls(**kwargs)


@dataclass
class AccessRightsSnapshot:
    rights: Dict[AccessRight, List[str]] = field(default_factory=dict)

    @classmethod
    def default(cls):
        return cls()

    def to_dict(self):
        return {right.value: list(users) for right, users in self.rights.items()}

    @classmethod
    def from_dict(cls, data):
        return cls(
            rights={AccessRight(key): list(value) for key, value in (data or {}).items()}
        )


@dataclass
class AvatarHashMap:
    photos: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def default(cls):
        return cls()

    def to_dict(self):
        return dict(self.photos)

    @classmethod
    def from_dict(cls, data):
        return cls(photos=dict(data or {}))


@dataclass
class DirectoryDomain:
    domain: Optional[str] = None

    @classmethod
    def default(cls):
        return cls()

    def to_dict(self):
        return {"domain": self.domain}

    @classmethod
    def from_dict(cls, data):
        return cls(domain=(data or {}).get("domain"))
