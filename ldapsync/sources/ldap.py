#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
"""LDAP directory source, backed by ldap3.

All ldap3 calls are blocking and run in the default executor.
"""
import asyncio
import fnmatch
import hashlib
import ssl
from functools import partial

from ldap3 import (
    ALL_ATTRIBUTES,
    ANONYMOUS,
    BASE,
    NONE,
    SIMPLE,
    SUBTREE,
    Connection,
    Server,
    Tls,
)
from ldap3.core.exceptions import (
    LDAPException,
    LDAPInvalidCredentialsResult,
    LDAPInvalidFilterError,
    LDAPNoSuchObjectResult,
    LDAPSocketOpenError,
    LDAPStartTLSError,
    LDAPStrongerAuthRequiredResult,
)
from ldap3.protocol.formatters.formatters import format_sid, format_uuid_le

from ldapsync.crypto import CredentialError
from ldapsync.models import DirectoryGroup, DirectoryUser
from ldapsync.protocol import ConnectStatus
from ldapsync.settings import SERVER_SCHEMES
from ldapsync.sources.base import ConnectResult, DirectorySource
from ldapsync.utils import RetryStrategy, retryable

DEFAULT_PAGE_SIZE = 1000
DEFAULT_CONNECT_TIMEOUT = 5
DEFAULT_RETRIES = 3
RETRY_INTERVAL = 2

# tried in order, the first attribute present on an entry becomes its Sid
SID_ATTRIBUTES = ["objectSid", "objectGUID", "entryUUID", "nsUniqueId", "GUID"]
DN_ATTRIBUTES = {"dn", "distinguishedname"}

ACCOUNT_DISABLE = 0x2

NON_RETRYABLE_ERRORS = [
    LDAPInvalidFilterError,
    LDAPNoSuchObjectResult,
    LDAPInvalidCredentialsResult,
]


def _server_address(server):
    address = server.strip()
    while address.upper().startswith(SERVER_SCHEMES):
        address = address.split("://", 1)[1].strip()
    return address.rstrip("/")


def _first(values):
    if isinstance(values, (list, tuple)):
        return values[0] if values else None
    return values


def _sid_of(entry):
    raw = entry.get("raw_attributes", {})
    attributes = entry.get("attributes", {})
    for name in SID_ATTRIBUTES:
        value = _first(raw.get(name))
        if not value:
            continue
        if name == "objectSid":
            return format_sid(value)
        if name == "objectGUID":
            return format_uuid_le(value)
        value = _first(attributes.get(name)) or value
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)
    return None


def _is_disabled(attributes):
    account_control = _first(attributes.get("userAccountControl"))
    if account_control is not None:
        try:
            if int(account_control) & ACCOUNT_DISABLE:
                return True
        except (TypeError, ValueError):
            pass
    locked = _first(attributes.get("nsAccountLock"))
    return str(locked).lower() == "true"


def _attribute_value(entry, attribute):
    if attribute.lower() in DN_ATTRIBUTES:
        return [entry["dn"]]
    for key, value in entry.get("attributes", {}).items():
        if key.lower() == attribute.lower():
            if isinstance(value, (list, tuple)):
                return [str(v) for v in value]
            return [str(value)] if value not in (None, "") else []
    return []


class LdapDirectorySource(DirectorySource):
    """Reads users and groups out of an LDAP server."""

    def __init__(
        self,
        settings,
        cipher=None,
        page_size=DEFAULT_PAGE_SIZE,
        connect_timeout=DEFAULT_CONNECT_TIMEOUT,
        retries=DEFAULT_RETRIES,
    ):
        super().__init__(settings)
        self.cipher = cipher
        self.page_size = page_size
        self.connect_timeout = connect_timeout
        self.retries = retries
        self.connection = None
        self._users = None
        self._groups = None

    @property
    def host(self):
        return _server_address(self.settings.server)

    def _tls(self):
        if not (self.settings.ssl or self.settings.start_tls):
            return None
        if self.settings.accept_certificate:
            return Tls(validate=ssl.CERT_NONE)
        return Tls(validate=ssl.CERT_REQUIRED)

    def _connect(self):
        server = Server(
            self.host,
            port=self.settings.port_number,
            use_ssl=self.settings.ssl,
            tls=self._tls(),
            get_info=NONE,
            connect_timeout=self.connect_timeout,
        )
        if self.settings.authentication:
            connection = Connection(
                server,
                user=self.settings.login,
                password=self.settings.bind_password(self.cipher),
                authentication=SIMPLE,
                raise_exceptions=True,
                receive_timeout=self.connect_timeout,
            )
        else:
            connection = Connection(
                server,
                authentication=ANONYMOUS,
                raise_exceptions=True,
                receive_timeout=self.connect_timeout,
            )

        connection.open()
        if self.settings.start_tls and not self.settings.ssl:
            connection.start_tls()
        connection.bind()
        self.connection = connection
        self._logger.info(
            f"Connected to LDAP server {self.host}:{self.settings.port_number}"
        )

    def _disconnect(self):
        if self.connection is not None:
            try:
                self.connection.unbind()
            except LDAPException as e:
                self._logger.debug(f"Error while unbinding: {e}")
            self.connection = None

    def _certificate_token(self):
        pem = ssl.get_server_certificate((self.host, self.settings.port_number))
        return hashlib.sha256(pem.encode()).hexdigest()

    def _dn_exists(self, dn):
        try:
            self.connection.search(
                search_base=dn,
                search_filter="(objectClass=*)",
                search_scope=BASE,
                attributes=[],
            )
        except LDAPNoSuchObjectResult:
            return False
        return True

    def _search_paged(self, search_base, search_filter):
        def search():
            entries = self.connection.extend.standard.paged_search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=[ALL_ATTRIBUTES] + SID_ATTRIBUTES,
                paged_size=self.page_size,
                generator=True,
            )
            return [entry for entry in entries if entry["type"] == "searchResEntry"]

        return retryable(
            retries=self.retries,
            interval=RETRY_INTERVAL,
            strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
            skipped_exceptions=NON_RETRYABLE_ERRORS,
        )(search)()

    def _to_user(self, entry):
        attributes = dict(entry.get("attributes", {}))
        avatar_attribute = self.settings.avatar_attribute
        if avatar_attribute:
            for key, value in entry.get("raw_attributes", {}).items():
                if key.lower() == avatar_attribute.lower():
                    attributes[key] = _first(value)
        return DirectoryUser(
            sid=_sid_of(entry),
            dn=entry["dn"],
            attributes=attributes,
            disabled=_is_disabled(attributes),
        )

    def _to_group(self, entry):
        names = _attribute_value(entry, self.settings.group_name_attribute)
        return DirectoryGroup(
            sid=_sid_of(entry),
            dn=entry["dn"],
            name=names[0] if names else "",
            members=_attribute_value(entry, self.settings.group_attribute),
        )

    def _load_users(self):
        if self._users is None:
            entries = self._search_paged(self.settings.user_dn, self.settings.user_filter)
            self._users = [self._to_user(entry) for entry in entries]
        return self._users

    def _load_groups(self):
        if self._groups is None:
            entries = self._search_paged(
                self.settings.group_dn, self.settings.group_filter
            )
            self._groups = [self._to_group(entry) for entry in entries]
        return self._groups

    def _check(self):
        settings = self.settings
        if not self.host:
            return ConnectResult(ConnectStatus.WRONG_SERVER_OR_PORT)

        try:
            self._connect()
        except CredentialError as e:
            self._logger.error(f"Unable to read the bind password: {e}")
            return ConnectResult(ConnectStatus.CREDENTIALS_NOT_VALID)
        except LDAPInvalidCredentialsResult as e:
            self._logger.error(f"Invalid credentials: {e}")
            return ConnectResult(ConnectStatus.CREDENTIALS_NOT_VALID)
        except LDAPStrongerAuthRequiredResult as e:
            self._logger.error(f"Stronger authentication required: {e}")
            return ConnectResult(ConnectStatus.STRONG_AUTH_REQUIRED)
        except (LDAPSocketOpenError, LDAPStartTLSError) as e:
            if "CERTIFICATE_VERIFY_FAILED" in str(e):
                self._logger.error(f"Server certificate is not trusted: {e}")
                try:
                    return ConnectResult(
                        ConnectStatus.CERTIFICATE_REQUEST,
                        certificate_token=self._certificate_token(),
                    )
                except (OSError, ValueError) as cert_error:
                    self._logger.error(f"Unable to read server certificate: {cert_error}")
                    return ConnectResult(ConnectStatus.CONNECT_ERROR)
            if isinstance(e, LDAPStartTLSError):
                self._logger.error(f"StartTLS failed: {e}")
                return ConnectResult(ConnectStatus.TLS_NOT_SUPPORTED)
            self._logger.error(f"Unable to connect: {e}")
            return ConnectResult(ConnectStatus.CONNECT_ERROR)
        except LDAPException as e:
            self._logger.error(f"Bind failed: {e}")
            return ConnectResult(ConnectStatus.CONNECT_ERROR)

        if not self._dn_exists(settings.user_dn):
            return ConnectResult(ConnectStatus.WRONG_USER_DN)

        if settings.group_membership:
            if not self._dn_exists(settings.group_dn):
                return ConnectResult(ConnectStatus.WRONG_GROUP_DN)
            try:
                groups = self._load_groups()
            except LDAPInvalidFilterError:
                return ConnectResult(ConnectStatus.INCORRECT_GROUP_LDAP_FILTER)
            if not groups:
                return ConnectResult(ConnectStatus.GROUPS_NOT_FOUND)
            if all(group.sid is None for group in groups):
                return ConnectResult(ConnectStatus.WRONG_SID_ATTRIBUTE)
            if all(not group.name for group in groups):
                return ConnectResult(ConnectStatus.WRONG_GROUP_NAME_ATTRIBUTE)
            if all(not group.members for group in groups):
                return ConnectResult(ConnectStatus.WRONG_GROUP_ATTRIBUTE)

        try:
            users = self._load_users()
        except LDAPInvalidFilterError:
            return ConnectResult(ConnectStatus.INCORRECT_LDAP_FILTER)
        if not users:
            return ConnectResult(ConnectStatus.USERS_NOT_FOUND)
        if all(user.sid is None for user in users):
            return ConnectResult(ConnectStatus.WRONG_SID_ATTRIBUTE)
        if all(user.get(settings.login_attribute) is None for user in users):
            return ConnectResult(ConnectStatus.WRONG_LOGIN_ATTRIBUTE)
        if settings.group_membership and all(
            not self._member_keys(user) for user in users
        ):
            return ConnectResult(ConnectStatus.WRONG_USER_ATTRIBUTE)

        if not settings.ldap_domain:
            return ConnectResult(ConnectStatus.DOMAIN_NOT_FOUND)

        return ConnectResult(ConnectStatus.OK)

    def _member_keys(self, user):
        attribute = self.settings.user_attribute
        if attribute.lower() in DN_ATTRIBUTES:
            return [user.dn.lower()]
        return [str(value).lower() for value in user.get_all(attribute)]

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args))

    async def bind(self):
        try:
            return await self._run(self._check)
        except LDAPException as e:
            self._logger.exception(f"Unexpected LDAP error while checking settings: {e}")
            return ConnectResult(ConnectStatus.UNKNOWN_ERROR)

    async def _ensure_connected(self):
        if self.connection is None:
            await self._run(self._connect)

    async def list_users(self):
        await self._ensure_connected()
        return list(await self._run(self._load_users))

    async def list_groups(self):
        await self._ensure_connected()
        return list(await self._run(self._load_groups))

    async def resolve_group_members(self, group):
        users = await self.list_users()
        index = {}
        for user in users:
            for key in self._member_keys(user):
                index.setdefault(key, user)

        members = []
        for value in group.members:
            user = index.get(str(value).lower())
            if user is not None and user not in members:
                members.append(user)
        return members

    async def find_groups_by_name_pattern(self, patterns):
        patterns = [pattern.lower() for pattern in patterns if pattern]
        if not patterns:
            return []

        return [
            group
            for group in await self.list_groups()
            if any(fnmatch.fnmatch(group.name.lower(), pattern) for pattern in patterns)
        ]

    async def close(self):
        await self._run(self._disconnect)
