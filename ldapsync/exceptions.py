#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
"""
Common exceptions for the ldapsync package.

Every `ReconcileError` carries the key of the user-facing message that ends up
in the job's `error` field; the message itself is looked up in the run's
`MessageCatalog`.
"""
from ldapsync.protocol import ConnectStatus


class ReconcileError(Exception):
    """Base class of the errors that abort a reconciliation run."""

    message_key = "internal_error"


class SettingsError(ReconcileError):
    """A required settings field is missing or invalid."""

    message_key = "cant_get_settings"


class SaveSettingsError(ReconcileError):
    message_key = "cant_save_settings"


class ConnectivityError(ReconcileError):
    def __init__(self, status):
        super().__init__(f"Directory connectivity check failed with status '{status.value}'.")
        self.status = status

    @property
    def message_key(self):
        return CONNECT_STATUS_MESSAGES.get(self.status, "unknown_error")


class CertificateConfirmationRequired(ReconcileError):
    """The directory presented a certificate that has to be accepted first.

    Not a failure of the run: the caller echoes `token` back on resubmission.
    """

    message_key = "certificate_verification"

    def __init__(self, token):
        super().__init__("Certificate confirmation is required.")
        self.token = token


class QuotaExceededError(ReconcileError):
    """Raised by a local store when the tenant quota is hit."""

    message_key = "tenant_quota_settled"


class UserFormatError(ReconcileError):
    """Raised by a local store that rejects malformed user data."""

    message_key = "cant_create_users"


class UsersNotFoundError(ReconcileError):
    message_key = "users_not_found"


class GroupsNotFoundError(ReconcileError):
    message_key = "groups_not_found"


class TooManyOperationsError(ReconcileError):
    message_key = "too_many_operations"


class JobCanceledError(Exception):
    pass


class JobAlreadyRunningError(Exception):
    pass


CONNECT_STATUS_MESSAGES = {
    ConnectStatus.OK: None,
    ConnectStatus.WRONG_SERVER_OR_PORT: "wrong_server_or_port",
    ConnectStatus.WRONG_USER_DN: "wrong_user_dn",
    ConnectStatus.INCORRECT_LDAP_FILTER: "incorrect_ldap_filter",
    ConnectStatus.USERS_NOT_FOUND: "users_not_found",
    ConnectStatus.WRONG_LOGIN_ATTRIBUTE: "wrong_login_attribute",
    ConnectStatus.WRONG_GROUP_DN: "wrong_group_dn",
    ConnectStatus.INCORRECT_GROUP_LDAP_FILTER: "wrong_group_filter",
    ConnectStatus.GROUPS_NOT_FOUND: "groups_not_found",
    ConnectStatus.WRONG_GROUP_ATTRIBUTE: "wrong_group_attribute",
    ConnectStatus.WRONG_USER_ATTRIBUTE: "wrong_user_attribute",
    ConnectStatus.WRONG_GROUP_NAME_ATTRIBUTE: "wrong_group_name_attribute",
    ConnectStatus.CREDENTIALS_NOT_VALID: "credentials_not_valid",
    ConnectStatus.CONNECT_ERROR: "connect_error",
    ConnectStatus.STRONG_AUTH_REQUIRED: "strong_auth_required",
    ConnectStatus.WRONG_SID_ATTRIBUTE: "wrong_sid_attribute",
    ConnectStatus.TLS_NOT_SUPPORTED: "tls_not_supported",
    ConnectStatus.DOMAIN_NOT_FOUND: "domain_not_found",
    ConnectStatus.CERTIFICATE_REQUEST: "certificate_verification",
    ConnectStatus.UNKNOWN_ERROR: "unknown_error",
}
