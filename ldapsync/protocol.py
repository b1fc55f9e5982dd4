#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
"""
Enumerations shared by the reconciliation engine, its collaborators and callers.

Main enums are :

- OperationKind: what a run does (save/sync, applied or as a dry run)
- JobPhase: the state machine of a single reconciliation run
- ConnectStatus: outcome of binding to the directory
- ChangeKind: the kinds of proposed mutations in a dry-run report
"""
from enum import Enum

__all__ = [
    "AccessRight",
    "ChangeKind",
    "ConnectStatus",
    "EmployeeStatus",
    "EntityKind",
    "JobPhase",
    "MappingField",
    "Mode",
    "OperationKind",
    "Scope",
]


class Mode(Enum):
    APPLY = "apply"
    DRY_RUN = "dry_run"


class Scope(Enum):
    SAVE = "save"
    SYNC = "sync"


class OperationKind(Enum):
    SAVE = "Save"
    SYNC = "Sync"
    SAVE_TEST = "SaveTest"
    SYNC_TEST = "SyncTest"

    @property
    def mode(self):
        if self in (OperationKind.SAVE_TEST, OperationKind.SYNC_TEST):
            return Mode.DRY_RUN
        return Mode.APPLY

    @property
    def scope(self):
        if self in (OperationKind.SAVE, OperationKind.SAVE_TEST):
            return Scope.SAVE
        return Scope.SYNC

    @property
    def is_dry_run(self):
        return self.mode == Mode.DRY_RUN

    @property
    def counterpart(self):
        """The kind a caller may be waiting on when submitting this one.

        A `Sync` submission is satisfied by a running `Save` (and the other way
        around); the same goes for the two dry-run kinds.
        """
        return {
            OperationKind.SAVE: OperationKind.SYNC,
            OperationKind.SYNC: OperationKind.SAVE,
            OperationKind.SAVE_TEST: OperationKind.SYNC_TEST,
            OperationKind.SYNC_TEST: OperationKind.SAVE_TEST,
        }[self]


class JobPhase(Enum):
    CREATED = "created"
    VALIDATING_SETTINGS = "validating_settings"
    CHECKING_CONNECTIVITY = "checking_connectivity"
    SYNCING = "syncing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def terminal(self):
        return self in (JobPhase.COMPLETED, JobPhase.FAILED, JobPhase.CANCELED)


class ConnectStatus(Enum):
    OK = "ok"
    WRONG_SERVER_OR_PORT = "wrong_server_or_port"
    WRONG_USER_DN = "wrong_user_dn"
    INCORRECT_LDAP_FILTER = "incorrect_ldap_filter"
    USERS_NOT_FOUND = "users_not_found"
    WRONG_LOGIN_ATTRIBUTE = "wrong_login_attribute"
    WRONG_GROUP_DN = "wrong_group_dn"
    INCORRECT_GROUP_LDAP_FILTER = "incorrect_group_ldap_filter"
    GROUPS_NOT_FOUND = "groups_not_found"
    WRONG_GROUP_ATTRIBUTE = "wrong_group_attribute"
    WRONG_USER_ATTRIBUTE = "wrong_user_attribute"
    WRONG_GROUP_NAME_ATTRIBUTE = "wrong_group_name_attribute"
    CREDENTIALS_NOT_VALID = "credentials_not_valid"
    CONNECT_ERROR = "connect_error"
    STRONG_AUTH_REQUIRED = "strong_auth_required"
    WRONG_SID_ATTRIBUTE = "wrong_sid_attribute"
    TLS_NOT_SUPPORTED = "tls_not_supported"
    DOMAIN_NOT_FOUND = "domain_not_found"
    CERTIFICATE_REQUEST = "certificate_request"
    UNKNOWN_ERROR = "unknown_error"


class AccessRight(Enum):
    FULL_ACCESS = "FullAccess"
    DOCUMENTS = "Documents"
    PROJECTS = "Projects"
    CRM = "CRM"
    COMMUNITY = "Community"
    PEOPLE = "People"
    MAIL = "Mail"


class MappingField(Enum):
    FIRST_NAME = "FirstNameAttribute"
    SECOND_NAME = "SecondNameAttribute"
    BIRTHDAY = "BirthDayAttribute"
    GENDER = "GenderAttribute"
    MOBILE_PHONE = "MobilePhoneAttribute"
    MAIL = "MailAttribute"
    TITLE = "TitleAttribute"
    LOCATION = "LocationAttribute"
    AVATAR = "AvatarAttribute"
    ADDITIONAL_PHONE = "AdditionalPhone"
    ADDITIONAL_MOBILE_PHONE = "AdditionalMobilePhone"
    ADDITIONAL_MAIL = "AdditionalMail"
    SKYPE = "Skype"


class EmployeeStatus(Enum):
    ACTIVE = "active"
    TERMINATED = "terminated"


class EntityKind(Enum):
    USER = "user"
    GROUP = "group"


class ChangeKind(Enum):
    ADD_USER = "add_user"
    UPDATE_USER = "update_user"
    SAVE_AS_PORTAL_USER = "save_as_portal_user"
    SKIP_USER = "skip_user"
    ADD_GROUP = "add_group"
    UPDATE_GROUP = "update_group"
    REMOVE_GROUP = "remove_group"
    SKIP_GROUP = "skip_group"
    ADD_GROUP_MEMBERS = "add_group_members"
    REMOVE_GROUP_MEMBERS = "remove_group_members"
