#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
"""
User-facing messages of a reconciliation run.

A `MessageCatalog` is built once by the caller and handed to the job at init
time, so the job formats status and error messages in the caller's locale.
"""
from copy import deepcopy

DEFAULT_MESSAGES = {
    # status messages
    "checking_settings": "Checking LDAP settings",
    "loading_base_info": "Loading LDAP base info",
    "saving_settings": "Saving LDAP settings",
    "modify_ldap_users": "Modifying LDAP users",
    "getting_users": "Getting users from LDAP",
    "getting_groups": "Getting groups from LDAP",
    "removing_old_users": "Removing outdated users",
    "removing_old_groups": "Removing outdated groups",
    "saving_users": "Saving users",
    "syncing_users": "Syncing users",
    "saving_groups": "Saving groups",
    "adding_group_user": "adding user",
    "removing_group_user": "removing user",
    "updating_user_photos": "Updating user photos",
    "saving_user_photo": "Saving photo",
    "updating_access_rights": "Updating access rights",
    "removing_old_rights": "Removing outdated access rights",
    "giving_rights": "Setting rights for {user}: {right}",
    "disconnecting": "Disconnecting",
    # fallbacks of empty name attributes
    "first_name": "First name",
    "last_name": "Last name",
    # errors
    "cant_get_settings": "Failed to retrieve LDAP settings",
    "cant_save_settings": "Failed to save LDAP settings",
    "internal_error": "Server internal error",
    "tenant_quota_settled": "The current pricing plan user limit has been reached",
    "cant_create_users": "Failed to create users: incorrect data",
    "users_not_found": "No users found",
    "groups_not_found": "No groups found",
    "too_many_operations": "Too many operations in progress, please wait",
    "wrong_server_or_port": "Unable to connect to the LDAP server. Please check the server address and port",
    "wrong_user_dn": "Incorrect user DN",
    "incorrect_ldap_filter": "Invalid user filter",
    "wrong_login_attribute": "Login attribute not found",
    "wrong_group_dn": "Incorrect group DN",
    "wrong_group_filter": "Invalid group filter",
    "wrong_group_attribute": "Group attribute not found",
    "wrong_user_attribute": "User attribute not found",
    "wrong_group_name_attribute": "Group name attribute not found",
    "credentials_not_valid": "Incorrect login or password",
    "connect_error": "Unable to connect to the LDAP server",
    "strong_auth_required": "Strong authentication is required by the LDAP server",
    "wrong_sid_attribute": "Unique identifier attribute not found",
    "tls_not_supported": "StartTLS is not supported by the LDAP server",
    "domain_not_found": "LDAP domain not found",
    "certificate_verification": "Certificate verification is required",
    "unknown_error": "Unknown error",
    # warnings
    "removed_yourself": "You attempted to remove yourself or the portal owner from the portal; the account was kept active",
    "lost_rights": "Your administrator rights would have been revoked by this operation; they were kept",
}


class MessageCatalog:
    def __init__(self, locale="en", messages=None):
        self.locale = locale
        self._messages = deepcopy(DEFAULT_MESSAGES)
        if messages:
            self._messages.update(messages)

    def __getitem__(self, key):
        return self._messages.get(key, key)

    def get(self, key, **kwargs):
        message = self[key]
        if kwargs:
            return message.format(**kwargs)
        return message
