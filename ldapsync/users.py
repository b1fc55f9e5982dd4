#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
"""
Per-user synchronization.

`UserSynchronizer.sync` brings one directory user into the local store:

- the local user is matched by Sid, then by e-mail
- disabled directory users are never created
- a local, non-directory user holding the wanted login name is renamed
- e-mails stay unique
- the tenant owner is never terminated

It returns the synchronized `LocalUser`, or `None` when the directory user
could not be synchronized. Failures of a single user are logged and skipped,
quota and format errors raised by the store abort the run.
"""
from dateutil import parser as date_parser

from ldapsync.exceptions import JobCanceledError, QuotaExceededError, UserFormatError
from ldapsync.logger import logger
from ldapsync.models import (
    EXT_MAIL,
    EXT_MOB_PHONE,
    EXT_PHONE,
    EXT_SKYPE,
    EXTERNAL_CONTACT_TYPES,
    LocalUser,
)
from ldapsync.protocol import EmployeeStatus, MappingField
from ldapsync.utils import split_patterns

MAX_NAME_LENGTH = 64

CONTACT_FIELDS = [
    (MappingField.ADDITIONAL_PHONE, EXT_PHONE),
    (MappingField.ADDITIONAL_MOBILE_PHONE, EXT_MOB_PHONE),
    (MappingField.ADDITIONAL_MAIL, EXT_MAIL),
    (MappingField.SKYPE, EXT_SKYPE),
]

GENDERS = {
    "true": True,
    "male": True,
    "m": True,
    "false": False,
    "female": False,
    "f": False,
}


def _text(value):
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _not_equal(left, right):
    return (left or "").lower() != (right or "").lower()


def parse_birth_date(value):
    if not value:
        return None
    try:
        return date_parser.parse(value).date()
    except (ValueError, OverflowError):
        return None


def parse_gender(value):
    if not value:
        return None
    return GENDERS.get(value.strip().lower())


def merge_contacts(directory_contacts, local_contacts):
    """Directory contacts plus the contacts added locally."""
    merged = list(directory_contacts)
    for kind, value in local_contacts:
        if kind in EXTERNAL_CONTACT_TYPES:
            continue
        merged.append((kind, value))
    return merged


class UserSynchronizer:
    def __init__(self, settings, tenant, mutator, catalog, domain=None, logger_=None):
        self.settings = settings
        self.tenant = tenant
        self.mutator = mutator
        self.catalog = catalog
        self.domain = domain if domain is not None else settings.ldap_domain
        self._logger = logger_ or logger

    def _mapped(self, field):
        return field in self.settings.mapping

    def _attribute(self, directory_user, field):
        attribute = self.settings.mapping.get(field)
        if not attribute:
            return ""
        return _text(directory_user.get(attribute)).strip()

    def _contacts(self, directory_user):
        contacts = []
        for field, kind in CONTACT_FIELDS:
            for attribute in split_patterns(self.settings.mapping.get(field)):
                for value in directory_user.get_all(attribute):
                    contacts.append((kind, _text(value)))
        return contacts

    def to_local_user(self, directory_user):
        """Maps a directory user to the `LocalUser` it should become.

        Raises `ValueError` when the login attribute is empty.
        """
        user_name = _text(directory_user.get(self.settings.login_attribute)).strip()
        if not user_name:
            msg = f"Login attribute '{self.settings.login_attribute}' is empty for '{directory_user.dn}'"
            raise ValueError(msg)

        first_name = self._attribute(directory_user, MappingField.FIRST_NAME)
        last_name = self._attribute(directory_user, MappingField.SECOND_NAME)
        mail = self._attribute(directory_user, MappingField.MAIL)

        user = LocalUser(
            user_name=user_name,
            first_name=first_name[:MAX_NAME_LENGTH] or self.catalog["first_name"],
            last_name=last_name[:MAX_NAME_LENGTH] or self.catalog["last_name"],
            sid=directory_user.sid,
            status=EmployeeStatus.TERMINATED
            if directory_user.disabled
            else EmployeeStatus.ACTIVE,
            title=self._attribute(directory_user, MappingField.TITLE),
            location=self._attribute(directory_user, MappingField.LOCATION),
            mobile_phone=self._attribute(directory_user, MappingField.MOBILE_PHONE)
            or None,
            birth_date=parse_birth_date(
                self._attribute(directory_user, MappingField.BIRTHDAY)
            ),
            sex=parse_gender(self._attribute(directory_user, MappingField.GENDER)),
            contacts=self._contacts(directory_user),
        )

        if mail:
            user.email = mail
        else:
            user.email = user_name if "@" in user_name else f"{user_name}@{self.domain}"
            user.email_generated = True

        return user

    async def sync(self, directory_user, candidates):
        try:
            return await self._sync(directory_user, candidates)
        except (QuotaExceededError, UserFormatError, JobCanceledError):
            raise
        except Exception:
            self._logger.exception(
                f"Failed to sync directory user '{directory_user.dn}' (sid: {directory_user.sid})"
            )
            await self.mutator.skip_user(directory_user.sid, directory_user.dn)
            return None

    async def _skip(self, wanted, reason):
        self._logger.debug(
            f"Skipping directory user '{wanted.user_name}' (sid: {wanted.sid}): {reason}"
        )
        await self.mutator.skip_user(wanted.sid, wanted.display_name)
        return None

    async def _sync(self, directory_user, candidates):
        if not directory_user.sid:
            self._logger.warning(f"Directory user '{directory_user.dn}' has no Sid")
            await self.mutator.skip_user(None, directory_user.dn)
            return None

        wanted = self.to_local_user(directory_user)

        existing = await self.mutator.find_user_by_sid(wanted.sid)
        if existing is None:
            by_email = await self.mutator.find_user_by_email(wanted.email)
            if by_email is None:
                if wanted.status != EmployeeStatus.ACTIVE:
                    return await self._skip(wanted, "disabled in the directory")
                return await self._add(wanted)

            if by_email.is_directory_managed and any(
                candidate.sid == by_email.sid for candidate in candidates
            ):
                return await self._skip(
                    wanted, f"e-mail '{wanted.email}' belongs to another directory user"
                )
            existing = by_email

        wanted.contacts = merge_contacts(wanted.contacts, existing.contacts)

        if not self.need_update(existing, wanted):
            self._logger.debug(f"Directory user '{wanted.user_name}' is up to date")
            return existing

        return await self._update(existing, wanted)

    async def _add(self, wanted):
        if await self.mutator.find_user_by_email(wanted.email) is not None:
            return await self._skip(wanted, f"e-mail '{wanted.email}' is taken")

        if not await self._release_user_name(wanted.user_name):
            return await self._skip(wanted, f"login '{wanted.user_name}' is taken")

        self._logger.debug(f"Creating local user '{wanted.user_name}' (sid: {wanted.sid})")
        return await self.mutator.create_user(wanted)

    async def _update(self, existing, wanted):
        if _not_equal(existing.user_name, wanted.user_name) and not await self._release_user_name(
            wanted.user_name
        ):
            return await self._skip(wanted, f"login '{wanted.user_name}' is taken")

        if _not_equal(existing.email, wanted.email):
            holder = await self.mutator.find_user_by_email(wanted.email)
            if holder is not None and holder.id != existing.id:
                return await self._skip(wanted, f"e-mail '{wanted.email}' is taken")

        updated = existing.copy(
            user_name=wanted.user_name,
            first_name=wanted.first_name,
            last_name=wanted.last_name,
            sid=wanted.sid,
            contacts=list(wanted.contacts),
        )
        if existing.email != wanted.email and self._email_replaceable(existing, wanted):
            updated.email = wanted.email
            updated.email_generated = wanted.email_generated
        if self._mapped(MappingField.TITLE):
            updated.title = wanted.title
        if self._mapped(MappingField.LOCATION):
            updated.location = wanted.location
        if self._mapped(MappingField.GENDER):
            updated.sex = wanted.sex
        if self._mapped(MappingField.BIRTHDAY):
            updated.birth_date = wanted.birth_date
        if self._mapped(MappingField.MOBILE_PHONE):
            updated.mobile_phone = wanted.mobile_phone
        if not self._is_owner(existing):
            updated.status = wanted.status

        self._logger.debug(f"Updating local user '{existing.user_name}' (sid: {wanted.sid})")
        return await self.mutator.update_user(existing, updated)

    def _is_owner(self, user):
        return self.tenant.owner_id is not None and user.id == self.tenant.owner_id

    @staticmethod
    def _email_replaceable(existing, wanted):
        # a generated address never replaces a real one
        return not wanted.email_generated or existing.email_generated

    async def _release_user_name(self, user_name):
        """Makes `user_name` available, renaming a local user holding it.

        Returns `False` when the name belongs to another directory user.
        """
        if not user_name:
            return False

        other = await self.mutator.find_user_by_name(user_name)
        if other is None:
            return True
        if other.is_directory_managed:
            return False

        new_name = await self.make_unique_name(other)
        self._logger.debug(f"Renaming local user '{other.user_name}' to '{new_name}'")
        await self.mutator.rename_user(other, new_name)
        return True

    async def make_unique_name(self, user):
        if not user.email:
            msg = f"Local user '{user.user_name}' has no e-mail to derive a login from"
            raise ValueError(msg)

        base_name = user.email.split("@", 1)[0]
        unique_name = base_name
        i = 0
        while await self.mutator.find_user_by_name(unique_name) is not None:
            i += 1
            unique_name = f"{base_name}{i}"
        return unique_name

    def need_update(self, local, wanted):
        changes = []
        if _not_equal(local.first_name, wanted.first_name):
            changes.append("first_name")
        if _not_equal(local.last_name, wanted.last_name):
            changes.append("last_name")
        if _not_equal(local.user_name, wanted.user_name):
            changes.append("user_name")
        if _not_equal(local.email, wanted.email) and self._email_replaceable(local, wanted):
            changes.append("email")
        if _not_equal(local.sid, wanted.sid):
            changes.append("sid")
        if self._mapped(MappingField.TITLE) and _not_equal(local.title, wanted.title):
            changes.append("title")
        if self._mapped(MappingField.LOCATION) and _not_equal(
            local.location, wanted.location
        ):
            changes.append("location")
        if local.status != wanted.status and not self._is_owner(local):
            changes.append("status")
        if len(local.contacts) != len(wanted.contacts) or any(
            contact not in local.contacts for contact in wanted.contacts
        ):
            changes.append("contacts")
        if self._mapped(MappingField.MOBILE_PHONE) and _not_equal(
            local.mobile_phone, wanted.mobile_phone
        ):
            changes.append("mobile_phone")
        if self._mapped(MappingField.BIRTHDAY) and local.birth_date != wanted.birth_date:
            changes.append("birth_date")
        if self._mapped(MappingField.GENDER) and local.sex != wanted.sex:
            changes.append("sex")

        if changes:
            self._logger.debug(
                f"Local user '{local.user_name}' needs an update of: {', '.join(changes)}"
            )
        return bool(changes)
