#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
"""
Records exchanged between the directory, the local store and the job.

- `DirectoryUser` / `DirectoryGroup` are read-only snapshots for one run
- `LocalUser` / `LocalGroup` are the tenant's persistent entities
- `JobState` is the immutable snapshot a running job publishes
- `JobStatus` is what a status poll returns to the caller
"""
import uuid
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from ldapsync.protocol import EmployeeStatus, JobPhase, OperationKind

EXT_PHONE = "extphone"
EXT_MOB_PHONE = "extmobphone"
EXT_MAIL = "extmail"
EXT_SKYPE = "extskype"

EXTERNAL_CONTACT_TYPES = {
    EXT_PHONE: "phone",
    EXT_MOB_PHONE: "mobphone",
    EXT_MAIL: "mail",
    EXT_SKYPE: "skype",
}


@dataclass(frozen=True)
class Tenant:
    id: str  # noqa: A003
    owner_id: Optional[str] = None


@dataclass
class DirectoryUser:
    sid: Optional[str]
    dn: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    disabled: bool = False

    def get(self, attribute, default=None):
        """Returns the first value of `attribute`, case-insensitively."""
        values = self.get_all(attribute)
        if not values:
            return default
        return values[0]

    def get_all(self, attribute):
        if not attribute:
            return []
        for key, value in self.attributes.items():
            if key.lower() == attribute.lower():
                if value is None:
                    return []
                if isinstance(value, (list, tuple)):
                    return list(value)
                return [value]
        return []


@dataclass
class DirectoryGroup:
    sid: Optional[str]
    dn: str
    name: str
    members: List[str] = field(default_factory=list)


@dataclass
class LocalUser:
    user_name: str
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    email_generated: bool = False
    sid: Optional[str] = None
    status: EmployeeStatus = EmployeeStatus.ACTIVE
    title: str = ""
    location: str = ""
    mobile_phone: Optional[str] = None
    birth_date: Optional[date] = None
    sex: Optional[bool] = None
    contacts: List[Tuple[str, str]] = field(default_factory=list)
    is_admin: bool = False
    is_guest: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))  # noqa: A003

    @property
    def is_directory_managed(self):
        return self.sid is not None

    @property
    def display_name(self):
        full_name = f"{self.first_name} {self.last_name}".strip()
        return full_name or self.user_name

    def copy(self, **changes):
        changes.setdefault("contacts", list(self.contacts))
        return replace(self, **changes)

    def convert_external_contacts_to_ordinary(self):
        self.contacts = [
            (EXTERNAL_CONTACT_TYPES.get(kind, kind), value)
            for kind, value in self.contacts
        ]

    def to_dict(self):
        return {
            "id": self.id,
            "user_name": self.user_name,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "email_generated": self.email_generated,
            "sid": self.sid,
            "status": self.status.value,
            "title": self.title,
            "location": self.location,
            "mobile_phone": self.mobile_phone,
            "birth_date": self.birth_date.isoformat() if self.birth_date else None,
            "sex": self.sex,
            "contacts": [list(contact) for contact in self.contacts],
            "is_admin": self.is_admin,
            "is_guest": self.is_guest,
        }

    @classmethod
    def from_dict(cls, data):
        data = dict(data)
        data["status"] = EmployeeStatus(data.get("status", "active"))
        if data.get("birth_date"):
            data["birth_date"] = date.fromisoformat(data["birth_date"])
        data["contacts"] = [tuple(contact) for contact in data.get("contacts", [])]
        return cls(**data)


@dataclass
class LocalGroup:
    name: str
    sid: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))  # noqa: A003

    def to_dict(self):
        return {"id": self.id, "name": self.name, "sid": self.sid}

    @classmethod
    def from_dict(cls, data):
        return cls(**data)


@dataclass(frozen=True)
class JobState:
    """A full snapshot of a run, replaced as a whole on every update."""

    job_id: str
    tenant_id: str
    operation_kind: OperationKind
    phase: JobPhase = JobPhase.CREATED
    percentage: int = 0
    status: str = ""
    source: str = ""
    error: str = ""
    warning: str = ""
    finished: bool = False
    certificate_confirmation: Optional[str] = None

    def evolve(self, **changes):
        return replace(self, **changes)


@dataclass
class JobStatus:
    id: Optional[str]  # noqa: A003
    percentage: int
    finished: bool
    status: str
    error: str
    warning: str
    certificate_confirmation: Optional[str]
    source: str
    operation_kind: Optional[OperationKind]

    @classmethod
    def from_state(cls, state):
        return cls(
            id=state.job_id,
            percentage=min(state.percentage, 100),
            finished=state.finished,
            status=state.status,
            error=state.error,
            warning=state.warning,
            certificate_confirmation=state.certificate_confirmation or None,
            source=state.source,
            operation_kind=state.operation_kind,
        )
