#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
"""
Change ledger of dry runs.

A dry run never writes to the local store. Every mutation it would have made
is appended to a `ChangeLedger` instead, and the ledger serialized to JSON is
the final status message of the run.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ldapsync.protocol import ChangeKind, EntityKind

USER_SNAPSHOT_FIELDS = (
    "user_name",
    "first_name",
    "last_name",
    "email",
    "sid",
    "status",
    "title",
    "location",
    "mobile_phone",
    "birth_date",
    "sex",
    "contacts",
)


def user_snapshot(user, only=None):
    """Plain-dict view of the mapped fields of a `LocalUser`."""
    doc = user.to_dict()
    keys = only if only is not None else USER_SNAPSHOT_FIELDS
    return {key: doc[key] for key in keys}


def group_snapshot(group):
    return {"name": group.name, "sid": group.sid}


@dataclass
class ChangeRecord:
    kind: ChangeKind
    entity_kind: EntityKind
    sid: Optional[str]
    name: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    members: List[str] = field(default_factory=list)

    def to_dict(self):
        doc = {
            "kind": self.kind.value,
            "entity_kind": self.entity_kind.value,
            "sid": self.sid,
            "name": self.name,
        }
        if self.before is not None:
            doc["before"] = self.before
        if self.after is not None:
            doc["after"] = self.after
        if self.members:
            doc["members"] = list(self.members)
        return doc


class ChangeLedger:
    def __init__(self):
        self.records = []

    def __len__(self):
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    def append(self, record):
        self.records.append(record)

    def of_kind(self, *kinds):
        return [record for record in self.records if record.kind in kinds]

    def to_list(self):
        return [record.to_dict() for record in self.records]

    def to_json(self):
        return json.dumps(self.to_list(), default=str)
