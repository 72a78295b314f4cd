"""
Membership records and sets.

A MembershipSet maps a normalized identity (lower-cased email) to the
MembershipRecord of that identity within one parent group. The same type
holds both the desired state from configuration and the actual state read
from the directory.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

from directory_sync.directory.entities import Member

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Roles a member can hold in a group."""

    OWNER = 'OWNER'
    MANAGER = 'MANAGER'
    MEMBER = 'MEMBER'

    @classmethod
    def parse(cls, value: Any) -> 'Role':
        """
        Parse a role case-insensitively.

        The directory is inconsistent about role casing between reads and
        writes, so roles are always upper-cased before comparison.

        Raises:
            ValueError: If the value is not a known role
        """
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(f"Unknown role '{value}', expected one of "
                             f"{', '.join(role.value for role in cls)}")


def normalize_identity(email: str) -> str:
    """Case-fold an email for use as a key or in a request."""
    return email.strip().lower()


@dataclass
class MembershipRecord:
    """
    One identity's relationship to a parent group.

    Attributes:
        identity: Normalized email of the member
        role: Role held in the parent group
        kind: Passthrough metadata from the directory (etag, status, type)
        is_group: True for a nested group, False for a user, None if not yet known
    """

    identity: str
    role: Role = Role.MEMBER
    kind: Dict[str, str] = field(default_factory=dict)
    is_group: Optional[bool] = None

    def __post_init__(self):
        self.identity = normalize_identity(self.identity)
        self.role = Role.parse(self.role)

    @classmethod
    def from_member(cls, member: Member) -> 'MembershipRecord':
        """Build a record from a membership row returned by the directory."""
        metadata = {
            'etag': member.etag,
            'status': member.status,
            'type': member.type,
            'kind': member.resource_kind,
        }
        return cls(
            identity=member.email or member.id or '',
            role=member.role or Role.MEMBER,
            kind={key: value for key, value in metadata.items() if value is not None},
            is_group=member.is_group if member.type else None,
        )


class MembershipSet:
    """
    Mapping of identity to MembershipRecord.

    Identities are unique; adding a record for an identity that is already
    present replaces the earlier record.
    """

    def __init__(self, records: Optional[Iterable[MembershipRecord]] = None):
        self._records: Dict[str, MembershipRecord] = {}
        for record in records or []:
            self.add(record)

    @classmethod
    def from_config(cls, members: List[Dict[str, Any]]) -> 'MembershipSet':
        """
        Build a desired set from configuration entries.

        Args:
            members: List of dictionaries with 'email' and optional 'role' (default MEMBER)
        """
        return cls(
            MembershipRecord(identity=entry['email'], role=entry.get('role', Role.MEMBER))
            for entry in members
        )

    @classmethod
    def from_members(cls, members: Iterable[Member]) -> 'MembershipSet':
        """Build an actual set from membership rows returned by the directory."""
        return cls(MembershipRecord.from_member(member) for member in members)

    def add(self, record: MembershipRecord) -> None:
        if record.identity in self._records:
            logger.debug(f"Duplicate identity {record.identity} in membership set, keeping the last one")
        self._records[record.identity] = record

    def get(self, identity: str) -> Optional[MembershipRecord]:
        return self._records.get(normalize_identity(identity))

    def identities(self) -> Set[str]:
        return set(self._records)

    def roles(self) -> Dict[str, Role]:
        """Identity to role mapping, the part of the state that reconciliation converges."""
        return {identity: record.role for identity, record in self._records.items()}

    def __getitem__(self, identity: str) -> MembershipRecord:
        return self._records[normalize_identity(identity)]

    def __contains__(self, identity: object) -> bool:
        return isinstance(identity, str) and normalize_identity(identity) in self._records

    def __iter__(self) -> Iterator[MembershipRecord]:
        return iter(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MembershipSet):
            return NotImplemented
        return self.roles() == other.roles()

    def __repr__(self) -> str:
        entries = ', '.join(f"{identity}:{role.value}" for identity, role in sorted(self.roles().items()))
        return f"MembershipSet({entries})"
