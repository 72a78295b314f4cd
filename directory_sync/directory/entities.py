"""
Typed entity variants for the remote directory service.

Payloads are decoded into these dataclasses once, at the client boundary, so
the rest of the package never handles raw API dictionaries. Every entity
serializes back with to_api(), which drops unset (None) fields so the same
classes double as partial bodies for patch calls.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional

from directory_sync.directory.base import EntityKind


def _compact(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


def _lower(value: Optional[str]) -> Optional[str]:
    return value.lower() if value else value


@dataclass
class Group:
    """A directory group."""

    email: str
    name: Optional[str] = None
    description: Optional[str] = None
    aliases: Optional[List[str]] = None
    id: Optional[str] = None
    non_editable_aliases: List[str] = field(default_factory=list)
    direct_members_count: Optional[int] = None
    admin_created: Optional[bool] = None
    etag: Optional[str] = None

    kind: ClassVar[EntityKind] = EntityKind.GROUP

    def __post_init__(self):
        self.email = _lower(self.email)

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> 'Group':
        count = payload.get('directMembersCount')
        return cls(
            email=payload.get('email', ''),
            name=payload.get('name'),
            description=payload.get('description'),
            aliases=list(payload.get('aliases', [])),
            id=payload.get('id'),
            non_editable_aliases=list(payload.get('nonEditableAliases', [])),
            direct_members_count=int(count) if count is not None else None,
            admin_created=payload.get('adminCreated'),
            etag=payload.get('etag'),
        )

    def to_api(self) -> Dict[str, Any]:
        # Aliases are managed through the aliases sub-resource, never the group body.
        return _compact({
            'email': self.email,
            'name': self.name,
            'description': self.description,
        })

    @property
    def domain(self) -> Optional[str]:
        """Domain part of the group email, None if the email has no '@'."""
        if not self.email or '@' not in self.email:
            return None
        return self.email.rsplit('@', 1)[1]


@dataclass
class Member:
    """A membership row of a group."""

    email: Optional[str] = None
    role: Optional[str] = None
    type: Optional[str] = None
    status: Optional[str] = None
    id: Optional[str] = None
    etag: Optional[str] = None
    resource_kind: Optional[str] = None

    kind: ClassVar[EntityKind] = EntityKind.MEMBER

    def __post_init__(self):
        self.email = _lower(self.email)
        if self.role:
            self.role = self.role.upper()

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> 'Member':
        return cls(
            email=payload.get('email'),
            role=payload.get('role'),
            type=payload.get('type'),
            status=payload.get('status'),
            id=payload.get('id'),
            etag=payload.get('etag'),
            resource_kind=payload.get('kind'),
        )

    def to_api(self) -> Dict[str, Any]:
        return _compact({'email': self.email, 'role': self.role})

    @property
    def is_group(self) -> bool:
        return (self.type or '').upper() == 'GROUP'


@dataclass
class Alias:
    """An alias email of a group or user."""

    alias: str
    primary_email: Optional[str] = None
    id: Optional[str] = None
    etag: Optional[str] = None

    kind: ClassVar[EntityKind] = EntityKind.GROUP_ALIAS

    def __post_init__(self):
        self.alias = _lower(self.alias)

    @classmethod
    def from_api(cls, payload: Any) -> 'Alias':
        # The aliases list endpoint has been seen returning bare strings.
        if isinstance(payload, str):
            return cls(alias=payload)
        return cls(
            alias=payload.get('alias', ''),
            primary_email=payload.get('primaryEmail'),
            id=payload.get('id'),
            etag=payload.get('etag'),
        )

    def to_api(self) -> Dict[str, Any]:
        return {'alias': self.alias}


@dataclass
class User:
    """A directory user account."""

    primary_email: str
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    password: Optional[str] = None
    hash_function: Optional[str] = None
    org_unit_path: Optional[str] = None
    suspended: Optional[bool] = None
    suspension_reason: Optional[str] = None
    aliases: Optional[List[str]] = None
    id: Optional[str] = None
    etag: Optional[str] = None

    kind: ClassVar[EntityKind] = EntityKind.USER

    def __post_init__(self):
        self.primary_email = _lower(self.primary_email)

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> 'User':
        name = payload.get('name') or {}
        return cls(
            primary_email=payload.get('primaryEmail', ''),
            given_name=name.get('givenName'),
            family_name=name.get('familyName'),
            org_unit_path=payload.get('orgUnitPath'),
            suspended=payload.get('suspended'),
            suspension_reason=payload.get('suspensionReason'),
            aliases=[_lower(alias) for alias in payload.get('aliases', [])],
            id=payload.get('id'),
            etag=payload.get('etag'),
        )

    def to_api(self) -> Dict[str, Any]:
        name = _compact({'givenName': self.given_name, 'familyName': self.family_name})
        return _compact({
            'primaryEmail': self.primary_email,
            'name': name or None,
            'password': self.password,
            'hashFunction': self.hash_function,
            'orgUnitPath': self.org_unit_path,
            'suspended': self.suspended,
        })


@dataclass
class Domain:
    """A domain registered to the customer account."""

    domain_name: str
    verified: Optional[bool] = None
    is_primary: Optional[bool] = None
    creation_time: Optional[int] = None
    etag: Optional[str] = None

    kind: ClassVar[EntityKind] = EntityKind.DOMAIN

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> 'Domain':
        created = payload.get('creationTime')
        return cls(
            domain_name=payload.get('domainName', ''),
            verified=payload.get('verified'),
            is_primary=payload.get('isPrimary'),
            creation_time=int(created) if created is not None else None,
            etag=payload.get('etag'),
        )

    def to_api(self) -> Dict[str, Any]:
        return {'domainName': self.domain_name}


@dataclass
class OrgUnit:
    """An organizational unit."""

    name: str
    parent_org_unit_path: Optional[str] = None
    org_unit_path: Optional[str] = None
    org_unit_id: Optional[str] = None
    description: Optional[str] = None
    block_inheritance: Optional[bool] = None
    etag: Optional[str] = None

    kind: ClassVar[EntityKind] = EntityKind.ORG_UNIT

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> 'OrgUnit':
        return cls(
            name=payload.get('name', ''),
            parent_org_unit_path=payload.get('parentOrgUnitPath'),
            org_unit_path=payload.get('orgUnitPath'),
            org_unit_id=payload.get('orgUnitId'),
            description=payload.get('description'),
            block_inheritance=payload.get('blockInheritance'),
            etag=payload.get('etag'),
        )

    def to_api(self) -> Dict[str, Any]:
        return _compact({
            'name': self.name,
            'parentOrgUnitPath': self.parent_org_unit_path,
            'description': self.description,
            'blockInheritance': self.block_inheritance,
        })


@dataclass
class SchemaField:
    """One field of a custom user schema."""

    field_name: str
    field_type: str = 'STRING'
    multi_valued: bool = False
    indexed: Optional[bool] = None
    read_access_type: Optional[str] = None
    field_id: Optional[str] = None

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> 'SchemaField':
        return cls(
            field_name=payload.get('fieldName', ''),
            field_type=payload.get('fieldType', 'STRING'),
            multi_valued=bool(payload.get('multiValued', False)),
            indexed=payload.get('indexed'),
            read_access_type=payload.get('readAccessType'),
            field_id=payload.get('fieldId'),
        )

    def to_api(self) -> Dict[str, Any]:
        return _compact({
            'fieldName': self.field_name,
            'fieldType': self.field_type,
            'multiValued': self.multi_valued,
            'indexed': self.indexed,
            'readAccessType': self.read_access_type,
        })


@dataclass
class UserSchema:
    """A custom user schema of the customer account."""

    schema_name: str
    display_name: Optional[str] = None
    fields: List[SchemaField] = field(default_factory=list)
    schema_id: Optional[str] = None
    etag: Optional[str] = None

    kind: ClassVar[EntityKind] = EntityKind.SCHEMA

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> 'UserSchema':
        return cls(
            schema_name=payload.get('schemaName', ''),
            display_name=payload.get('displayName'),
            fields=[SchemaField.from_api(item) for item in payload.get('fields', [])],
            schema_id=payload.get('schemaId'),
            etag=payload.get('etag'),
        )

    def to_api(self) -> Dict[str, Any]:
        return _compact({
            'schemaName': self.schema_name,
            'displayName': self.display_name,
            'fields': [item.to_api() for item in self.fields],
        })


# Settings keys the package manages; anything else is carried in `extra`.
GROUP_SETTINGS_FIELDS = {
    'whoCanJoin': 'who_can_join',
    'whoCanViewMembership': 'who_can_view_membership',
    'whoCanPostMessage': 'who_can_post_message',
    'allowExternalMembers': 'allow_external_members',
    'isArchived': 'is_archived',
}


@dataclass
class GroupSettings:
    """Group settings from the group settings API (values are strings there)."""

    email: Optional[str] = None
    who_can_join: Optional[str] = None
    who_can_view_membership: Optional[str] = None
    who_can_post_message: Optional[str] = None
    allow_external_members: Optional[str] = None
    is_archived: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    kind: ClassVar[EntityKind] = EntityKind.GROUP_SETTINGS

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> 'GroupSettings':
        known = {attr: payload[key] for key, attr in GROUP_SETTINGS_FIELDS.items() if key in payload}
        extra = {key: value for key, value in payload.items()
                 if key not in GROUP_SETTINGS_FIELDS and key != 'email'}
        return cls(email=_lower(payload.get('email')), extra=extra, **known)

    def to_api(self) -> Dict[str, Any]:
        body = dict(self.extra)
        for key, attr in GROUP_SETTINGS_FIELDS.items():
            value = getattr(self, attr)
            if value is not None:
                body[key] = value
        return body


ENTITY_TYPES = {
    EntityKind.GROUP: Group,
    EntityKind.MEMBER: Member,
    EntityKind.GROUP_ALIAS: Alias,
    EntityKind.USER: User,
    EntityKind.USER_ALIAS: Alias,
    EntityKind.DOMAIN: Domain,
    EntityKind.ORG_UNIT: OrgUnit,
    EntityKind.SCHEMA: UserSchema,
    EntityKind.GROUP_SETTINGS: GroupSettings,
}


def decode_entity(kind: EntityKind, payload: Any) -> Any:
    """Decode a raw API payload into the entity type registered for the kind."""
    return ENTITY_TYPES[kind].from_api(payload)


def encode_entity(entity: Any) -> Dict[str, Any]:
    """Serialize an entity (or partial entity) into an API request body."""
    if isinstance(entity, dict):
        return dict(entity)
    return entity.to_api()
