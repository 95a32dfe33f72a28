"""
Data model shared by the sync engine and its adapters.

Directory objects mirror the JSON documents of the target directory API;
source objects are read-only views into the group registry.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

PERSON = 'person'
GROUP = 'group'

ROLE_MEMBER = 'MEMBER'


def normalize_address(address: Optional[str]) -> str:
    """Normalize a directory address for case-insensitive comparison."""
    return (address or '').strip().lower()


@dataclass
class DirectoryGroup:
    email: str
    name: str = ''
    description: str = ''
    aliases: List[str] = field(default_factory=list)
    id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DirectoryGroup':
        return cls(
            email=data.get('email', ''),
            name=data.get('name', ''),
            description=data.get('description', ''),
            aliases=list(data.get('aliases') or []),
            id=data.get('id'),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'email': self.email,
            'name': self.name,
            'description': self.description,
        }
        if self.aliases:
            data['aliases'] = list(self.aliases)
        if self.id:
            data['id'] = self.id
        return data


@dataclass
class DirectoryUser:
    primary_email: str
    given_name: str = ''
    family_name: str = ''
    full_name: str = ''
    include_in_global_address_list: bool = True
    password: Optional[str] = None
    id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DirectoryUser':
        name = data.get('name') or {}
        return cls(
            primary_email=data.get('primaryEmail', ''),
            given_name=name.get('givenName', ''),
            family_name=name.get('familyName', ''),
            full_name=name.get('fullName', ''),
            include_in_global_address_list=data.get('includeInGlobalAddressList', True),
            id=data.get('id'),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'primaryEmail': self.primary_email,
            'name': {
                'givenName': self.given_name,
                'familyName': self.family_name,
                'fullName': self.full_name,
            },
            'includeInGlobalAddressList': self.include_in_global_address_list,
        }
        if self.password:
            data['password'] = self.password
        if self.id:
            data['id'] = self.id
        return data


@dataclass
class DirectoryMember:
    email: str
    role: str = ROLE_MEMBER
    type: str = 'USER'
    id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DirectoryMember':
        return cls(
            email=data.get('email', ''),
            role=data.get('role', ROLE_MEMBER),
            type=data.get('type', 'USER'),
            id=data.get('id'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {'email': self.email, 'role': self.role}


@dataclass
class GroupSettings:
    email: str
    archive_only: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GroupSettings':
        # The settings API encodes booleans as strings
        return cls(
            email=data.get('email', ''),
            archive_only=str(data.get('archiveOnly', 'false')).lower() == 'true',
            raw=dict(data),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.raw)
        data['archiveOnly'] = 'true' if self.archive_only else 'false'
        return data


@dataclass
class SourceStem:
    name: str
    display_name: str = ''
    description: str = ''
    parent_name: Optional[str] = None
    uuid: Optional[str] = None

    @property
    def is_root(self) -> bool:
        return self.parent_name is None


@dataclass
class SourceGroup:
    name: str
    display_name: str = ''
    description: str = ''
    parent_name: Optional[str] = None
    uuid: Optional[str] = None


@dataclass
class SourceSubject:
    id: str
    source_id: str = ''
    name: str = ''
    subject_type: str = PERSON
    attributes: Dict[str, str] = field(default_factory=dict)

    @property
    def is_person(self) -> bool:
        return self.subject_type == PERSON

    @property
    def cache_key(self) -> str:
        return f"{self.source_id}__{self.id}"

    def attribute(self, name: str) -> Optional[str]:
        return self.attributes.get(name)


@dataclass
class AttributeDefName:
    uuid: str
    name: str


@dataclass
class ChangeEvent:
    """One ordered record describing a single mutation in the source registry."""

    category: str
    action: str
    sequence_number: int
    context_id: str = ''
    values: Dict[str, str] = field(default_factory=dict)
    created_on: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.category, self.action)

    def value(self, label: str) -> Optional[str]:
        return self.values.get(label)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChangeEvent':
        created_on = data.get('created_on')
        if isinstance(created_on, str):
            created_on = datetime.fromisoformat(created_on)
        return cls(
            category=data['category'],
            action=data['action'],
            sequence_number=int(data['sequence_number']),
            context_id=data.get('context_id', ''),
            values=dict(data.get('values') or {}),
            created_on=created_on,
        )

    def describe(self) -> str:
        return (f"ChangeEvent[sequence={self.sequence_number},category={self.category},"
                f"action={self.action},contextId={self.context_id}]")

    def describe_deep(self) -> str:
        labels = ','.join(f"{label}={value}" for label, value in sorted(self.values.items()))
        return (f"ChangeEvent[sequence={self.sequence_number},category={self.category},"
                f"action={self.action},contextId={self.context_id},{labels}]")


class ComparableItem:
    """
    Diff key wrapping a normalized directory address.

    Equality and hashing use the normalized address only, so sets of items built
    from the source and from the directory can be subtracted and intersected
    directly. The back-reference is carried along but never compared.
    """

    __slots__ = ('address', 'source')

    def __init__(self, address: str, source: Any = None):
        self.address = normalize_address(address)
        self.source = source

    def __eq__(self, other):
        if not isinstance(other, ComparableItem):
            return NotImplemented
        return self.address == other.address

    def __hash__(self):
        return hash(self.address)

    def __lt__(self, other):
        return self.address < other.address

    def __repr__(self):
        return f"ComparableItem({self.address!r})"

    def __str__(self):
        return self.address


@dataclass
class BatchProblem:
    sequence_number: int
    message: str
    exception: BaseException


@dataclass
class BatchMetadata:
    """Per-batch bookkeeping handed to the dispatcher by its caller."""

    consumer_name: str = ''
    problems: List[BatchProblem] = field(default_factory=list)
    had_problem: bool = False
    record_exception: Optional[BaseException] = None
    record_exception_sequence: Optional[int] = None

    def register_problem(self, exception: BaseException, message: str, sequence_number: int):
        self.problems.append(BatchProblem(sequence_number, message, exception))
        self.had_problem = True
        self.record_exception = exception
        self.record_exception_sequence = sequence_number


@dataclass
class FullSyncReport:
    consumer_name: str
    dry_run: bool = False
    extra_groups: List[str] = field(default_factory=list)
    missing_groups: List[str] = field(default_factory=list)
    matched_groups: List[str] = field(default_factory=list)
    groups_created: int = 0
    groups_updated: int = 0
    groups_deleted: int = 0
    groups_archived: int = 0
    members_added: int = 0
    members_removed: int = 0
    users_created: int = 0
    errors: List[str] = field(default_factory=list)
    runtime_seconds: float = 0.0

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def as_stats(self) -> Dict[str, Any]:
        return {
            'consumer': self.consumer_name,
            'dry_run': self.dry_run,
            'extra_groups': len(self.extra_groups),
            'missing_groups': len(self.missing_groups),
            'matched_groups': len(self.matched_groups),
            'groups_created': self.groups_created,
            'groups_updated': self.groups_updated,
            'groups_deleted': self.groups_deleted,
            'groups_archived': self.groups_archived,
            'members_added': self.members_added,
            'members_removed': self.members_removed,
            'users_created': self.users_created,
            'total_errors': self.error_count,
            'errors': list(self.errors),
            'runtime_seconds': self.runtime_seconds,
        }
