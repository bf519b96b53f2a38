"""
Board data model - entities, actors, change events and pending mutations.
Entities are frozen so snapshots handed to the presentation layer never change underneath it.
"""

import dataclasses
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


class MutationKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: Any) -> Optional["MutationKind"]:
        """Map feed event types ('INSERT', 'update', ...) onto a kind, None if unknown."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class ClassroomStatus(str, Enum):
    AVAILABLE = "Available"
    OCCUPIED = "Occupied"
    MAINTENANCE = "Maintenance"


class FacultyAvailability(str, Enum):
    AVAILABLE = "AVAILABLE"
    BUSY = "BUSY"
    UNAVAILABLE = "UNAVAILABLE"


class FeedbackStatus(str, Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class Actor:
    """The signed-in user a board is rendered for."""
    identity: Optional[str]
    role: Optional[str]
    name: Optional[str] = None
    email: Optional[str] = None

    @property
    def normalized_role(self) -> Optional[str]:
        return self.role.strip().lower() if self.role else None

    def has_role(self, *roles: str) -> bool:
        """Case-insensitive role membership ('Admin' and 'admin' are the same role)."""
        own = self.normalized_role
        return own is not None and own in {r.strip().lower() for r in roles}

    def owns(self, owner: Any) -> bool:
        """An owner column may hold either the user id or the profile name."""
        if owner is None:
            return False
        return owner in {v for v in (self.identity, self.name) if v is not None}


ANONYMOUS = Actor(identity=None, role=None)


@dataclass(frozen=True)
class Entity:
    """Base for board rows. Subclasses are frozen dataclasses with an `id` field."""

    # Column renames applied when a row comes from a view instead of the base table
    ROW_ALIASES = {}

    @classmethod
    def from_row(cls, row: Mapping[str, Any]):
        """Build an entity from a raw row, ignoring columns the model does not know."""
        data = {}
        names = {f.name for f in dataclasses.fields(cls)}
        for column, value in row.items():
            name = cls.ROW_ALIASES.get(column, column)
            if name in names and (name not in data or column == name):
                data[name] = value
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def replace(self, **changes):
        """Copy with the known fields in `changes` applied; unknown keys are dropped."""
        names = {f.name for f in dataclasses.fields(self)}
        return dataclasses.replace(self, **{k: v for k, v in changes.items() if k in names})


@dataclass(frozen=True)
class Classroom(Entity):
    id: str
    name: Optional[str] = None
    building: Optional[str] = None
    floor: Optional[int] = None
    status: Optional[str] = None
    last_updated: Optional[str] = None
    updated_by: Optional[str] = None


@dataclass(frozen=True)
class FacultyStatus(Entity):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    department: Optional[str] = None
    status: Optional[str] = None
    return_date: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class MenuItem(Entity):
    id: str
    name: Optional[str] = None
    category: Optional[str] = None
    price: Optional[float] = None
    description: Optional[str] = None
    votes: int = 0
    image_url: Optional[str] = None


@dataclass(frozen=True)
class Announcement(Entity):
    id: str
    title: Optional[str] = None
    content: Optional[str] = None
    created_at: Optional[str] = None
    created_by: Optional[str] = None
    target_role: Optional[str] = None


@dataclass(frozen=True)
class NotificationItem(Entity):
    """A row of user_notifications, optionally joined with its announcement (unread_notifications view)."""
    ROW_ALIASES = {
        "notification_id": "id",
        "notification_created_at": "created_at",
    }

    id: str
    user_id: Optional[str] = None
    announcement_id: Optional[str] = None
    is_read: bool = False
    read_at: Optional[str] = None
    created_at: Optional[str] = None
    title: Optional[str] = None
    content: Optional[str] = None
    created_by: Optional[str] = None
    target_role: Optional[str] = None


@dataclass(frozen=True)
class Feedback(Entity):
    id: str
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None
    status: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass(frozen=True)
class TimetableEntry(Entity):
    id: str
    class_id: Optional[str] = None
    year: Optional[str] = None
    branch: Optional[str] = None
    day_of_week: Optional[str] = None
    period_number: Optional[int] = None
    subject: Optional[str] = None
    classroom_id: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None


@dataclass(frozen=True)
class AcademicEvent(Entity):
    id: str
    title: Optional[str] = None
    description: Optional[str] = None
    date: Optional[str] = None
    event_type: Optional[str] = None
    color: Optional[str] = None
    created_at: Optional[str] = None
    created_by: Optional[str] = None


@dataclass(frozen=True)
class ScheduleEvent(Entity):
    """A campus_schedule row; `target_roles` empty or None means everyone."""
    id: str
    title: Optional[str] = None
    description: Optional[str] = None
    date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    type: Optional[str] = None
    location: Optional[str] = None
    target_roles: Optional[Tuple[str, ...]] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]):
        entity = super().from_row(row)
        if isinstance(entity.target_roles, list):
            entity = dataclasses.replace(entity, target_roles=tuple(entity.target_roles))
        return entity


@dataclass(frozen=True)
class ChangeEvent:
    """One insert/update/delete notification from the change feed."""
    kind: MutationKind
    table: str
    entity_id: Any
    record: Dict[str, Any] = field(default_factory=dict)
    old_record: Dict[str, Any] = field(default_factory=dict)
    commit_timestamp: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], spec) -> Optional["ChangeEvent"]:
        """
        Parse a realtime payload for the table described by `spec`.

        Accepts the Python SDK shape ({"data": {"type", "record", "old_record"}})
        and the JS client shape ({"eventType", "new", "old"}).

        Returns:
            The event, or None when the payload has no usable type or id.
        """
        if not isinstance(payload, Mapping):
            return None

        data = payload.get("data", payload)
        if not isinstance(data, Mapping):
            return None

        kind = MutationKind.parse(data.get("type") or data.get("eventType"))
        if kind is None:
            return None

        record = dict(data.get("record") or data.get("new") or {})
        old_record = dict(data.get("old_record") or data.get("old") or {})
        entity_id = spec.row_id(record) if record else None
        if entity_id is None:
            entity_id = spec.row_id(old_record)
        if entity_id is None:
            return None

        return cls(
            kind=kind,
            table=data.get("table") or spec.table,
            entity_id=entity_id,
            record=record,
            old_record=old_record,
            commit_timestamp=data.get("commit_timestamp"),
        )

    def as_delete(self) -> "ChangeEvent":
        """The same entity expressed as a removal."""
        return ChangeEvent(
            kind=MutationKind.DELETE,
            table=self.table,
            entity_id=self.entity_id,
            record={},
            old_record=self.record or self.old_record,
            commit_timestamp=self.commit_timestamp,
        )


@dataclass
class PendingMutation:
    """A locally applied mutation waiting for remote confirmation and its echo."""
    mutation_id: str
    entity_id: Any
    kind: MutationKind
    issued_at: float
    expected_fields: Dict[str, Any]
    status: str = "pending"  # pending, resolved, echoed, expired, failed
    resolved_at: Optional[float] = None
    temporary_id: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data
