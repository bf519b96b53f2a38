"""
Board table registry - how each portal list is fetched, ordered and scoped.
"""

from dataclasses import dataclass
from functools import cmp_to_key
from typing import Any, Callable, Dict, Generic, Iterable, List, Mapping, Optional, Tuple, Type, TypeVar

from .schema import (
    AcademicEvent,
    Actor,
    Announcement,
    Classroom,
    Entity,
    Feedback,
    FacultyStatus,
    MenuItem,
    NotificationItem,
    ScheduleEvent,
    TimetableEntry,
)

T = TypeVar("T", bound=Entity)

_RESERVED = set(',.:()" ')


def _quote(value: Any) -> str:
    """Double-quote filter values that contain PostgREST reserved characters."""
    text = str(value)
    if any(ch in _RESERVED for ch in text):
        return '"' + text.replace('\\', '\\\\').replace('"', '\\"') + '"'
    return text


def _like_literal(value: str) -> str:
    """Escape LIKE wildcards so an `ilike` filter matches the value exactly."""
    return value.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


@dataclass(frozen=True)
class OrderField:
    name: str
    descending: bool = False


@dataclass(frozen=True)
class TableSpec(Generic[T]):
    """
    Everything the store needs to know about one entity type.

    `table` is the realtime/mutation target, `source` the relation read by the
    bulk fetch (a view, for notifications). Change events for such a board carry
    base-table rows only; `hydrate_key` names the `source` column holding the base
    id so the joined columns can be read back. With no `order_by` the board keeps
    insertion order, newest first when `newest_first` is set. An `owner_scoped`
    board only shows rows owned by the actor, plus every row to administrative
    roles when `admin_sees_all` is set. A `target_role_field` holds either one
    role or, with `multi_role`, a list of roles.
    """
    table: str
    model: Type[T]
    source: Optional[str] = None
    hydrate_key: Optional[str] = None
    id_field: str = "id"
    order_by: Tuple[OrderField, ...] = ()
    newest_first: bool = False
    target_role_field: Optional[str] = None
    multi_role: bool = False
    owner_field: Optional[str] = None
    owner_scoped: bool = False
    admin_sees_all: bool = False
    row_filter: Optional[Callable[[Any], bool]] = None

    @property
    def fetch_relation(self) -> str:
        return self.source or self.table

    @property
    def needs_hydration(self) -> bool:
        return bool(self.hydrate_key) and self.fetch_relation != self.table

    def entity_id(self, entity: T) -> Any:
        return getattr(entity, self.id_field, None)

    def row_id(self, row: Mapping[str, Any]) -> Any:
        """Read the id out of a raw row, honouring the model's column aliases."""
        if not row:
            return None
        if self.id_field in row:
            return row[self.id_field]
        for column, name in self.model.ROW_ALIASES.items():
            if name == self.id_field and column in row:
                return row[column]
        return None

    def build(self, row: Mapping[str, Any]) -> T:
        return self.model.from_row(row)

    def compare(self, left: T, right: T) -> int:
        """Three-way compare on `order_by`; None sorts last in either direction."""
        for order in self.order_by:
            a = getattr(left, order.name, None)
            b = getattr(right, order.name, None)
            if a == b:
                continue
            if a is None:
                return 1
            if b is None:
                return -1
            try:
                result = -1 if a < b else 1
            except TypeError:
                result = -1 if str(a) < str(b) else 1
            return -result if order.descending else result
        return 0

    def sort(self, entities: Iterable[T]) -> List[T]:
        """Stable sort by `order_by`; a no-op for insertion-ordered boards."""
        items = list(entities)
        if not self.order_by:
            return items
        return sorted(items, key=cmp_to_key(self.compare))

    def server_filter(self, actor: Optional[Actor], admin_roles: Iterable[str] = ("admin",)) -> Optional[str]:
        """
        Render the visibility rule as a PostgREST `or` filter for the bulk fetch.

        Roles compare case-insensitively on both sides, so the role clause is an
        escaped `ilike` rather than `eq`.

        Returns:
            None when no pushdown applies (no scalar target role column, or an admin actor).
        """
        is_admin = actor is not None and actor.has_role(*admin_roles)
        if self.owner_scoped and self.owner_field:
            if actor is None or not actor.identity or (self.admin_sees_all and is_admin):
                return None
            return f"{self.owner_field}.eq.{_quote(actor.identity)}"
        if not self.target_role_field or self.multi_role or is_admin:
            return None

        clauses = [f"{self.target_role_field}.is.null"]
        if actor is not None and actor.role:
            clauses.append(f"{self.target_role_field}.ilike.{_quote(_like_literal(actor.role.strip()))}")
        if actor is not None and self.owner_field:
            for value in (actor.identity, actor.name):
                if value:
                    clauses.append(f"{self.owner_field}.eq.{_quote(value)}")
        return ",".join(clauses)


def _unread(entity) -> bool:
    if isinstance(entity, Mapping):
        return not entity.get("is_read", False)
    return not getattr(entity, "is_read", False)


CLASSROOMS = TableSpec(
    table="classrooms",
    model=Classroom,
    order_by=(OrderField("building"), OrderField("floor"), OrderField("name")),
)

FACULTY = TableSpec(
    table="faculty_availability",
    model=FacultyStatus,
    order_by=(OrderField("name"),),
)

CANTEEN_MENU = TableSpec(
    table="canteen_menu",
    model=MenuItem,
    order_by=(OrderField("votes", descending=True),),
)

ANNOUNCEMENTS = TableSpec(
    table="announcements",
    model=Announcement,
    newest_first=True,
    target_role_field="target_role",
    owner_field="created_by",
)

NOTIFICATIONS = TableSpec(
    table="user_notifications",
    model=NotificationItem,
    source="unread_notifications",
    hydrate_key="notification_id",
    newest_first=True,
    owner_field="user_id",
    owner_scoped=True,
    row_filter=_unread,
)

FEEDBACK = TableSpec(
    table="feedback",
    model=Feedback,
    newest_first=True,
    owner_field="user_id",
    owner_scoped=True,
    admin_sees_all=True,
)

TIMETABLE = TableSpec(
    table="timetable",
    model=TimetableEntry,
    order_by=(OrderField("year"), OrderField("branch"), OrderField("class_id"),
              OrderField("day_of_week"), OrderField("period_number")),
)

ACADEMIC_CALENDAR = TableSpec(
    table="academic_calendar",
    model=AcademicEvent,
    order_by=(OrderField("date"),),
)

CAMPUS_SCHEDULE = TableSpec(
    table="campus_schedule",
    model=ScheduleEvent,
    order_by=(OrderField("date"), OrderField("start_time")),
    target_role_field="target_roles",
    multi_role=True,
)

TABLES: Dict[str, TableSpec] = {
    spec.table: spec
    for spec in (CLASSROOMS, FACULTY, CANTEEN_MENU, ANNOUNCEMENTS, NOTIFICATIONS,
                 FEEDBACK, TIMETABLE, ACADEMIC_CALENDAR, CAMPUS_SCHEDULE)
}

# Bulk-fetch ordering that mirrors the board ordering on the server side
FETCH_ORDER: Dict[str, Tuple[OrderField, ...]] = {
    ANNOUNCEMENTS.table: (OrderField("created_at", descending=True),),
    NOTIFICATIONS.table: (OrderField("notification_created_at", descending=True),),
    FEEDBACK.table: (OrderField("created_at", descending=True),),
}


def get_table(name: str) -> Optional[TableSpec]:
    """Look a board up by table name (or by its fetch relation)."""
    if name in TABLES:
        return TABLES[name]
    for spec in TABLES.values():
        if spec.source == name:
            return spec
    return None
