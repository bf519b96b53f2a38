"""
Board actions - the role-checked operations of the campus portal.

Each action checks the actor's role before touching local state, then goes through
RealtimeListStore.issue_mutation so the change is optimistic and rolls back on failure.
"""

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Type

from ..util.logging import audit_event, logger
from .errors import ActionNotPermitted
from .gateway import DataGateway
from .schema import Actor, ClassroomStatus, FacultyAvailability, FeedbackStatus, MutationKind
from .session import check_user_role
from .store import RealtimeListStore, RollbackHandle

CLASSROOM_EDITORS = ("admin", "faculty", "cr")
FACULTY_EDITORS = ("admin", "faculty")
ANNOUNCEMENT_AUTHORS = ("admin", "faculty", "cr")
CANTEEN_MANAGERS = ("admin", "canteen_staff", "canteen staff")
TIMETABLE_EDITORS = ("admin",)

VOTES_TABLE = "user_menu_votes"
ANNOUNCEMENT_FIELDS = {"title", "content", "target_role"}
TIMETABLE_FIELDS = {
    "class_id", "year", "branch", "day_of_week", "period_number",
    "subject", "classroom_id", "start_time", "end_time",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_admin(actor: Optional[Actor]) -> bool:
    return actor is not None and actor.has_role("admin")


def _deny(actor: Optional[Actor], action: str, table: str):
    role = getattr(actor, "role", None)
    audit_event("action.denied", {"action": action, "table": table, "role": role})
    raise ActionNotPermitted(f"Role {role!r} may not {action}", table=table)


def _require_role(actor: Optional[Actor], roles: Iterable[str], action: str, table: str):
    if actor is None or not check_user_role(actor.role, roles):
        _deny(actor, action, table)


def _require_signed_in(actor: Optional[Actor], action: str, table: str):
    if actor is None or not actor.identity:
        _deny(actor, action, table)


def _choice(enum: Type[Enum], value: Any) -> str:
    """Canonical enum value for a case-insensitive match."""
    for member in enum:
        if isinstance(value, str) and member.value.lower() == value.strip().lower():
            return member.value
    allowed = ", ".join(m.value for m in enum)
    raise ValueError(f"Invalid status {value!r}, expected one of: {allowed}")


def _require_entity(store: RealtimeListStore, entity_id: Any):
    entity = store.get(entity_id)
    if entity is None:
        raise KeyError(f"Unknown {store.table} row: {entity_id}")
    return entity


async def update_classroom_status(store: RealtimeListStore, actor: Actor, classroom_id: str,
                                  status: str) -> RollbackHandle:
    """Set a classroom's status, stamping when and by whom."""
    _require_role(actor, CLASSROOM_EDITORS, "update classroom status", store.table)
    fields = {
        "status": _choice(ClassroomStatus, status),
        "last_updated": _now(),
        "updated_by": actor.name,
    }

    handle = await store.issue_mutation(MutationKind.UPDATE, classroom_id, fields)
    audit_event("action.classroom_status", {"classroom_id": classroom_id, "outcome": handle.outcome},
                {"status": fields["status"]})
    return handle


async def update_faculty_status(store: RealtimeListStore, actor: Actor, faculty_id: str, status: str,
                                return_date: Optional[str] = None, notes: Optional[str] = None) -> RollbackHandle:
    """
    Update a faculty member's availability.

    Faculty may only edit their own row (matched by email); admins may edit any.
    A return date is kept only while the member is unavailable.
    """
    _require_role(actor, FACULTY_EDITORS, "update faculty availability", store.table)
    member = _require_entity(store, faculty_id)
    if not _is_admin(actor) and (not actor.email or actor.email != member.email):
        _deny(actor, "update another member's availability", store.table)

    status = _choice(FacultyAvailability, status)
    fields: Dict[str, Any] = {
        "status": status,
        "return_date": return_date if status == FacultyAvailability.UNAVAILABLE.value else None,
    }
    if notes is not None:
        fields["notes"] = notes

    handle = await store.issue_mutation(MutationKind.UPDATE, faculty_id, fields)
    audit_event("action.faculty_status", {"faculty_id": faculty_id, "outcome": handle.outcome},
                {"status": status})
    return handle


async def fetch_voted_items(gateway: DataGateway, actor: Actor) -> Set[str]:
    """Menu item ids the actor has voted for."""
    if actor is None or not actor.identity:
        return set()
    rows = await gateway.fetch_rows(VOTES_TABLE, {"user_id": actor.identity})
    return {row["menu_item_id"] for row in rows if row.get("menu_item_id") is not None}


async def toggle_vote(store: RealtimeListStore, gateway: DataGateway, actor: Actor, item_id: str,
                      voted: bool) -> RollbackHandle:
    """
    Add or withdraw the actor's vote on a menu item.

    The local count moves by one immediately (never below zero); the server keeps
    the vote ledger and recomputes the count through its counter functions.

    Args:
        voted: Whether the actor has already voted for the item (True withdraws it)
    """
    _require_signed_in(actor, "vote", store.table)
    item = _require_entity(store, item_id)
    votes = max(0, (item.votes or 0) - 1) if voted else (item.votes or 0) + 1
    ballot = {"user_id": actor.identity, "menu_item_id": item_id}

    async def remote():
        if voted:
            await gateway.delete_rows(VOTES_TABLE, ballot)
            await gateway.rpc("decrement_votes", {"item_id": item_id})
        else:
            await gateway.insert_row(VOTES_TABLE, ballot)
            await gateway.rpc("increment_votes", {"item_id": item_id})
        return None

    handle = await store.issue_mutation(MutationKind.UPDATE, item_id, {"votes": votes}, remote=remote)
    audit_event("action.vote", {"item_id": item_id, "withdrawn": voted, "outcome": handle.outcome})
    return handle


async def reset_votes(store: RealtimeListStore, gateway: DataGateway, actor: Actor) -> bool:
    """Zero every vote count server side, then reload the menu."""
    _require_role(actor, CANTEEN_MANAGERS, "reset votes", store.table)
    await gateway.rpc("reset_votes")
    audit_event("action.reset_votes", {"table": store.table, "role": actor.role})
    return await store.resync()


async def create_announcement(store: RealtimeListStore, actor: Actor, title: str, content: str,
                              target_role: Optional[str] = None) -> RollbackHandle:
    """Post an announcement; no target role means every user sees it."""
    _require_role(actor, ANNOUNCEMENT_AUTHORS, "create announcements", store.table)
    if not title or not title.strip():
        raise ValueError("Announcement title is required")
    if not content or not content.strip():
        raise ValueError("Announcement content is required")

    fields = {
        "title": title.strip(),
        "content": content.strip(),
        "created_by": actor.name or actor.identity,
        "target_role": target_role or None,
    }
    handle = await store.issue_mutation(MutationKind.INSERT, fields=fields)
    audit_event("action.announcement_created", {"announcement_id": handle.entity_id, "outcome": handle.outcome},
                {"title": fields["title"], "target_role": fields["target_role"]})
    return handle


def _require_author(store: RealtimeListStore, actor: Actor, announcement_id: str, action: str):
    announcement = _require_entity(store, announcement_id)
    if not (_is_admin(actor) or (actor is not None and actor.owns(announcement.created_by))):
        _deny(actor, action, store.table)
    return announcement


async def edit_announcement(store: RealtimeListStore, actor: Actor, announcement_id: str,
                            changes: Mapping[str, Any]) -> RollbackHandle:
    """Edit title, content or target role; admins and the author only."""
    _require_author(store, actor, announcement_id, "edit this announcement")
    unknown = set(changes) - ANNOUNCEMENT_FIELDS
    if unknown:
        raise ValueError(f"Announcement fields cannot be edited: {', '.join(sorted(unknown))}")

    fields = dict(changes)
    if "target_role" in fields:
        fields["target_role"] = fields["target_role"] or None

    handle = await store.issue_mutation(MutationKind.UPDATE, announcement_id, fields)
    audit_event("action.announcement_edited", {"announcement_id": announcement_id, "outcome": handle.outcome})
    return handle


async def delete_announcement(store: RealtimeListStore, actor: Actor, announcement_id: str) -> RollbackHandle:
    """Remove an announcement; admins and the author only."""
    _require_author(store, actor, announcement_id, "delete this announcement")
    handle = await store.issue_mutation(MutationKind.DELETE, announcement_id)
    audit_event("action.announcement_deleted", {"announcement_id": announcement_id, "outcome": handle.outcome})
    return handle


async def mark_notification_read(store: RealtimeListStore, actor: Actor, notification_id: str) -> RollbackHandle:
    """Mark one notification read; it leaves the unread list immediately."""
    _require_signed_in(actor, "read notifications", store.table)
    _require_entity(store, notification_id)
    fields = {"is_read": True, "read_at": _now()}
    return await store.issue_mutation(MutationKind.UPDATE, notification_id, fields)


async def mark_all_notifications_read(store: RealtimeListStore, actor: Actor) -> List[RollbackHandle]:
    """Mark every notification currently on the board read."""
    _require_signed_in(actor, "read notifications", store.table)
    pending = [store.spec.entity_id(item) for item in store.snapshot()]
    if not pending:
        return []

    fields = {"is_read": True, "read_at": _now()}
    handles = await asyncio.gather(*[
        store.issue_mutation(MutationKind.UPDATE, notification_id, fields)
        for notification_id in pending
    ])
    failed = sum(1 for h in handles if h.rolled_back)
    if failed:
        logger.warning(f"{failed} of {len(handles)} notifications could not be marked read")
    return list(handles)


async def submit_feedback(store: RealtimeListStore, actor: Actor, subject: str, message: str) -> RollbackHandle:
    """File feedback as the signed-in user; it starts out pending."""
    _require_signed_in(actor, "submit feedback", store.table)
    if not subject or not subject.strip() or not message or not message.strip():
        raise ValueError("Feedback needs both a subject and a message")

    fields = {
        "user_id": actor.identity,
        "user_name": actor.name or "Anonymous",
        "user_email": actor.email,
        "subject": subject.strip(),
        "message": message.strip(),
        "status": FeedbackStatus.PENDING.value,
    }
    handle = await store.issue_mutation(MutationKind.INSERT, fields=fields)
    audit_event("action.feedback_submitted", {"feedback_id": handle.entity_id, "outcome": handle.outcome},
                {"subject": fields["subject"]})
    return handle


async def update_feedback_status(store: RealtimeListStore, actor: Actor, feedback_id: str,
                                 status: str) -> RollbackHandle:
    """Move feedback through pending, reviewed and resolved (admins only)."""
    _require_role(actor, ("admin",), "review feedback", store.table)
    _require_entity(store, feedback_id)
    fields = {"status": _choice(FeedbackStatus, status), "updated_at": _now()}

    handle = await store.issue_mutation(MutationKind.UPDATE, feedback_id, fields)
    audit_event("action.feedback_status", {"feedback_id": feedback_id, "outcome": handle.outcome},
                {"status": fields["status"]})
    return handle


async def delete_feedback(store: RealtimeListStore, actor: Actor, feedback_id: str) -> RollbackHandle:
    _require_role(actor, ("admin",), "delete feedback", store.table)
    _require_entity(store, feedback_id)
    handle = await store.issue_mutation(MutationKind.DELETE, feedback_id)
    audit_event("action.feedback_deleted", {"feedback_id": feedback_id, "outcome": handle.outcome})
    return handle


async def save_timetable_entry(store: RealtimeListStore, actor: Actor, fields: Mapping[str, Any],
                               entry_id: Optional[str] = None) -> RollbackHandle:
    """
    Create a timetable period, or edit one when `entry_id` is given (admins only).

    Blank classroom and time columns are stored as NULL.
    """
    _require_role(actor, TIMETABLE_EDITORS, "edit the timetable", store.table)
    unknown = set(fields) - TIMETABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown timetable fields: {', '.join(sorted(unknown))}")

    row = dict(fields)
    for name in ("classroom_id", "start_time", "end_time"):
        if name in row:
            row[name] = (row[name] or "").strip() or None

    if entry_id is None:
        missing = [name for name in ("class_id", "day_of_week", "period_number", "subject") if not row.get(name)]
        if missing:
            raise ValueError(f"Timetable entry is missing: {', '.join(missing)}")
        handle = await store.issue_mutation(MutationKind.INSERT, fields=row)
    else:
        _require_entity(store, entry_id)
        handle = await store.issue_mutation(MutationKind.UPDATE, entry_id, row)

    audit_event("action.timetable_saved", {"entry_id": handle.entity_id, "outcome": handle.outcome})
    return handle


async def delete_timetable_entry(store: RealtimeListStore, actor: Actor, entry_id: str) -> RollbackHandle:
    _require_role(actor, TIMETABLE_EDITORS, "delete timetable entries", store.table)
    _require_entity(store, entry_id)
    handle = await store.issue_mutation(MutationKind.DELETE, entry_id)
    audit_event("action.timetable_deleted", {"entry_id": entry_id, "outcome": handle.outcome})
    return handle


async def save_calendar_event(store: RealtimeListStore, actor: Actor, title: str, date: Optional[str] = None,
                              color: Optional[str] = None, event_id: Optional[str] = None) -> RollbackHandle:
    """Pin a message to a calendar date, or edit an existing one (admins only)."""
    _require_role(actor, ("admin",), "edit the academic calendar", store.table)
    if not title or not title.strip():
        raise ValueError("Calendar message is required")

    if event_id is not None:
        _require_entity(store, event_id)
        fields: Dict[str, Any] = {"title": title.strip()}
        if color is not None:
            fields["color"] = color
        handle = await store.issue_mutation(MutationKind.UPDATE, event_id, fields)
    else:
        if not date:
            raise ValueError("Calendar date is required")
        fields = {
            "title": title.strip(),
            "description": None,
            "date": date,
            "event_type": "message",
            "color": color,
            "created_by": actor.identity,
        }
        handle = await store.issue_mutation(MutationKind.INSERT, fields=fields)

    audit_event("action.calendar_saved", {"event_id": handle.entity_id, "outcome": handle.outcome})
    return handle


async def delete_calendar_event(store: RealtimeListStore, actor: Actor, event_id: str) -> RollbackHandle:
    _require_role(actor, ("admin",), "edit the academic calendar", store.table)
    _require_entity(store, event_id)
    handle = await store.issue_mutation(MutationKind.DELETE, event_id)
    audit_event("action.calendar_deleted", {"event_id": event_id, "outcome": handle.outcome})
    return handle


def schedule_for_day(entities: Iterable[Any], day: str) -> List[Any]:
    """Campus schedule events on one ISO date, in start-time order."""
    return sorted(
        (e for e in entities if getattr(e, "date", None) == day),
        key=lambda e: (e.start_time is None, e.start_time or ""),
    )


def status_counts(entities: Iterable[Any], statuses: Iterable[str] = (), field: str = "status") -> Dict[str, int]:
    """
    Headline counts for a board: total plus one entry per status value.

    Args:
        statuses: Values always reported, even at zero
    """
    counts: Dict[str, int] = {status: 0 for status in statuses}
    total = 0
    for entity in entities:
        total += 1
        value = getattr(entity, field, None)
        if value is not None:
            counts[value] = counts.get(value, 0) + 1
    return {"total": total, **counts}
