"""
Board action tests - role checks, field stamping and the vote/notification flows.
"""

import asyncio

import pytest

from campusboard.core import actions
from campusboard.core.errors import ActionNotPermitted, MutationFailure
from campusboard.core.schema import (
    Actor,
    Announcement,
    AcademicEvent,
    ChangeEvent,
    Classroom,
    FacultyStatus,
    Feedback,
    MenuItem,
    MutationKind,
    NotificationItem,
    ScheduleEvent,
    TimetableEntry,
)
from campusboard.core.tables import (
    ACADEMIC_CALENDAR,
    ANNOUNCEMENTS,
    CANTEEN_MENU,
    CLASSROOMS,
    FACULTY,
    FEEDBACK,
    NOTIFICATIONS,
    TIMETABLE,
)


@pytest.fixture
def classrooms(make_store):
    store = make_store(CLASSROOMS)
    store.seed([Classroom(id="r1", name="101", building="A", floor=1, status="Available")])
    return store


@pytest.fixture
def menu(make_store):
    store = make_store(CANTEEN_MENU)
    store.seed([MenuItem(id="m1", name="Dosa", votes=5), MenuItem(id="m2", name="Idli", votes=0)])
    return store


@pytest.fixture
def board(make_store, admin):
    store = make_store(ANNOUNCEMENTS, actor=admin)
    store.seed([
        Announcement(id="a1", title="Exams", content="Hall 3", created_by="Dr. Fay"),
        Announcement(id="a2", title="Menu", content="New", created_by="Ada Admin"),
    ])
    return store


class TestClassroomStatus:
    """update_classroom_status."""

    def test_faculty_can_update(self, classrooms, faculty, gateway):
        handle = asyncio.run(actions.update_classroom_status(classrooms, faculty, "r1", "occupied"))

        room = classrooms.get("r1")
        assert handle.outcome == "confirmed"
        assert room.status == "Occupied"
        assert room.updated_by == "Dr. Fay"
        assert room.last_updated is not None
        kind, table, entity_id, fields = gateway.calls[-1]
        assert (kind, table, entity_id) == ("update", "classrooms", "r1")
        assert set(fields) == {"status", "last_updated", "updated_by"}

    def test_student_is_rejected_before_any_change(self, classrooms, student, gateway):
        with pytest.raises(ActionNotPermitted):
            asyncio.run(actions.update_classroom_status(classrooms, student, "r1", "Occupied"))

        assert classrooms.get("r1").status == "Available"
        assert len(classrooms.tracker) == 0
        assert gateway.calls == []

    def test_class_representative_role_is_case_insensitive(self, classrooms):
        rep = Actor(identity="u-cr", role="CR", name="Casey")
        asyncio.run(actions.update_classroom_status(classrooms, rep, "r1", "Maintenance"))
        assert classrooms.get("r1").status == "Maintenance"

    def test_invalid_status(self, classrooms, admin):
        with pytest.raises(ValueError):
            asyncio.run(actions.update_classroom_status(classrooms, admin, "r1", "Closed"))


class TestFacultyStatus:
    """update_faculty_status."""

    @pytest.fixture
    def roster(self, make_store):
        store = make_store(FACULTY)
        store.seed([
            FacultyStatus(id="f1", name="Dr. Fay", email="fay@campus.edu", status="AVAILABLE"),
            FacultyStatus(id="f2", name="Dr. Gil", email="gil@campus.edu", status="AVAILABLE"),
        ])
        return store

    def test_faculty_updates_own_row(self, roster, faculty):
        asyncio.run(actions.update_faculty_status(roster, faculty, "f1", "UNAVAILABLE", return_date="2024-06-01"))

        member = roster.get("f1")
        assert member.status == "UNAVAILABLE"
        assert member.return_date == "2024-06-01"

    def test_return_date_cleared_unless_unavailable(self, roster, faculty):
        asyncio.run(actions.update_faculty_status(roster, faculty, "f1", "BUSY", return_date="2024-06-01"))
        assert roster.get("f1").return_date is None

    def test_faculty_cannot_update_colleague(self, roster, faculty):
        with pytest.raises(ActionNotPermitted):
            asyncio.run(actions.update_faculty_status(roster, faculty, "f2", "BUSY"))

    def test_admin_updates_anyone(self, roster, admin):
        asyncio.run(actions.update_faculty_status(roster, admin, "f2", "busy", notes="In a meeting"))
        assert roster.get("f2").status == "BUSY"
        assert roster.get("f2").notes == "In a meeting"

    def test_unknown_member(self, roster, admin):
        with pytest.raises(KeyError):
            asyncio.run(actions.update_faculty_status(roster, admin, "f9", "BUSY"))


class TestVotes:
    """toggle_vote / reset_votes."""

    def test_vote_converges_without_double_count(self, menu, gateway, student):
        handle = asyncio.run(actions.toggle_vote(menu, gateway, student, "m1", voted=False))
        assert menu.get("m1").votes == 6

        # The server increments the counter itself and echoes the result
        menu.apply_remote_event(_menu_update("m1", "Dosa", 6))

        assert handle.outcome == "confirmed"
        assert menu.get("m1").votes == 6
        assert ("increment_votes", {"item_id": "m1"}) in gateway.rpc_calls
        assert gateway.ledger == [("user_menu_votes", {"user_id": "u-student", "menu_item_id": "m1"})]

    def test_withdraw_vote_never_goes_negative(self, menu, gateway, student):
        asyncio.run(actions.toggle_vote(menu, gateway, student, "m2", voted=True))

        assert menu.get("m2").votes == 0
        assert gateway.rpc_calls == [("decrement_votes", {"item_id": "m2"})]

    def test_failed_vote_rolls_back(self, menu, gateway, student):
        gateway.rpc_error = MutationFailure("rpc down")

        handle = asyncio.run(actions.toggle_vote(menu, gateway, student, "m1", voted=False))

        assert handle.rolled_back
        assert menu.get("m1").votes == 5

    def test_anonymous_cannot_vote(self, menu, gateway):
        with pytest.raises(ActionNotPermitted):
            asyncio.run(actions.toggle_vote(menu, gateway, None, "m1", voted=False))

    def test_voted_items(self, menu, gateway, student):
        asyncio.run(actions.toggle_vote(menu, gateway, student, "m2", voted=False))
        assert asyncio.run(actions.fetch_voted_items(gateway, student)) == {"m2"}
        assert asyncio.run(actions.fetch_voted_items(gateway, None)) == set()

    def test_reset_votes_reloads_menu(self, menu, gateway):
        staff = Actor(identity="u-staff", role="canteen_staff", name="Cook")
        gateway.rows["canteen_menu"] = [{"id": "m1", "votes": 0}, {"id": "m2", "votes": 0}]

        assert asyncio.run(actions.reset_votes(menu, gateway, staff))
        assert gateway.rpc_calls == [("reset_votes", {})]
        assert [item.votes for item in menu.snapshot()] == [0, 0]

    def test_reset_votes_requires_staff(self, menu, gateway, student):
        with pytest.raises(ActionNotPermitted):
            asyncio.run(actions.reset_votes(menu, gateway, student))
        assert gateway.rpc_calls == []


class TestAnnouncements:
    """create / edit / delete announcements."""

    def test_create_announcement(self, board, faculty, gateway):
        handle = asyncio.run(actions.create_announcement(board, faculty, " Lab closed ", "Friday", "Student"))

        created = board.snapshot()[0]
        assert created.id == handle.entity_id == "srv-100"
        assert created.title == "Lab closed"
        assert created.created_by == "Dr. Fay"
        assert created.target_role == "Student"

    def test_create_requires_text(self, board, admin):
        with pytest.raises(ValueError):
            asyncio.run(actions.create_announcement(board, admin, "  ", "body"))

    def test_student_cannot_create(self, board, student):
        with pytest.raises(ActionNotPermitted):
            asyncio.run(actions.create_announcement(board, student, "Party", "Tonight"))

    def test_author_can_edit(self, board, faculty):
        asyncio.run(actions.edit_announcement(board, faculty, "a1", {"title": "Exams moved"}))
        assert board.get("a1").title == "Exams moved"

    def test_non_author_cannot_edit(self, board, faculty):
        with pytest.raises(ActionNotPermitted):
            asyncio.run(actions.edit_announcement(board, faculty, "a2", {"title": "Mine now"}))

    def test_edit_rejects_unknown_fields(self, board, admin):
        with pytest.raises(ValueError):
            asyncio.run(actions.edit_announcement(board, admin, "a1", {"created_by": "someone"}))

    def test_admin_can_delete(self, board, admin):
        handle = asyncio.run(actions.delete_announcement(board, admin, "a1"))

        assert handle.outcome == "confirmed"
        assert [a.id for a in board.snapshot()] == ["a2"]


class TestNotifications:
    """mark_notification_read / mark_all_notifications_read."""

    @pytest.fixture
    def inbox(self, make_store, student):
        store = make_store(NOTIFICATIONS, actor=student)
        store.seed([
            NotificationItem(id="n1", user_id="u-student", title="Exams"),
            NotificationItem(id="n2", user_id="u-student", title="Menu"),
        ])
        return store

    def test_mark_read_removes_from_inbox(self, inbox, student, gateway):
        handle = asyncio.run(actions.mark_notification_read(inbox, student, "n1"))

        assert handle.outcome == "confirmed"
        assert [n.id for n in inbox.snapshot()] == ["n2"]
        kind, table, entity_id, fields = gateway.calls[-1]
        assert (kind, table, entity_id) == ("update", "user_notifications", "n1")
        assert fields["is_read"] is True

    def test_mark_all_read(self, inbox, student):
        handles = asyncio.run(actions.mark_all_notifications_read(inbox, student))

        assert len(handles) == 2
        assert inbox.snapshot() == ()

    def test_failed_mark_read_restores_row(self, inbox, student, gateway, network_error):
        gateway.mutate_error = network_error
        asyncio.run(actions.mark_notification_read(inbox, student, "n2"))

        assert [n.id for n in inbox.snapshot()] == ["n1", "n2"]


class TestFeedback:
    """submit_feedback / update_feedback_status / delete_feedback."""

    @pytest.fixture
    def review_queue(self, make_store, admin):
        store = make_store(FEEDBACK, actor=admin)
        store.seed([Feedback(id="f1", user_id="u-student", subject="Wifi", message="Down", status="pending")])
        return store

    def test_student_submits_pending_feedback(self, make_store, student, gateway):
        store = make_store(FEEDBACK, actor=student)
        store.seed([])

        handle = asyncio.run(actions.submit_feedback(store, student, "  Wifi ", " Down in block B "))

        assert handle.outcome == "confirmed"
        kind, table, _, fields = gateway.calls[-1]
        assert (kind, table) == ("insert", "feedback")
        assert fields == {
            "user_id": "u-student",
            "user_name": "Sam Student",
            "user_email": "sam@campus.edu",
            "subject": "Wifi",
            "message": "Down in block B",
            "status": "pending",
        }
        assert [f.id for f in store.snapshot()] == ["srv-100"]

    def test_nameless_profile_submits_as_anonymous(self, make_store, gateway):
        actor = Actor(identity="u-5", role="student")
        store = make_store(FEEDBACK, actor=actor)
        store.seed([])

        asyncio.run(actions.submit_feedback(store, actor, "Lights", "Flickering"))
        assert gateway.calls[-1][3]["user_name"] == "Anonymous"

    def test_signed_out_cannot_submit(self, make_store, gateway):
        store = make_store(FEEDBACK)
        with pytest.raises(ActionNotPermitted):
            asyncio.run(actions.submit_feedback(store, None, "Wifi", "Down"))
        assert gateway.calls == []

    def test_subject_and_message_required(self, make_store, student):
        store = make_store(FEEDBACK, actor=student)
        with pytest.raises(ValueError):
            asyncio.run(actions.submit_feedback(store, student, "Wifi", "   "))

    def test_admin_resolves(self, review_queue, admin, gateway):
        handle = asyncio.run(actions.update_feedback_status(review_queue, admin, "f1", "Resolved"))

        assert handle.outcome == "confirmed"
        entry = review_queue.get("f1")
        assert entry.status == "resolved"
        assert entry.updated_at is not None

    def test_only_admins_review(self, review_queue, faculty, gateway):
        with pytest.raises(ActionNotPermitted):
            asyncio.run(actions.update_feedback_status(review_queue, faculty, "f1", "reviewed"))
        assert gateway.calls == []

    def test_unknown_status_rejected(self, review_queue, admin):
        with pytest.raises(ValueError):
            asyncio.run(actions.update_feedback_status(review_queue, admin, "f1", "closed"))

    def test_admin_deletes(self, review_queue, admin):
        asyncio.run(actions.delete_feedback(review_queue, admin, "f1"))
        assert review_queue.snapshot() == ()


class TestTimetable:
    """save_timetable_entry / delete_timetable_entry."""

    @pytest.fixture
    def timetable(self, make_store, admin):
        store = make_store(TIMETABLE, actor=admin)
        store.seed([TimetableEntry(id="t1", class_id="CSE-A", day_of_week="Monday", period_number=1,
                                   subject="DBMS", classroom_id="r1")])
        return store

    def test_admin_adds_period_with_blank_room_as_null(self, timetable, admin, gateway):
        handle = asyncio.run(actions.save_timetable_entry(timetable, admin, {
            "class_id": "CSE-A", "year": "2", "branch": "CSE", "day_of_week": "Monday",
            "period_number": 2, "subject": "Networks", "classroom_id": "  ", "start_time": "10:00",
        }))

        fields = gateway.calls[-1][3]
        assert fields["classroom_id"] is None
        assert fields["start_time"] == "10:00"
        assert timetable.get(handle.entity_id).subject == "Networks"

    def test_edit_existing_period(self, timetable, admin):
        asyncio.run(actions.save_timetable_entry(timetable, admin, {"subject": "Operating Systems"}, entry_id="t1"))
        assert timetable.get("t1").subject == "Operating Systems"
        assert timetable.get("t1").classroom_id == "r1"

    def test_new_period_needs_core_columns(self, timetable, admin):
        with pytest.raises(ValueError):
            asyncio.run(actions.save_timetable_entry(timetable, admin, {"class_id": "CSE-A"}))

    def test_unknown_columns_rejected(self, timetable, admin):
        with pytest.raises(ValueError):
            asyncio.run(actions.save_timetable_entry(timetable, admin, {"lecturer": "Dr. Fay"}, entry_id="t1"))

    def test_faculty_cannot_edit(self, timetable, faculty):
        with pytest.raises(ActionNotPermitted):
            asyncio.run(actions.delete_timetable_entry(timetable, faculty, "t1"))
        assert timetable.get("t1") is not None

    def test_admin_deletes(self, timetable, admin):
        asyncio.run(actions.delete_timetable_entry(timetable, admin, "t1"))
        assert timetable.get("t1") is None


class TestAcademicCalendar:
    """save_calendar_event / delete_calendar_event."""

    @pytest.fixture
    def calendar(self, make_store, admin):
        store = make_store(ACADEMIC_CALENDAR, actor=admin)
        store.seed([AcademicEvent(id="c1", title="Exams begin", date="2024-11-04", color="#ef4444")])
        return store

    def test_admin_pins_message(self, calendar, admin, gateway):
        asyncio.run(actions.save_calendar_event(calendar, admin, " Mid-term break ", date="2024-10-21",
                                                color="#3b82f6"))

        fields = gateway.calls[-1][3]
        assert fields["title"] == "Mid-term break"
        assert fields["event_type"] == "message"
        assert fields["created_by"] == "u-admin"
        assert [e.id for e in calendar.snapshot()] == ["srv-100", "c1"]

    def test_admin_edits_message(self, calendar, admin):
        asyncio.run(actions.save_calendar_event(calendar, admin, "Exams postponed", event_id="c1"))

        event = calendar.get("c1")
        assert event.title == "Exams postponed"
        assert event.color == "#ef4444"

    def test_new_message_needs_a_date(self, calendar, admin):
        with pytest.raises(ValueError):
            asyncio.run(actions.save_calendar_event(calendar, admin, "Holiday"))

    def test_students_cannot_edit(self, calendar, student):
        with pytest.raises(ActionNotPermitted):
            asyncio.run(actions.delete_calendar_event(calendar, student, "c1"))


def test_schedule_for_day():
    events = [
        ScheduleEvent(id="s1", date="2024-05-01", start_time="14:00"),
        ScheduleEvent(id="s2", date="2024-05-02", start_time="09:00"),
        ScheduleEvent(id="s3", date="2024-05-01", start_time="09:30"),
        ScheduleEvent(id="s4", date="2024-05-01"),
    ]

    assert [e.id for e in actions.schedule_for_day(events, "2024-05-01")] == ["s3", "s1", "s4"]


def test_status_counts():
    rooms = [Classroom(id="1", status="Available"), Classroom(id="2", status="Available"),
             Classroom(id="3", status="Occupied")]
    counts = actions.status_counts(rooms, ["Available", "Occupied", "Maintenance"])

    assert counts == {"total": 3, "Available": 2, "Occupied": 1, "Maintenance": 0}


def _menu_update(item_id, name, votes):
    return ChangeEvent(kind=MutationKind.UPDATE, table="canteen_menu", entity_id=item_id,
                       record={"id": item_id, "name": name, "votes": votes})
