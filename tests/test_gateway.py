"""
Supabase adapter tests - query building, error conversion and realtime payload parsing.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from campusboard.core.errors import FetchFailure, MutationFailure, SubscriptionFailure
from campusboard.core.gateway import SupabaseChangeFeed, SupabaseGateway
from campusboard.core.schema import Actor, ChangeEvent, MutationKind
from campusboard.core.tables import ANNOUNCEMENTS, CLASSROOMS, FEEDBACK, NOTIFICATIONS
from campusboard.core.visibility import visible


def _query(data=None, error=None):
    """Chainable PostgREST builder mock whose execute() resolves to `data`."""
    query = MagicMock()
    for name in ("select", "or_", "order", "eq", "insert", "update", "delete", "match", "limit"):
        getattr(query, name).return_value = query
    if error is not None:
        query.execute = AsyncMock(side_effect=error)
    else:
        query.execute = AsyncMock(return_value=MagicMock(data=data))
    return query


@pytest.fixture
def client():
    return MagicMock()


class TestSupabaseGateway:
    """Bulk reads and single-row writes."""

    def test_fetch_pushes_visibility_and_order(self, client, student):
        query = _query([{"id": "a1"}])
        client.table.return_value = query

        rows = asyncio.run(SupabaseGateway(client, {"admin"}).fetch_all(ANNOUNCEMENTS, student))

        assert rows == [{"id": "a1"}]
        client.table.assert_called_once_with("announcements")
        query.or_.assert_called_once_with(ANNOUNCEMENTS.server_filter(student, {"admin"}))
        query.order.assert_called_once_with("created_at", desc=True)

    def test_lowercase_role_still_fetches_targeted_rows(self, client):
        """A profile role stored as 'student' must not lose rows targeted at 'Student'."""
        student = Actor(identity="u-7", role="student")
        targeted = {"id": "a2", "title": "Exams", "target_role": "Student"}
        query = _query([targeted])
        client.table.return_value = query

        rows = asyncio.run(SupabaseGateway(client, {"admin"}).fetch_all(ANNOUNCEMENTS, student))

        pushed = query.or_.call_args.args[0].split(",")
        assert "target_role.ilike.student" in pushed
        assert not any(".eq.student" in clause for clause in pushed)
        assert [ANNOUNCEMENTS.build(row) for row in rows if visible(student, row, ANNOUNCEMENTS, {"admin"})]

    def test_fetch_orders_by_board_fields(self, client):
        query = _query([])
        client.table.return_value = query

        asyncio.run(SupabaseGateway(client, {"admin"}).fetch_all(CLASSROOMS, None))

        query.or_.assert_not_called()
        assert [c.args[0] for c in query.order.call_args_list] == ["building", "floor", "name"]

    def test_notifications_read_from_view(self, client, student):
        query = _query([])
        client.table.return_value = query

        asyncio.run(SupabaseGateway(client).fetch_all(NOTIFICATIONS, student))

        client.table.assert_called_once_with("unread_notifications")
        query.or_.assert_called_once_with("user_id.eq.u-student")

    def test_admin_reads_all_feedback_newest_first(self, client, admin):
        query = _query([])
        client.table.return_value = query

        asyncio.run(SupabaseGateway(client, {"admin"}).fetch_all(FEEDBACK, admin))

        client.table.assert_called_once_with("feedback")
        query.or_.assert_not_called()
        query.order.assert_called_once_with("created_at", desc=True)

    def test_anonymous_inbox_is_empty_without_a_query(self, client):
        assert asyncio.run(SupabaseGateway(client).fetch_all(NOTIFICATIONS, None)) == []
        client.table.assert_not_called()

    def test_fetch_error_is_converted(self, client):
        client.table.return_value = _query(error=RuntimeError("connection reset"))

        with pytest.raises(FetchFailure) as info:
            asyncio.run(SupabaseGateway(client).fetch_all(CLASSROOMS, None))
        assert info.value.table == "classrooms"

    def test_update_targets_one_row(self, client):
        query = _query([{"id": "r1", "status": "Occupied"}])
        client.table.return_value = query

        row = asyncio.run(SupabaseGateway(client).mutate(
            CLASSROOMS, MutationKind.UPDATE, "r1", {"status": "Occupied"}))

        query.update.assert_called_once_with({"status": "Occupied"})
        query.eq.assert_called_once_with("id", "r1")
        assert row == {"id": "r1", "status": "Occupied"}

    def test_delete_returns_none_without_rows(self, client):
        client.table.return_value = _query([])
        assert asyncio.run(SupabaseGateway(client).mutate(CLASSROOMS, MutationKind.DELETE, "r1", {})) is None

    def test_mutation_error_is_converted(self, client):
        client.table.return_value = _query(error=RuntimeError("row level security"))

        with pytest.raises(MutationFailure):
            asyncio.run(SupabaseGateway(client).mutate(CLASSROOMS, MutationKind.INSERT, None, {"name": "x"}))

    def test_rpc(self, client):
        client.rpc.return_value = _query(7)

        assert asyncio.run(SupabaseGateway(client).rpc("increment_votes", {"item_id": "m1"})) == 7
        client.rpc.assert_called_once_with("increment_votes", {"item_id": "m1"})

    def test_rpc_error_is_converted(self, client):
        client.rpc.return_value = _query(error=RuntimeError("function missing"))

        with pytest.raises(MutationFailure):
            asyncio.run(SupabaseGateway(client).rpc("reset_votes"))

    def test_vote_ledger_helpers(self, client):
        query = _query([{"user_id": "u1", "menu_item_id": "m1"}])
        client.table.return_value = query
        gateway = SupabaseGateway(client)

        assert asyncio.run(gateway.fetch_rows("user_menu_votes", {"user_id": "u1"})) == [
            {"user_id": "u1", "menu_item_id": "m1"}
        ]
        asyncio.run(gateway.delete_rows("user_menu_votes", {"user_id": "u1", "menu_item_id": "m1"}))
        query.match.assert_called_with({"user_id": "u1", "menu_item_id": "m1"})


class TestSupabaseChangeFeed:
    """postgres_changes channel wiring."""

    @pytest.fixture
    def channel(self, client):
        channel = MagicMock()
        channel.subscribe = AsyncMock()
        client.channel.return_value = channel
        client.remove_channel = AsyncMock()
        return channel

    def test_subscribe_parses_payloads(self, client, channel):
        events = []
        handle = asyncio.run(SupabaseChangeFeed(client, "public").subscribe(CLASSROOMS, events.append))

        assert handle is channel
        client.channel.assert_called_once_with("public:classrooms")
        kwargs = channel.on_postgres_changes.call_args.kwargs
        assert kwargs["schema"] == "public" and kwargs["table"] == "classrooms"

        kwargs["callback"]({"data": {"type": "UPDATE", "record": {"id": "r1", "status": "Occupied"}}})
        kwargs["callback"]({"data": {"type": "TRUNCATE"}})

        assert len(events) == 1
        assert events[0].kind == MutationKind.UPDATE
        assert events[0].entity_id == "r1"

    def test_status_changes_are_forwarded(self, client, channel):
        statuses = []
        asyncio.run(SupabaseChangeFeed(client).subscribe(
            CLASSROOMS, lambda e: None, lambda status, error: statuses.append(status)))

        on_status = channel.subscribe.call_args.args[0]
        on_status("SUBSCRIBED", None)
        on_status(MagicMock(value="channel_error"), RuntimeError("socket closed"))

        assert statuses == ["SUBSCRIBED", "CHANNEL_ERROR"]

    def test_subscribe_error_is_converted(self, client, channel):
        channel.subscribe = AsyncMock(side_effect=RuntimeError("refused"))

        with pytest.raises(SubscriptionFailure):
            asyncio.run(SupabaseChangeFeed(client).subscribe(CLASSROOMS, lambda e: None))

    def test_unsubscribe_removes_channel(self, client, channel):
        asyncio.run(SupabaseChangeFeed(client).unsubscribe(channel))
        client.remove_channel.assert_awaited_once_with(channel)


class TestChangeEventPayloads:
    """ChangeEvent.from_payload shapes."""

    def test_client_library_shape(self):
        event = ChangeEvent.from_payload({"eventType": "DELETE", "new": {}, "old": {"id": "a1"}}, ANNOUNCEMENTS)

        assert event.kind == MutationKind.DELETE
        assert event.entity_id == "a1"
        assert event.table == "announcements"

    def test_view_column_aliases(self):
        payload = {"data": {"type": "INSERT", "record": {"notification_id": "n1", "user_id": "u1"}}}
        event = ChangeEvent.from_payload(payload, NOTIFICATIONS)

        assert event.entity_id == "n1"
        assert NOTIFICATIONS.build(event.record).id == "n1"

    def test_payload_without_id_is_dropped(self):
        assert ChangeEvent.from_payload({"data": {"type": "INSERT", "record": {"name": "x"}}}, CLASSROOMS) is None
        assert ChangeEvent.from_payload("not a payload", CLASSROOMS) is None
