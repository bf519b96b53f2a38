"""
Shared fixtures - in-memory stand-ins for the hosted data store and change feed.
"""

import pytest

from campusboard.core.errors import MutationFailure
from campusboard.core.gateway import ChangeFeed, DataGateway
from campusboard.core.schema import Actor, ChangeEvent, MutationKind
from campusboard.core.store import RealtimeListStore
from campusboard.core.tracker import OptimisticMutationTracker


class FakeGateway(DataGateway):
    """Records every call; rows are served per table from `self.rows`."""

    def __init__(self):
        self.rows = {}
        self.ledger = []
        self.calls = []
        self.rpc_calls = []
        self.fetch_error = None
        self.mutate_error = None
        self.rpc_error = None
        self.fetch_gate = None
        self._next_id = 100

    async def fetch_all(self, spec, actor):
        self.calls.append(("fetch", spec.table, actor))
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        if self.fetch_error is not None:
            raise self.fetch_error
        return [dict(row) for row in self.rows.get(spec.table, [])]

    async def mutate(self, spec, kind, entity_id, fields):
        self.calls.append((kind.value, spec.table, entity_id, dict(fields)))
        if self.mutate_error is not None:
            raise self.mutate_error
        if kind == MutationKind.INSERT:
            row = dict(fields)
            row["id"] = f"srv-{self._next_id}"
            self._next_id += 1
            return row
        if kind == MutationKind.UPDATE:
            return {"id": entity_id, **fields}
        return None

    async def rpc(self, name, params=None):
        self.rpc_calls.append((name, dict(params or {})))
        if self.rpc_error is not None:
            raise self.rpc_error
        return None

    async def fetch_rows(self, table, match):
        return [
            row for t, row in self.ledger
            if t == table and all(row.get(k) == v for k, v in match.items())
        ]

    async def insert_row(self, table, fields):
        if self.mutate_error is not None:
            raise self.mutate_error
        self.ledger.append((table, dict(fields)))
        return dict(fields)

    async def delete_rows(self, table, match):
        if self.mutate_error is not None:
            raise self.mutate_error
        self.ledger = [
            (t, row) for t, row in self.ledger
            if not (t == table and all(row.get(k) == v for k, v in match.items()))
        ]


class FakeFeed(ChangeFeed):
    """Delivers payloads shaped like the realtime client's to subscribed boards."""

    def __init__(self):
        self.subscriptions = {}
        self.released = []
        self.subscribe_error = None

    async def subscribe(self, spec, on_event, on_status=None):
        if self.subscribe_error is not None:
            raise self.subscribe_error
        handle = f"channel:{spec.table}:{len(self.subscriptions)}"
        self.subscriptions[handle] = (spec, on_event, on_status)
        return handle

    async def unsubscribe(self, handle):
        self.released.append(handle)
        self.subscriptions.pop(handle, None)

    def emit(self, table, event_type, record=None, old_record=None):
        payload = {"data": {"type": event_type, "table": table,
                            "record": record or {}, "old_record": old_record or {}}}
        for spec, on_event, _ in list(self.subscriptions.values()):
            if spec.table == table:
                event = ChangeEvent.from_payload(payload, spec)
                if event is not None:
                    on_event(event)

    def report(self, table, status):
        for spec, _, on_status in list(self.subscriptions.values()):
            if spec.table == table and on_status is not None:
                on_status(status, None)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def feed():
    return FakeFeed()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def student():
    return Actor(identity="u-student", role="Student", name="Sam Student", email="sam@campus.edu")


@pytest.fixture
def faculty():
    return Actor(identity="u-faculty", role="faculty", name="Dr. Fay", email="fay@campus.edu")


@pytest.fixture
def admin():
    return Actor(identity="u-admin", role="admin", name="Ada Admin", email="ada@campus.edu")


@pytest.fixture
def make_store(gateway, feed, clock):
    """Factory for a store wired to the fakes with a controllable echo clock."""
    def factory(spec, actor=None, echo_timeout=5.0):
        tracker = OptimisticMutationTracker(echo_timeout_sec=echo_timeout, clock=clock)
        return RealtimeListStore(spec, gateway=gateway, feed=feed, actor=actor,
                                 tracker=tracker, admin_roles={"admin"})
    return factory


@pytest.fixture
def network_error():
    return MutationFailure("network error", table="classrooms")
