"""
Realtime list store - one live, role-scoped, optimistically editable board.

Lifecycle: uninitialized -> seeding -> live -> (disconnected -> resyncing -> live)*,
torn_down on unmount. The store is the only writer of its entity map; readers get
immutable tuples through snapshot() or on_snapshot_change().
"""

import asyncio
import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Iterable, List, Mapping, Optional, Set, TypeVar

from ..util.logging import logger
from .config import reseed_on_reconnect
from .errors import BoardError, FetchFailure, MutationFailure, SubscriptionFailure
from .gateway import DISCONNECTED_STATES, SUBSCRIBED, ChangeFeed, DataGateway
from .reconcile import insert_at, position_of, reconcile, rekey
from .schema import Actor, ChangeEvent, Entity, MutationKind, PendingMutation
from .tables import TableSpec
from .tracker import EchoDecision, OptimisticMutationTracker, is_temporary_id, new_temporary_id
from .visibility import RoleVisibilityFilter

T = TypeVar("T", bound=Entity)

RemoteCall = Callable[[], Awaitable[Optional[Dict[str, Any]]]]
SnapshotListener = Callable[[tuple], None]


class StoreState(str, Enum):
    UNINITIALIZED = "uninitialized"
    SEEDING = "seeding"
    LIVE = "live"
    DISCONNECTED = "disconnected"
    RESYNCING = "resyncing"
    TORN_DOWN = "torn_down"


@dataclass
class Notice:
    """Non-blocking, user-visible message (rendered as a toast)."""
    table: str
    level: str  # info, warning, error
    title: str
    message: str
    error: Optional[BaseException] = None


@dataclass
class RollbackHandle:
    """Returned by every optimistic mutation; pass it to rollback() to revert."""
    mutation: PendingMutation
    previous: Optional[Any] = None
    previous_index: Optional[int] = None
    removed_locally: bool = False
    outcome: str = "pending"  # pending, confirmed, rolled_back, discarded

    @property
    def mutation_id(self) -> str:
        return self.mutation.mutation_id

    @property
    def entity_id(self) -> Any:
        return self.mutation.entity_id

    @property
    def kind(self) -> MutationKind:
        return self.mutation.kind

    @property
    def rolled_back(self) -> bool:
        return self.outcome == "rolled_back"


class RealtimeListStore(Generic[T]):
    """Single source of truth for one board's entity collection."""

    def __init__(self, spec: TableSpec, gateway: DataGateway = None, feed: ChangeFeed = None,
                 actor: Optional[Actor] = None, tracker: OptimisticMutationTracker = None,
                 admin_roles: Iterable[str] = None):
        self.spec = spec
        self._gateway = gateway
        self._feed = feed
        self._filter = RoleVisibilityFilter(spec, actor, admin_roles)
        self._tracker = tracker or OptimisticMutationTracker()
        self._entities: Dict[Any, T] = {}
        self._state = StoreState.UNINITIALIZED
        self._events_applied = 0
        self._buffered: List[ChangeEvent] = []
        self._subscription = None
        self._snapshot_listeners: List[SnapshotListener] = []
        self._notice_listeners: List[Callable[[Notice], None]] = []
        self._expiry_timer: Optional[asyncio.TimerHandle] = None
        self._expiry_loop: Optional[asyncio.AbstractEventLoop] = None
        # Events held back while the view row of an earlier one is being read
        self._hydration_queue: List[ChangeEvent] = []
        self._hydrating = False
        self._tasks: Set[asyncio.Future] = set()
        self.last_error: Optional[BoardError] = None

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def table(self) -> str:
        return self.spec.table

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def alive(self) -> bool:
        return self._state != StoreState.TORN_DOWN

    @property
    def actor(self) -> Optional[Actor]:
        return self._filter.actor

    @property
    def tracker(self) -> OptimisticMutationTracker:
        return self._tracker

    def snapshot(self) -> tuple:
        """Current ordered, visible entities."""
        return tuple(self._entities.values())

    def get(self, entity_id: Any) -> Optional[T]:
        return self._entities.get(entity_id)

    def __len__(self) -> int:
        return len(self._entities)

    def on_snapshot_change(self, callback: SnapshotListener) -> Callable[[], None]:
        """Register a presentation callback; returns a function that unregisters it."""
        self._snapshot_listeners.append(callback)

        def unsubscribe():
            if callback in self._snapshot_listeners:
                self._snapshot_listeners.remove(callback)
        return unsubscribe

    def on_notice(self, callback: Callable[[Notice], None]) -> Callable[[], None]:
        """Register a callback for transient user-visible notices."""
        self._notice_listeners.append(callback)

        def unsubscribe():
            if callback in self._notice_listeners:
                self._notice_listeners.remove(callback)
        return unsubscribe

    # ------------------------------------------------------------------
    # Seeding and remote events
    # ------------------------------------------------------------------

    def seed(self, entities: Iterable[T]):
        """
        Replace the whole collection with a fresh bulk fetch.

        Ignored (with a warning) once the change feed has delivered events, unless
        the store is resyncing: seeding over live events would reorder history.
        """
        if not self.alive:
            return
        if self._events_applied and self._state != StoreState.RESYNCING:
            logger.warning(f"Ignoring seed for {self.table}: change feed already delivered events")
            return

        self._replace_all(entities)
        if self._state in (StoreState.UNINITIALIZED, StoreState.SEEDING):
            self._set_state(StoreState.LIVE)
        self._emit()

    def apply_remote_event(self, event: ChangeEvent):
        """
        Fold one change feed event into the board (visibility, echo check, reconcile).

        Boards read from a view get the joined columns of inserted and updated rows
        read back first. Later events queue behind such a read so they still apply in
        arrival order.
        """
        if not self.alive:
            return
        if self._hydrating or self._wants_hydration(event):
            self._hydration_queue.append(event)
            if not self._hydrating:
                self._hydrating = True
                self._spawn(self._drain_hydration())
            return
        self._apply_event(event)

    def _apply_event(self, event: ChangeEvent):
        if self._state == StoreState.RESYNCING:
            self._buffered.append(event)
            return

        self._events_applied += 1
        self._expire_echoes()

        filtered = self._filter.filter_event(event)
        if self._filter.is_drift(event, filtered) and filtered.entity_id in self._entities:
            logger.log_visibility_drift(self.table, filtered.entity_id, getattr(self.actor, "role", None))

        local = self._entities.get(filtered.entity_id)
        decision, mutation = self._tracker.consume(filtered, local.to_dict() if local is not None else None)

        changed = False
        if (mutation is not None and filtered.kind == MutationKind.INSERT
                and mutation.entity_id != filtered.entity_id):
            changed = self._adopt_server_id(mutation, filtered.entity_id, filtered.record)

        if decision == EchoDecision.SUPPRESS:
            logger.log_remote_event(self.table, filtered.kind.value, filtered.entity_id, "echo_suppressed")
            if changed:
                self._emit()
            return

        new_state = reconcile(self._entities, filtered, self.spec)
        if new_state is not self._entities:
            self._entities = new_state
            changed = True

        status = "echo_merged" if decision == EchoDecision.MERGE else "applied"
        logger.log_remote_event(self.table, filtered.kind.value, filtered.entity_id, status)
        if changed:
            self._emit()

    # ------------------------------------------------------------------
    # Optimistic mutations
    # ------------------------------------------------------------------

    def apply_optimistic(self, kind: MutationKind, target: Any = None,
                         fields: Mapping[str, Any] = None) -> RollbackHandle:
        """
        Apply a mutation locally before the remote call and register it with the tracker.

        Args:
            kind: insert, update or delete
            target: For inserts an entity (or None to build one from `fields`);
                otherwise the entity id, or the entity itself
            fields: Columns being written

        Returns:
            RollbackHandle for rollback()
        """
        kind = MutationKind(kind)
        fields = dict(fields or {})
        id_field = self.spec.id_field
        event = None
        current = None

        if kind == MutationKind.INSERT:
            if isinstance(target, Entity):
                row = target.to_dict()
            else:
                row = dict(fields)
            entity_id = row.get(id_field) or new_temporary_id()
            row[id_field] = entity_id
            expected = {k: v for k, v in (fields or row).items() if k != id_field or not is_temporary_id(v)}
            event = ChangeEvent(MutationKind.INSERT, self.table, entity_id, record=row)
        else:
            entity_id = self.spec.entity_id(target) if isinstance(target, Entity) else target
            current = self._entities.get(entity_id)
            expected = dict(fields) if kind == MutationKind.UPDATE else {}
            if current is None:
                logger.warning(f"Optimistic {kind.value} for unknown {self.table} row {entity_id}")
            elif kind == MutationKind.UPDATE:
                merged = current.to_dict()
                merged.update(fields)
                merged[id_field] = entity_id
                event = ChangeEvent(MutationKind.UPDATE, self.table, entity_id, record=merged)
            else:
                event = ChangeEvent(MutationKind.DELETE, self.table, entity_id, old_record=current.to_dict())

        mutation = self._tracker.register(kind, entity_id, expected)
        handle = RollbackHandle(
            mutation=mutation,
            previous=current,
            previous_index=position_of(self._entities, entity_id) if current is not None else None,
        )

        if event is not None and self.alive:
            filtered = self._filter.filter_event(event)
            handle.removed_locally = current is not None and filtered.kind == MutationKind.DELETE
            new_state = reconcile(self._entities, filtered, self.spec)
            if new_state is not self._entities:
                self._entities = new_state
                self._emit()

        logger.log_optimistic(self.table, mutation.mutation_id, kind.value, entity_id, fields)
        return handle

    def rollback(self, handle: RollbackHandle) -> bool:
        """
        Revert an optimistic mutation whose remote call failed.

        Returns:
            False (no-op) if the mutation was already confirmed or rolled back.
        """
        if (handle.outcome in ("rolled_back", "confirmed")
                or handle.mutation.status in ("resolved", "echoed", "expired")):
            logger.log_rollback(self.table, handle.mutation_id, handle.entity_id, "skipped")
            return False

        self._tracker.fail(handle.mutation_id)
        handle.outcome = "rolled_back"
        if not self.alive:
            return True

        entity_id = handle.entity_id
        previous = handle.previous
        state = self._entities

        if handle.kind == MutationKind.INSERT:
            state = {k: v for k, v in state.items() if k != entity_id}
        elif previous is not None and self._filter.visible(previous):
            if entity_id in state:
                state = {k: (previous if k == entity_id else v) for k, v in state.items()}
            elif handle.kind == MutationKind.DELETE or handle.removed_locally:
                state = insert_at(state, handle.previous_index or 0, entity_id, previous)

        if state != self._entities:
            self._entities = state
            self._emit()

        logger.log_rollback(self.table, handle.mutation_id, entity_id)
        return True

    def confirm(self, handle: RollbackHandle, row: Optional[Mapping[str, Any]] = None):
        """Record remote success; the mutation now waits for its echo or the echo timeout."""
        server_id = self.spec.row_id(row) if row else None
        temporary = handle.entity_id
        self._tracker.resolve(handle.mutation_id, server_id)
        handle.outcome = "confirmed"

        if (handle.kind == MutationKind.INSERT and server_id is not None
                and server_id != temporary):
            handle.mutation.entity_id = server_id
            if self.alive and temporary in self._entities and self._adopt_row(temporary, server_id, row):
                self._emit()

        logger.log_mutation_outcome(self.table, handle.mutation_id, "confirmed")
        self._schedule_expiry()

    async def issue_mutation(self, kind: MutationKind, entity_id: Any = None,
                             fields: Mapping[str, Any] = None, remote: RemoteCall = None) -> RollbackHandle:
        """
        Optimistically apply a mutation, perform the remote call, then confirm or roll back.

        Args:
            kind: insert, update or delete
            entity_id: Target row for update/delete
            fields: Columns being written
            remote: Optional coroutine factory replacing the default single-row write
                (e.g. a vote RPC). It must raise MutationFailure on rejection.

        Returns:
            The RollbackHandle, with `outcome` set to confirmed, rolled_back or discarded.
        """
        kind = MutationKind(kind)
        fields = dict(fields or {})
        handle = self.apply_optimistic(kind, None if kind == MutationKind.INSERT else entity_id, fields)

        try:
            if remote is not None:
                row = await remote()
            elif self._gateway is None:
                raise MutationFailure("No data gateway configured", table=self.table)
            else:
                target = None if kind == MutationKind.INSERT else handle.entity_id
                row = await self._gateway.mutate(self.spec, kind, target, fields)
        except MutationFailure as e:
            logger.log_mutation_outcome(self.table, handle.mutation_id, "failed", str(e))
            if not self.alive:
                handle.outcome = "discarded"
                return handle
            self.rollback(handle)
            self._notify("error", "Update Failed", str(e), e)
            return handle

        if not self.alive:
            handle.outcome = "discarded"
            return handle

        self.confirm(handle, row)
        return handle

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """
        Seed from a bulk fetch, then subscribe to the change feed.

        Returns:
            True when the board is live. On fetch failure the board stays empty
            with `last_error` set; calling start() again is the retry.
        """
        if not self.alive:
            return False
        if self._gateway is None:
            raise ValueError(f"Board {self.table} has no data gateway")

        self._set_state(StoreState.SEEDING)
        self.last_error = None

        try:
            rows = await self._gateway.fetch_all(self.spec, self.actor)
        except FetchFailure as e:
            if not self.alive:
                return False
            self.last_error = e
            self._entities = {}
            self._set_state(StoreState.UNINITIALIZED)
            self._notify("error", "Error", f"Failed to load {self.table}", e)
            self._emit()
            return False

        if not self.alive:
            return False

        self.seed(self._build_all(rows))

        if self._feed is not None and self._subscription is None:
            try:
                subscription = await self._feed.subscribe(self.spec, self.apply_remote_event, self.handle_feed_status)
            except SubscriptionFailure as e:
                if self.alive:
                    self.last_error = e
                    self._set_state(StoreState.DISCONNECTED)
                    self._notify("warning", "Live updates unavailable", str(e), e)
                return False

            if not self.alive:
                await self._release(subscription)
                return False
            self._subscription = subscription

        return True

    def handle_feed_status(self, status: str, error: Optional[Exception] = None):
        """Channel status callback: disconnects mark the board stale, reconnects re-seed it."""
        if not self.alive:
            return

        status = str(status).upper()
        if status in DISCONNECTED_STATES:
            if self._state in (StoreState.LIVE, StoreState.RESYNCING):
                self.last_error = SubscriptionFailure(f"Change feed {status.lower()}", table=self.table)
                self._set_state(StoreState.DISCONNECTED)
                self._notify("warning", "Connection lost", f"Live updates for {self.table} paused", error)
        elif status == SUBSCRIBED and self._state == StoreState.DISCONNECTED:
            if reseed_on_reconnect() and self._gateway is not None:
                self._spawn(self.resync())
            else:
                self._set_state(StoreState.LIVE)

    async def resync(self) -> bool:
        """
        Full re-fetch after a reconnect; the feed has no gap-fill or replay.

        Still-pending optimistic mutations are re-applied on top of the fresh rows and
        events that arrived during the fetch are replayed afterwards.
        """
        if not self.alive or self._gateway is None:
            return False

        self._set_state(StoreState.RESYNCING)
        self._buffered = []

        try:
            rows = await self._gateway.fetch_all(self.spec, self.actor)
        except FetchFailure as e:
            if self.alive:
                self.last_error = e
                self._buffered = []
                self._set_state(StoreState.DISCONNECTED)
                self._notify("error", "Resync failed", f"Failed to reload {self.table}", e)
            return False

        if not self.alive:
            return False

        self._replace_all(self._build_all(rows))
        self._reapply_pending()
        buffered, self._buffered = self._buffered, []
        self._set_state(StoreState.LIVE)
        self.last_error = None
        self._emit()

        for event in buffered:
            self.apply_remote_event(event)
        return True

    def set_actor(self, actor: Optional[Actor]):
        """Swap the actor and evict rows they can no longer see."""
        self._filter.set_actor(actor)
        if not self.alive:
            return

        kept = {}
        for entity_id, entity in self._entities.items():
            if self._filter.visible(entity):
                kept[entity_id] = entity
            else:
                logger.log_visibility_drift(self.table, entity_id, getattr(actor, "role", None))

        if len(kept) != len(self._entities):
            self._entities = kept
            self._emit()

    async def teardown(self):
        """Release the subscription; late async results are discarded from here on."""
        if not self.alive:
            return

        self._set_state(StoreState.TORN_DOWN)
        if self._expiry_timer is not None:
            self._expiry_timer.cancel()
            self._expiry_timer = None
        self._buffered = []
        self._hydration_queue = []
        self._snapshot_listeners.clear()
        self._notice_listeners.clear()

        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await self._release(subscription)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _set_state(self, state: StoreState):
        if state == self._state:
            return
        previous, self._state = self._state, state
        logger.log_state_transition(self.table, previous.value, state.value)

    def _emit(self):
        snapshot = self.snapshot()
        for callback in list(self._snapshot_listeners):
            try:
                callback(snapshot)
            except Exception as e:
                # Listener isolation - a broken view must not stall the board
                logger.error(f"Snapshot listener for {self.table} failed: {e}")

    def _notify(self, level: str, title: str, message: str, error: Optional[BaseException] = None):
        notice = Notice(table=self.table, level=level, title=title, message=message, error=error)
        for callback in list(self._notice_listeners):
            try:
                callback(notice)
            except Exception as e:
                logger.error(f"Notice listener for {self.table} failed: {e}")

    def _build_all(self, rows: Iterable[Mapping[str, Any]]) -> List[T]:
        entities = []
        for row in rows:
            try:
                entities.append(self.spec.build(row))
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed {self.table} row: {e}")
        return entities

    def _replace_all(self, entities: Iterable[T]):
        entities = list(entities)
        ordered: Dict[Any, T] = {}
        for entity in self.spec.sort(self._filter.filter_entities(entities)):
            # Duplicate ids keep the first position and the last value
            ordered[self.spec.entity_id(entity)] = entity
        self._entities = ordered
        logger.log_seed(self.table, len(entities), len(ordered))

    def _reapply_pending(self):
        """Layer unresolved optimistic mutations over freshly fetched rows."""
        for mutation in self._tracker.list_pending():
            if mutation.status != "pending":
                continue
            entity_id = mutation.entity_id
            if mutation.kind == MutationKind.INSERT:
                row = dict(mutation.expected_fields)
                row[self.spec.id_field] = entity_id
                event = ChangeEvent(MutationKind.INSERT, self.table, entity_id, record=row)
            elif mutation.kind == MutationKind.UPDATE:
                current = self._entities.get(entity_id)
                if current is None:
                    continue
                row = current.to_dict()
                row.update(mutation.expected_fields)
                event = ChangeEvent(MutationKind.UPDATE, self.table, entity_id, record=row)
            else:
                event = ChangeEvent(MutationKind.DELETE, self.table, entity_id)
            self._entities = reconcile(self._entities, self._filter.filter_event(event), self.spec)

    def _adopt_server_id(self, mutation: PendingMutation, server_id: Any, row: Mapping[str, Any]) -> bool:
        """An insert echo arrived for a row we still hold under a temporary id."""
        temporary = mutation.entity_id
        mutation.entity_id = server_id
        mutation.temporary_id = False
        self._tracker.rekey(temporary, server_id)
        return self._adopt_row(temporary, server_id, row)

    def _adopt_row(self, temporary: Any, server_id: Any, row: Optional[Mapping[str, Any]]) -> bool:
        current = self._entities.get(temporary)
        if current is None:
            return False
        try:
            entity = self.spec.build(row) if row else current.replace(**{self.spec.id_field: server_id})
        except (TypeError, ValueError):
            entity = current.replace(**{self.spec.id_field: server_id})
        self._entities = rekey(self._entities, temporary, server_id, entity)
        return True

    def _expire_echoes(self):
        expired = self._tracker.expire()
        if expired:
            logger.log_echo_expired(self.table, [m.mutation_id for m in expired])

    def _schedule_expiry(self):
        """Keep one timer armed for the earliest open echo window."""
        if not self.alive:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        # A timer left on another (finished) loop never fires
        if self._expiry_timer is not None and self._expiry_loop is loop:
            return
        delay = self._tracker.next_expiry()
        if delay is None:
            return
        self._expiry_loop = loop
        self._expiry_timer = loop.call_later(delay, self._on_expiry_timer)

    def _on_expiry_timer(self):
        self._expiry_timer = None
        if self.alive:
            self._expire_echoes()
            self._schedule_expiry()

    def _wants_hydration(self, event: ChangeEvent) -> bool:
        spec = self.spec
        if not spec.needs_hydration or self._gateway is None or event.kind == MutationKind.DELETE:
            return False
        if spec.row_filter is not None and not spec.row_filter(event.record):
            return False
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return False
        return True

    async def _drain_hydration(self):
        try:
            while self._hydration_queue and self.alive:
                event = self._hydration_queue.pop(0)
                if self._wants_hydration(event):
                    event = await self._hydrate(event)
                if self.alive:
                    self._apply_event(event)
        finally:
            self._hydrating = False

    async def _hydrate(self, event: ChangeEvent) -> ChangeEvent:
        """Complete a base-table row with the columns only its view carries."""
        spec = self.spec
        try:
            rows = await self._gateway.fetch_rows(spec.fetch_relation, {spec.hydrate_key: event.entity_id})
        except FetchFailure as e:
            logger.warning(f"Could not read {spec.fetch_relation} row for {self.table} {event.entity_id}: {e}")
            rows = []

        record = {}
        local = self._entities.get(event.entity_id)
        if local is not None:
            record.update(local.to_dict())
        if rows:
            record.update(rows[0])
        record.update(event.record)
        return dataclasses.replace(event, record=record)

    def _spawn(self, coroutine):
        task = asyncio.ensure_future(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _release(self, subscription):
        try:
            await self._feed.unsubscribe(subscription)
        except SubscriptionFailure as e:
            logger.warning(f"Failed to release {self.table} subscription: {e}")
