"""
Optimistic mutation tracking - recognizes the change feed echo of our own writes.

A mutation is registered before its remote call goes out, so an echo racing ahead of
the call's own response is still recognized. Remote success does not clear it: the
mutation waits for its echo, or for the echo window to pass.
"""

import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .config import get_echo_timeout
from .schema import ChangeEvent, MutationKind, PendingMutation

TEMP_ID_PREFIX = "tmp-"


def new_temporary_id() -> str:
    """Client-side id for an optimistic insert, replaced once the server id is known."""
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def is_temporary_id(entity_id: Any) -> bool:
    return isinstance(entity_id, str) and entity_id.startswith(TEMP_ID_PREFIX)


class EchoDecision(str, Enum):
    UNTRACKED = "untracked"   # not ours, reconcile normally
    SUPPRESS = "suppress"     # our echo, local state already matches
    MERGE = "merge"           # our echo, but the server changed more than we sent


class OptimisticMutationTracker:
    """Tracks locally issued, not yet echoed mutations for one board."""

    def __init__(self, echo_timeout_sec: float = None, clock: Callable[[], float] = time.monotonic):
        self._echo_timeout = echo_timeout_sec
        self._clock = clock
        self._pending: Dict[str, PendingMutation] = {}

    @property
    def echo_timeout(self) -> float:
        return self._echo_timeout if self._echo_timeout is not None else get_echo_timeout()

    def __len__(self) -> int:
        return len(self._pending)

    def register(self, kind: MutationKind, entity_id: Any, expected_fields: Mapping[str, Any]) -> PendingMutation:
        """Record a mutation that has just been applied locally."""
        mutation = PendingMutation(
            mutation_id=str(uuid.uuid4()),
            entity_id=entity_id,
            kind=kind,
            issued_at=self._clock(),
            expected_fields=dict(expected_fields or {}),
            temporary_id=is_temporary_id(entity_id),
        )
        self._pending[mutation.mutation_id] = mutation
        return mutation

    def get(self, mutation_id: str) -> Optional[PendingMutation]:
        return self._pending.get(mutation_id)

    def list_pending(self) -> List[PendingMutation]:
        """Pending mutations in issue order."""
        return sorted(self._pending.values(), key=lambda m: m.issued_at)

    def pending_for(self, entity_id: Any) -> List[PendingMutation]:
        return [m for m in self.list_pending() if m.entity_id == entity_id]

    def is_confirmed(self, mutation_id: str) -> bool:
        """True while a mutation is known to have succeeded remotely and waits for its echo."""
        mutation = self._pending.get(mutation_id)
        return mutation is not None and mutation.status == "resolved"

    def resolve(self, mutation_id: str, server_id: Any = None) -> bool:
        """
        Mark the remote call as successful and open the echo window.

        Args:
            mutation_id: Mutation returned by register()
            server_id: Server-assigned id for an insert issued under a temporary id

        Returns:
            True if the mutation was still awaiting its response.
        """
        mutation = self._pending.get(mutation_id)
        if mutation is None or mutation.status != "pending":
            return False

        mutation.status = "resolved"
        mutation.resolved_at = self._clock()
        if server_id is not None and server_id != mutation.entity_id:
            self.rekey(mutation.entity_id, server_id)
        return True

    def fail(self, mutation_id: str) -> Optional[PendingMutation]:
        """Drop a mutation whose remote call failed. Resolved or retired mutations are left alone."""
        mutation = self._pending.get(mutation_id)
        if mutation is None or mutation.status != "pending":
            return None
        del self._pending[mutation_id]
        mutation.status = "failed"
        return mutation

    def rekey(self, old_id: Any, new_id: Any):
        """Move pending mutations from a temporary id to the server id."""
        for mutation in self._pending.values():
            if mutation.entity_id == old_id:
                mutation.entity_id = new_id
                mutation.temporary_id = False

    def match(self, event: ChangeEvent) -> Optional[PendingMutation]:
        """Find the oldest pending mutation this event could be the echo of."""
        for mutation in self.list_pending():
            if mutation.entity_id == event.entity_id and mutation.kind == event.kind:
                return mutation

        if event.kind == MutationKind.INSERT:
            # Echo raced ahead of the insert response: match on the fields we sent
            for mutation in self.list_pending():
                if (mutation.kind == MutationKind.INSERT and mutation.temporary_id
                        and _contains(event.record, mutation.expected_fields)):
                    return mutation
        return None

    def consume(self, event: ChangeEvent, local_row: Optional[Mapping[str, Any]]) -> Tuple[EchoDecision, Optional[PendingMutation]]:
        """
        Classify an inbound event against pending mutations and retire the match.

        Args:
            event: Visibility-filtered change event
            local_row: Current local state of the entity as a dict, None if absent

        Returns:
            (decision, matched mutation). For a temporary-id insert the returned
            mutation still carries the temporary id so callers can rekey.
        """
        mutation = self.match(event)
        if mutation is None:
            return EchoDecision.UNTRACKED, None

        del self._pending[mutation.mutation_id]
        mutation.status = "echoed"

        if event.kind == MutationKind.DELETE:
            decision = EchoDecision.SUPPRESS if local_row is None else EchoDecision.MERGE
            return decision, mutation

        if mutation.temporary_id:
            # The local row is keyed by the temporary id; it must be replaced
            return EchoDecision.MERGE, mutation

        if local_row is not None and _matches_local(event.record, local_row):
            return EchoDecision.SUPPRESS, mutation
        return EchoDecision.MERGE, mutation

    def _deadline(self, mutation: PendingMutation) -> Optional[float]:
        if mutation.status != "resolved" or mutation.resolved_at is None:
            return None
        return mutation.resolved_at + self.echo_timeout

    def expire(self) -> List[PendingMutation]:
        """Retire resolved mutations whose echo did not arrive in time (success without echo)."""
        now = self._clock()
        expired = []
        for mutation in list(self._pending.values()):
            deadline = self._deadline(mutation)
            if deadline is not None and now >= deadline:
                del self._pending[mutation.mutation_id]
                mutation.status = "expired"
                expired.append(mutation)
        return expired

    def next_expiry(self) -> Optional[float]:
        """Seconds until the earliest echo window closes, None when nothing waits on one."""
        deadlines = [d for d in map(self._deadline, self._pending.values()) if d is not None]
        if not deadlines:
            return None
        return max(0.0, min(deadlines) - self._clock())

    def clear(self):
        self._pending.clear()


def _contains(record: Mapping[str, Any], expected: Mapping[str, Any]) -> bool:
    return bool(expected) and all(
        key in record and record[key] == value
        for key, value in expected.items()
        if not is_temporary_id(value)
    )


def _matches_local(record: Mapping[str, Any], local_row: Mapping[str, Any]) -> bool:
    """Every column the echo shares with the local model carries the same value."""
    shared = [key for key in record if key in local_row]
    return bool(shared) and all(record[key] == local_row[key] for key in shared)
