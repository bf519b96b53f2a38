"""
Change event reconciliation - folds one change feed event into an ordered entity map.

The feed delivers full-row snapshots, not diffs, so every insert/update replaces the
stored record outright. The merge is pure: the input map is never mutated, malformed
events leave the state as it was, and replaying an event is a no-op.
"""

from typing import Any, Dict, List, Optional, Tuple

from .schema import ChangeEvent, MutationKind
from .tables import TableSpec


def reconcile(state: Dict[Any, Any], event: ChangeEvent, spec: TableSpec) -> Dict[Any, Any]:
    """
    Apply a change event to the current board state.

    Rules:
    - insert: replace in place when the id is already present (an optimistic insert
      got there first), otherwise place it per the board's ordering rule
    - update: replace in place; an unknown id is treated as an insert
    - delete: remove if present, no-op otherwise

    Args:
        state: Ordered mapping of entity id to entity
        event: Inbound change event
        spec: Table description for the board

    Returns:
        A new ordered mapping (the same object when nothing changed).
    """
    entity_id = event.entity_id
    if entity_id is None:
        return state

    if event.kind == MutationKind.DELETE:
        if entity_id not in state:
            return state
        return {k: v for k, v in state.items() if k != entity_id}

    if not event.record:
        return state

    try:
        entity = spec.build(event.record)
    except (TypeError, ValueError):
        return state

    if spec.entity_id(entity) != entity_id:
        return state

    if entity_id in state:
        if state[entity_id] == entity:
            return state
        return {k: (entity if k == entity_id else v) for k, v in state.items()}

    return _place(state, entity_id, entity, spec)


def replay(state: Dict[Any, Any], events: List[ChangeEvent], spec: TableSpec) -> Dict[Any, Any]:
    """Fold a sequence of events in delivery order."""
    for event in events:
        state = reconcile(state, event, spec)
    return state


def rekey(state: Dict[Any, Any], old_id: Any, new_id: Any, entity: Any) -> Dict[Any, Any]:
    """Swap a temporary id for the server-assigned one, keeping the row's position."""
    if old_id not in state:
        return state
    rebuilt = {}
    for key, value in state.items():
        if key == old_id:
            rebuilt[new_id] = entity
        elif key != new_id:
            rebuilt[key] = value
    return rebuilt


def insert_at(state: Dict[Any, Any], index: int, entity_id: Any, entity: Any) -> Dict[Any, Any]:
    """Insert (or move) an entity to a position, clamped to the map bounds."""
    items: List[Tuple[Any, Any]] = [(k, v) for k, v in state.items() if k != entity_id]
    index = max(0, min(index, len(items)))
    items.insert(index, (entity_id, entity))
    return dict(items)


def position_of(state: Dict[Any, Any], entity_id: Any) -> Optional[int]:
    for index, key in enumerate(state):
        if key == entity_id:
            return index
    return None


def _place(state: Dict[Any, Any], entity_id: Any, entity: Any, spec: TableSpec) -> Dict[Any, Any]:
    """Insert a new entity per the board's ordering rule."""
    if spec.order_by:
        # Before the first existing row that should come after it
        for index, existing in enumerate(state.values()):
            if spec.compare(entity, existing) < 0:
                return insert_at(state, index, entity_id, entity)
        return insert_at(state, len(state), entity_id, entity)

    if spec.newest_first:
        return insert_at(state, 0, entity_id, entity)

    return insert_at(state, len(state), entity_id, entity)
