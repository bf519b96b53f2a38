"""
Role-scoped visibility - decides which rows an actor may see on a board.
Applied to the initial fetch and to every inbound change event.
"""

from typing import Any, Iterable, List, Mapping, Optional

from .config import get_admin_roles
from .schema import Actor, ChangeEvent, MutationKind
from .tables import TableSpec


def _field(obj: Any, name: Optional[str]) -> Any:
    if not name:
        return None
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def visible(actor: Optional[Actor], entity: Any, spec: TableSpec, admin_roles: Iterable[str] = None) -> bool:
    """
    Decide whether `actor` may see `entity` (an entity or a raw row).

    A row is visible when it has no target role, targets the actor's role, the
    actor holds an administrative role, or the actor owns it. Personal-inbox
    boards (`owner_scoped`) only show the actor's own rows, plus every row to
    administrators when `admin_sees_all` is set. A multi-role target matches when
    any of its roles is the actor's. The board's `row_filter` applies on top
    of either rule.
    """
    if spec.row_filter is not None and not spec.row_filter(entity):
        return False

    owner = _field(entity, spec.owner_field)

    if admin_roles is None:
        admin_roles = get_admin_roles()

    if spec.owner_scoped:
        if actor is None:
            return False
        return actor.owns(owner) or (spec.admin_sees_all and actor.has_role(*admin_roles))

    target_role = _field(entity, spec.target_role_field)
    if target_role is None or target_role == "" or (isinstance(target_role, (list, tuple)) and not target_role):
        return True

    if actor is None:
        return False

    if spec.multi_role and isinstance(target_role, (list, tuple)):
        targeted = any(actor.has_role(str(role)) for role in target_role)
    else:
        targeted = actor.has_role(str(target_role))

    return (
        targeted
        or actor.has_role(*admin_roles)
        or actor.owns(owner)
    )


class RoleVisibilityFilter:
    """Visibility predicate bound to one board and the current actor."""

    def __init__(self, spec: TableSpec, actor: Optional[Actor] = None, admin_roles: Iterable[str] = None):
        self.spec = spec
        self._actor = actor
        self._admin_roles = set(admin_roles) if admin_roles is not None else None

    @property
    def actor(self) -> Optional[Actor]:
        return self._actor

    def set_actor(self, actor: Optional[Actor]):
        """Swap the actor (login, logout, role change); callers re-filter their state."""
        self._actor = actor

    @property
    def admin_roles(self) -> Iterable[str]:
        return self._admin_roles if self._admin_roles is not None else get_admin_roles()

    def visible(self, entity: Any) -> bool:
        return visible(self._actor, entity, self.spec, self.admin_roles)

    def filter_entities(self, entities: Iterable[Any]) -> List[Any]:
        return [e for e in entities if self.visible(e)]

    def filter_event(self, event: ChangeEvent) -> ChangeEvent:
        """
        Pass visible events through unchanged; an insert/update for a row the actor
        cannot see becomes a delete, since the row may have been visible before.
        """
        if event.kind == MutationKind.DELETE:
            return event
        if self.visible(event.record):
            return event
        return event.as_delete()

    def is_drift(self, original: ChangeEvent, filtered: ChangeEvent) -> bool:
        """True when filtering turned an upsert into a removal."""
        return original.kind != MutationKind.DELETE and filtered.kind == MutationKind.DELETE
