"""
Hosted backend adapters - bulk reads, single-row writes and change feed subscriptions.

The abstract classes are what the store depends on; the Supabase classes bind them
to `supabase.AsyncClient`. Every remote failure is converted to a BoardError here.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from supabase import AsyncClient

from .config import DB_SCHEMA, get_admin_roles
from .errors import FetchFailure, MutationFailure, SubscriptionFailure
from .schema import Actor, ChangeEvent, MutationKind
from .tables import FETCH_ORDER, TableSpec

logger = logging.getLogger(__name__)

EventCallback = Callable[[ChangeEvent], None]
StatusCallback = Callable[[str, Optional[Exception]], None]

# Channel states reported by the realtime client
SUBSCRIBED = "SUBSCRIBED"
DISCONNECTED_STATES = {"CLOSED", "CHANNEL_ERROR", "TIMED_OUT"}


class DataGateway(ABC):
    """CRUD-style access to board tables."""

    @abstractmethod
    async def fetch_all(self, spec: TableSpec, actor: Optional[Actor]) -> List[Dict[str, Any]]:
        """Bulk read of a board, role-filtered server side where possible."""

    @abstractmethod
    async def mutate(self, spec: TableSpec, kind: MutationKind, entity_id: Any,
                     fields: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        """One round trip per mutation. Returns the written row when the backend echoes it."""

    @abstractmethod
    async def rpc(self, name: str, params: Mapping[str, Any] = None) -> Any:
        """Call a server-side function (vote counters and the like)."""

    @abstractmethod
    async def fetch_rows(self, table: str, match: Mapping[str, Any]) -> List[Dict[str, Any]]:
        """Read rows of a table that has no board of its own."""

    @abstractmethod
    async def insert_row(self, table: str, fields: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        """Write to a table that has no board of its own (vote ledger)."""

    @abstractmethod
    async def delete_rows(self, table: str, match: Mapping[str, Any]):
        """Delete every row of `table` matching all columns in `match`."""


class ChangeFeed(ABC):
    """Subscribe-to-table-changes primitive."""

    @abstractmethod
    async def subscribe(self, spec: TableSpec, on_event: EventCallback,
                        on_status: StatusCallback = None) -> Any:
        """Start delivering change events for a table; returns a subscription handle."""

    @abstractmethod
    async def unsubscribe(self, handle: Any):
        """Release a subscription handle."""


def _status_name(status: Any) -> str:
    return str(getattr(status, "value", status)).upper()


class SupabaseGateway(DataGateway):
    """DataGateway over the Supabase PostgREST API."""

    def __init__(self, client: AsyncClient, admin_roles: Iterable[str] = None):
        self._client = client
        self._admin_roles = admin_roles

    async def fetch_all(self, spec: TableSpec, actor: Optional[Actor]) -> List[Dict[str, Any]]:
        if spec.owner_scoped and (actor is None or not actor.identity):
            return []

        query = self._client.table(spec.fetch_relation).select("*")

        role_filter = spec.server_filter(actor, self._admin_roles or get_admin_roles())
        if role_filter:
            query = query.or_(role_filter)

        for order in FETCH_ORDER.get(spec.table, spec.order_by):
            query = query.order(order.name, desc=order.descending)

        try:
            response = await query.execute()
        except Exception as e:
            logger.error(f"Failed to fetch board '{spec.table}': {e}")
            raise FetchFailure(f"Failed to load {spec.table}: {e}", table=spec.table) from e

        return list(response.data or [])

    async def mutate(self, spec: TableSpec, kind: MutationKind, entity_id: Any,
                     fields: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        table = self._client.table(spec.table)
        fields = dict(fields or {})

        if kind == MutationKind.INSERT:
            query = table.insert(fields)
        elif kind == MutationKind.UPDATE:
            query = table.update(fields).eq(spec.id_field, entity_id)
        elif kind == MutationKind.DELETE:
            query = table.delete().eq(spec.id_field, entity_id)
        else:
            raise MutationFailure(f"Unsupported mutation kind: {kind}", table=spec.table)

        try:
            response = await query.execute()
        except Exception as e:
            logger.error(f"Failed to {kind.value} {spec.table} row {entity_id}: {e}")
            raise MutationFailure(f"Could not {kind.value} {spec.table}: {e}", table=spec.table) from e

        rows = response.data or []
        return dict(rows[0]) if rows else None

    async def rpc(self, name: str, params: Mapping[str, Any] = None) -> Any:
        try:
            response = await self._client.rpc(name, dict(params or {})).execute()
        except Exception as e:
            logger.error(f"RPC '{name}' failed: {e}")
            raise MutationFailure(f"Server function {name} failed: {e}") from e
        return response.data

    async def fetch_rows(self, table: str, match: Mapping[str, Any]) -> List[Dict[str, Any]]:
        try:
            response = await self._client.table(table).select("*").match(dict(match)).execute()
        except Exception as e:
            logger.error(f"Failed to read {table}: {e}")
            raise FetchFailure(f"Could not read {table}: {e}", table=table) from e
        return list(response.data or [])

    async def insert_row(self, table: str, fields: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            response = await self._client.table(table).insert(dict(fields)).execute()
        except Exception as e:
            logger.error(f"Failed to insert into {table}: {e}")
            raise MutationFailure(f"Could not insert into {table}: {e}", table=table) from e
        rows = response.data or []
        return dict(rows[0]) if rows else None

    async def delete_rows(self, table: str, match: Mapping[str, Any]):
        try:
            await self._client.table(table).delete().match(dict(match)).execute()
        except Exception as e:
            logger.error(f"Failed to delete from {table}: {e}")
            raise MutationFailure(f"Could not delete from {table}: {e}", table=table) from e


class SupabaseChangeFeed(ChangeFeed):
    """ChangeFeed over Supabase Realtime postgres_changes channels."""

    def __init__(self, client: AsyncClient, schema: str = None):
        self._client = client
        self._schema = schema or DB_SCHEMA

    async def subscribe(self, spec: TableSpec, on_event: EventCallback,
                        on_status: StatusCallback = None) -> Any:
        channel = self._client.channel(f"{self._schema}:{spec.table}")

        def handle_change(payload):
            event = ChangeEvent.from_payload(payload, spec)
            if event is None:
                logger.warning(f"Dropped unparseable change payload for {spec.table}")
                return
            on_event(event)

        def handle_status(status, error=None):
            name = _status_name(status)
            if error is not None:
                logger.warning(f"Channel {spec.table} reported {name}: {error}")
            if on_status is not None:
                on_status(name, error)

        channel.on_postgres_changes("*", schema=self._schema, table=spec.table, callback=handle_change)

        try:
            await channel.subscribe(handle_status)
        except Exception as e:
            logger.error(f"Failed to subscribe to {spec.table}: {e}")
            raise SubscriptionFailure(f"Could not subscribe to {spec.table}: {e}", table=spec.table) from e

        return channel

    async def unsubscribe(self, handle: Any):
        try:
            await self._client.remove_channel(handle)
        except Exception as e:
            raise SubscriptionFailure(f"Could not release channel: {e}") from e
