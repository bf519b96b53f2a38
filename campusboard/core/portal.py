"""
Campus portal wiring - one RealtimeListStore per board, all scoped to the same session.
"""

import asyncio
from typing import Dict, Iterable, Optional

from supabase import acreate_client

from ..util.logging import audit_event, logger
from .config import DB_SCHEMA, get_supabase_credentials, validate_realtime_config
from .gateway import ChangeFeed, DataGateway, SupabaseChangeFeed, SupabaseGateway
from .schema import Actor
from .session import SessionProvider
from .store import RealtimeListStore, StoreState
from .tables import TABLES, TableSpec, get_table


class CampusPortal:
    """The live boards of one signed-in user."""

    def __init__(self, gateway: DataGateway, feed: ChangeFeed = None, session: SessionProvider = None,
                 actor: Optional[Actor] = None, tables: Iterable[TableSpec] = None,
                 admin_roles: Iterable[str] = None):
        self.gateway = gateway
        self.feed = feed
        self.session = session
        self.actor = actor
        self.boards: Dict[str, RealtimeListStore] = {
            spec.table: RealtimeListStore(spec, gateway, feed, actor, admin_roles=admin_roles)
            for spec in (tables or TABLES.values())
        }
        self._stop_watch = None
        self._tasks = set()

    def board(self, name: str) -> RealtimeListStore:
        """Look a board up by table or view name; KeyError if unknown."""
        spec = get_table(name)
        if spec is None or spec.table not in self.boards:
            raise KeyError(name)
        return self.boards[spec.table]

    async def start(self) -> Dict[str, bool]:
        """Resolve the actor, then seed and subscribe every board concurrently."""
        if self.session is not None:
            if self.actor is None:
                self.actor = await self.session.current_actor()
                for store in self.boards.values():
                    store.set_actor(self.actor)
            self._stop_watch = self.session.watch(self._on_actor_change)

        results = await asyncio.gather(*[store.start() for store in self.boards.values()])
        started = dict(zip(self.boards, results))
        logger.log_operation("portal.start", "success" if all(results) else "partial", started)
        return started

    async def switch_actor(self, actor: Optional[Actor]):
        """
        Rescope every board to a new actor (login, logout, role change).

        Rows the new actor cannot see are evicted at once; boards are then re-fetched
        since visibility may also have widened.
        """
        self.actor = actor
        audit_event("auth.actor_changed", {"identity": getattr(actor, "identity", None),
                                           "role": getattr(actor, "role", None)})
        refreshes = []
        for store in self.boards.values():
            store.set_actor(actor)
            if store.state == StoreState.UNINITIALIZED:
                refreshes.append(store.start())
            elif store.alive:
                refreshes.append(store.resync())
        await asyncio.gather(*refreshes)

    def _on_actor_change(self, actor: Optional[Actor]):
        if actor == self.actor:
            return
        task = asyncio.ensure_future(self.switch_actor(actor))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def health(self) -> Dict[str, str]:
        return {table: store.state.value for table, store in self.boards.items()}

    async def teardown(self):
        if self._stop_watch is not None:
            self._stop_watch()
            self._stop_watch = None
        await asyncio.gather(*[store.teardown() for store in self.boards.values()])
        logger.log_operation("portal.teardown", "success", {"boards": list(self.boards)})


async def connect_portal(url: str = None, key: str = None) -> CampusPortal:
    """
    Build a portal against the configured Supabase project.

    Raises:
        ValueError: If the realtime configuration is incomplete
    """
    if url is None or key is None:
        issues = validate_realtime_config()
        if issues:
            raise ValueError("; ".join(issues))
        url, key = get_supabase_credentials()

    client = await acreate_client(url, key)
    return CampusPortal(
        gateway=SupabaseGateway(client),
        feed=SupabaseChangeFeed(client, DB_SCHEMA),
        session=SessionProvider(client),
    )
