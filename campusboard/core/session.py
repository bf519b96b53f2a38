"""
Auth/session adapter - turns the Supabase auth session into the Actor boards are scoped to.
"""

import asyncio
import logging
from typing import Any, Callable, Iterable, Optional

from supabase import AsyncClient

from .config import PROFILE_TABLE
from .errors import FetchFailure
from .schema import Actor

logger = logging.getLogger(__name__)

ActorListener = Callable[[Optional[Actor]], None]

PREAPPROVED_TABLE = "preapproved_users"


def check_user_role(role: Optional[str], allowed_roles: Iterable[str]) -> bool:
    """Case-insensitive role check; no role is never allowed."""
    if not role:
        return False
    return role.strip().lower() in {r.strip().lower() for r in allowed_roles}


async def _first_row(query) -> Optional[dict]:
    response = await query.limit(1).execute()
    rows = response.data or []
    return dict(rows[0]) if rows else None


async def is_preapproved(client: AsyncClient, email: str) -> bool:
    """Only pre-approved emails may register."""
    if not email:
        return False
    try:
        row = await _first_row(client.table(PREAPPROVED_TABLE).select("email, role").eq("email", email))
    except Exception as e:
        logger.error(f"Pre-approval lookup failed: {e}")
        raise FetchFailure(f"Could not check registration approval: {e}", table=PREAPPROVED_TABLE) from e
    return row is not None


class SessionProvider:
    """Resolves the signed-in user's profile and follows auth state changes."""

    def __init__(self, client: AsyncClient, profile_table: str = None):
        self._client = client
        self._profile_table = profile_table or PROFILE_TABLE
        self._tasks = set()

    async def current_actor(self) -> Optional[Actor]:
        """The actor for the current session, None when signed out."""
        session = await self._client.auth.get_session()
        if session is None or session.user is None:
            return None
        return await self.actor_for_user(session.user)

    async def actor_for_user(self, user: Any) -> Optional[Actor]:
        """Look the profile row up by email; a user without a profile gets no role."""
        email = getattr(user, "email", None)
        user_id = getattr(user, "id", None)
        if not email:
            return Actor(identity=user_id, role=None)

        try:
            profile = await _first_row(
                self._client.table(self._profile_table).select("*").eq("email", email)
            )
        except Exception as e:
            logger.error(f"Profile lookup failed for {self._profile_table}: {e}")
            raise FetchFailure(f"Could not load user profile: {e}", table=self._profile_table) from e

        if profile is None:
            logger.warning(f"No profile row for signed-in user {user_id}")
            return Actor(identity=user_id, role=None, email=email)

        return Actor(
            identity=profile.get("id") or user_id,
            role=profile.get("role"),
            name=profile.get("name"),
            email=email,
        )

    def watch(self, listener: ActorListener) -> Callable[[], None]:
        """
        Call `listener` with the new actor on every auth state change.

        Returns:
            A function that stops watching.
        """
        def on_change(event, session):
            if event == "SIGNED_OUT" or session is None or session.user is None:
                listener(None)
                return
            task = asyncio.ensure_future(self._dispatch(session.user, listener))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        subscription = self._client.auth.on_auth_state_change(on_change)

        def stop():
            subscription.unsubscribe()
        return stop

    async def _dispatch(self, user: Any, listener: ActorListener):
        try:
            actor = await self.actor_for_user(user)
        except FetchFailure as e:
            logger.error(f"Auth change ignored: {e}")
            return
        listener(actor)
