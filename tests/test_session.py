"""
Session adapter tests - profile lookup, pre-approval and auth state changes.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from campusboard.core.errors import FetchFailure
from campusboard.core.schema import Actor
from campusboard.core.session import SessionProvider, check_user_role, is_preapproved


def _query(data=None, error=None):
    query = MagicMock()
    for name in ("select", "eq", "limit"):
        getattr(query, name).return_value = query
    if error is not None:
        query.execute = AsyncMock(side_effect=error)
    else:
        query.execute = AsyncMock(return_value=MagicMock(data=data))
    return query


@pytest.fixture
def client():
    client = MagicMock()
    client.auth.get_session = AsyncMock(return_value=None)
    return client


@pytest.fixture
def signed_in():
    return SimpleNamespace(user=SimpleNamespace(id="auth-1", email="sam@campus.edu"))


class TestRoleChecks:
    """check_user_role"""

    def test_case_insensitive(self):
        assert check_user_role("Faculty", ["admin", "faculty"])
        assert check_user_role(" ADMIN ", {"admin"})

    def test_missing_role_is_never_allowed(self):
        assert not check_user_role(None, ["admin"])
        assert not check_user_role("", ["admin"])
        assert not check_user_role("student", ["admin", "faculty"])


class TestPreapproval:
    """is_preapproved"""

    def test_listed_email(self, client):
        query = _query([{"email": "sam@campus.edu", "role": "Student"}])
        client.table.return_value = query

        assert asyncio.run(is_preapproved(client, "sam@campus.edu"))
        client.table.assert_called_once_with("preapproved_users")
        query.eq.assert_called_once_with("email", "sam@campus.edu")

    def test_unlisted_email(self, client):
        client.table.return_value = _query([])
        assert not asyncio.run(is_preapproved(client, "nobody@campus.edu"))

    def test_blank_email_skips_lookup(self, client):
        assert not asyncio.run(is_preapproved(client, ""))
        client.table.assert_not_called()

    def test_lookup_error(self, client):
        client.table.return_value = _query(error=RuntimeError("timeout"))
        with pytest.raises(FetchFailure):
            asyncio.run(is_preapproved(client, "sam@campus.edu"))


class TestSessionProvider:
    """current_actor / watch"""

    def test_signed_out(self, client):
        assert asyncio.run(SessionProvider(client).current_actor()) is None

    def test_actor_from_profile(self, client, signed_in):
        client.auth.get_session = AsyncMock(return_value=signed_in)
        client.table.return_value = _query([{"id": "u-student", "role": "Student", "name": "Sam Student"}])

        actor = asyncio.run(SessionProvider(client, profile_table="profiles").current_actor())

        assert actor == Actor(identity="u-student", role="Student", name="Sam Student", email="sam@campus.edu")
        client.table.assert_called_once_with("profiles")

    def test_user_without_profile_has_no_role(self, client, signed_in):
        client.auth.get_session = AsyncMock(return_value=signed_in)
        client.table.return_value = _query([])

        actor = asyncio.run(SessionProvider(client).current_actor())

        assert actor.identity == "auth-1"
        assert actor.role is None

    def test_profile_error(self, client, signed_in):
        client.auth.get_session = AsyncMock(return_value=signed_in)
        client.table.return_value = _query(error=RuntimeError("denied"))

        with pytest.raises(FetchFailure):
            asyncio.run(SessionProvider(client).current_actor())

    def test_sign_out_notifies_immediately(self, client):
        seen = []
        stop = SessionProvider(client).watch(seen.append)

        on_change = client.auth.on_auth_state_change.call_args.args[0]
        on_change("SIGNED_OUT", None)
        stop()

        assert seen == [None]
        client.auth.on_auth_state_change.return_value.unsubscribe.assert_called_once()

    def test_sign_in_resolves_profile(self, client, signed_in):
        client.table.return_value = _query([{"id": "u-student", "role": "Student", "name": "Sam Student"}])
        seen = []

        async def scenario():
            SessionProvider(client).watch(seen.append)
            on_change = client.auth.on_auth_state_change.call_args.args[0]
            on_change("SIGNED_IN", signed_in)
            for _ in range(5):
                await asyncio.sleep(0)

        asyncio.run(scenario())

        assert [actor.identity for actor in seen] == ["u-student"]
