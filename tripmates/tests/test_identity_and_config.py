from __future__ import annotations

import asyncio
from typing import Any, List

import pytest

from tripmates.core import db
from tripmates.core.config import SyncSettings
from tripmates.core.identity import SupabaseIdentityProvider, acquire_identity
from tripmates.core.supabase_api import SupabaseError, SupabaseSession, SupabaseUser
from tripmates.errors import ConfigurationError


def _session(user_id: str, *, expires_at: int | None = None, refresh: str | None = "refresh") -> SupabaseSession:
    return SupabaseSession(
        access_token=f"token-{user_id}",
        refresh_token=refresh,
        token_type="bearer",
        expires_at=expires_at,
        user=SupabaseUser(id=user_id, is_anonymous=True, raw={}),
    )


class FakeAuthClient:
    def __init__(self) -> None:
        self.calls: List[str] = []
        self.fail = False

    def sign_in_anonymously(self) -> SupabaseSession:
        self.calls.append("anonymous")
        if self.fail:
            raise SupabaseError("auth disabled", status_code=422)
        return _session("anon-1", expires_at=1)

    def session_from_token(self, access_token: str) -> SupabaseSession:
        self.calls.append(f"token:{access_token}")
        return _session("token-user", refresh=None)

    def refresh_session(self, refresh_token: str) -> SupabaseSession:
        self.calls.append(f"refresh:{refresh_token}")
        return _session("anon-1")


def test_anonymous_identity_is_stable_and_refreshed() -> None:
    client = FakeAuthClient()
    provider = SupabaseIdentityProvider(client)  # type: ignore[arg-type]

    assert asyncio.run(provider.access_token()) is None

    first = asyncio.run(provider.get_or_create_identity())
    second = asyncio.run(provider.get_or_create_identity())

    assert first == second == "anon-1"
    assert client.calls == ["anonymous", "refresh:refresh"]
    assert asyncio.run(provider.access_token()) == "token-anon-1"


def test_initial_token_takes_precedence_over_anonymous_sign_in() -> None:
    client = FakeAuthClient()
    provider = SupabaseIdentityProvider(client, access_token="custom")  # type: ignore[arg-type]

    assert asyncio.run(provider.get_or_create_identity()) == "token-user"
    assert asyncio.run(provider.get_or_create_identity()) == "token-user"
    assert client.calls == ["token:custom"]


def test_acquire_identity_reports_auth_failure_as_unavailable() -> None:
    client = FakeAuthClient()
    client.fail = True
    provider = SupabaseIdentityProvider(client)  # type: ignore[arg-type]

    assert asyncio.run(acquire_identity(provider, timeout=1)) is None


def test_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRIPMATES_SESSION_ID", "trip-rome")
    monkeypatch.setenv("TRIPMATES_NAMESPACE", "rome-app")
    monkeypatch.setenv("TRIPMATES_POLL_INTERVAL", "not-a-number")
    monkeypatch.setenv("TRIPMATES_VOTE_MAX_ATTEMPTS", "8")
    monkeypatch.setenv("TRIPMATES_CURRENCY", "€")
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_ANON_KEY", raising=False)

    settings = SyncSettings.from_env()

    assert settings.session_id == "trip-rome"
    assert settings.namespace == "rome-app"
    assert settings.poll_interval == 2.0
    assert settings.vote_max_attempts == 8
    assert settings.currency == "€"
    assert settings.uses_supabase is False
    assert SyncSettings.from_env(session_id="trip-naples").session_id == "trip-naples"


def test_settings_require_a_session_id(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TRIPMATES_SESSION_ID", raising=False)
    with pytest.raises(ConfigurationError):
        SyncSettings.from_env()
    with pytest.raises(ConfigurationError):
        SyncSettings(session_id="  ")


class FakeCursor:
    def __init__(self, actions: List[Any]):
        self._actions = actions

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def execute(self, query: str, params: Any = None) -> None:
        self._actions.append(("execute", " ".join(query.split())))


class FakeConnection:
    def __init__(self) -> None:
        self.actions: List[Any] = []

    def cursor(self, *args: Any, **kwargs: Any) -> FakeCursor:
        return FakeCursor(self.actions)

    def close(self) -> None:
        self.actions.append("close")

    def commit(self) -> None:
        self.actions.append("commit")


def test_ensure_session_records_table_creates_table_and_index() -> None:
    connection = FakeConnection()
    db.ensure_session_records_table(connection)  # type: ignore[arg-type]

    statements = [action[1] for action in connection.actions if isinstance(action, tuple)]
    assert statements[0].startswith("CREATE TABLE IF NOT EXISTS session_records")
    assert "seq BIGINT GENERATED ALWAYS AS IDENTITY" in statements[0]
    assert "version INTEGER NOT NULL DEFAULT 1" in statements[0]
    assert statements[1].startswith("ALTER TABLE session_records ADD COLUMN IF NOT EXISTS seq")
    assert statements[2].startswith("CREATE INDEX IF NOT EXISTS session_records_scope_idx")
    assert statements[2].endswith("(namespace, session_id, kind, created_at, seq)")
    assert connection.actions[-1] == "commit"


def test_prepare_database_closes_its_connection(monkeypatch: pytest.MonkeyPatch) -> None:
    connection = FakeConnection()
    dsns: List[str] = []

    def fake_connect(dsn: str) -> FakeConnection:
        dsns.append(dsn)
        return connection

    monkeypatch.setattr(db.psycopg2, "connect", fake_connect)
    db.prepare_database("postgresql://localhost/trips")

    assert dsns == ["postgresql://localhost/trips"]
    assert connection.actions[-2:] == ["commit", "close"]


def test_get_connection_requires_dsn(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SUPABASE_DB_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError):
        db.get_connection()
