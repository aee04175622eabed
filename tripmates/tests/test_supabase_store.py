from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import pytest

from tripmates.core.identity import SupabaseIdentityProvider
from tripmates.core.session_store import SupabaseSessionStore, collection_path
from tripmates.core.supabase_api import SupabaseError, SupabaseSession, SupabaseUser
from tripmates.errors import ConnectivityError, NotFoundError, VersionConflictError
from tripmates.schemas import CollectionKind
from tripmates.sync.engine import SyncEngine

_PATH = collection_path("tripmates", "trip-oslo", CollectionKind.POLLS)


def _row(row_id: str, version: Any = 1, **payload: Any) -> Dict[str, Any]:
    return {
        "id": row_id,
        "namespace": "tripmates",
        "session_id": "trip-oslo",
        "kind": "polls",
        "payload": payload,
        "created_at": "2024-05-01T09:00:00+00:00",
        "version": version,
    }


def _token(value: str):
    async def provide() -> str:
        return value

    return provide


class FakeSupabaseClient:
    anon_key = "anon-key"

    def __init__(self) -> None:
        self.rows: List[Dict[str, Any]] = []
        self.calls: List[tuple] = []
        self.fail_with: Optional[Exception] = None
        self.update_rows: Optional[List[Dict[str, Any]]] = None

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def select(self, table: str, *, access_token: str, filters=None, select=None, order=None, limit=None):
        self.calls.append(("select", table, access_token, dict(filters or {}), order, limit))
        self._check()
        rows = list(self.rows)
        wanted = (filters or {}).get("id")
        if wanted:
            rows = [row for row in rows if f"eq.{row['id']}" == wanted]
        return rows[:limit] if limit else rows

    def insert(self, table: str, rows, *, access_token: str, returning: bool = True):
        rows = list(rows)
        self.calls.append(("insert", table, access_token, rows))
        self._check()
        return [{**rows[0], "id": "new-row", "version": 1}]

    def update(self, table: str, *, access_token: str, filters: Mapping[str, Any], values, returning=False):
        self.calls.append(("update", table, access_token, dict(filters), dict(values)))
        self._check()
        if self.update_rows is not None:
            return self.update_rows
        return [{**self.rows[0], **values}]

    def delete(self, table: str, *, access_token: str, filters: Mapping[str, Any]):
        self.calls.append(("delete", table, access_token, dict(filters)))
        self._check()
        return [row for row in self.rows if f"eq.{row['id']}" == filters.get("id")]


def test_add_scopes_row_and_moves_created_at_into_column() -> None:
    client = FakeSupabaseClient()
    store = SupabaseSessionStore(client, token_provider=_token("user-token"))
    created = datetime(2024, 5, 1, 9, tzinfo=timezone.utc)

    record_id = asyncio.run(store.add(_PATH, {"question": "Q?", "createdAt": created, "createdBy": "alice"}))

    assert record_id == "new-row"
    _, table, token, rows = client.calls[0]
    assert (table, token) == ("session_records", "user-token")
    assert rows == [
        {
            "namespace": "tripmates",
            "session_id": "trip-oslo",
            "kind": "polls",
            "payload": {"question": "Q?", "createdBy": "alice"},
            "created_at": "2024-05-01T09:00:00+00:00",
        }
    ]


def test_list_records_falls_back_to_anon_key_and_maps_rows() -> None:
    client = FakeSupabaseClient()
    client.rows = [_row("r1", version=3, text="Hi")]
    store = SupabaseSessionStore(client)

    records = asyncio.run(store.list_records(_PATH))

    _, _, token, filters, order, _ = client.calls[0]
    assert token == "anon-key"
    assert filters == {"namespace": "eq.tripmates", "session_id": "eq.trip-oslo", "kind": "eq.polls"}
    assert order == "created_at.asc.nullslast,seq.asc"
    assert records[0].id == "r1"
    assert records[0].version == 3
    assert records[0].data == {"text": "Hi", "createdAt": "2024-05-01T09:00:00+00:00"}


def test_delete_of_missing_row_raises_not_found() -> None:
    store = SupabaseSessionStore(FakeSupabaseClient())
    with pytest.raises(NotFoundError):
        asyncio.run(store.delete(_PATH, "missing"))


def test_update_is_guarded_by_version() -> None:
    client = FakeSupabaseClient()
    client.rows = [_row("p1", version=2, question="Q?", options=[], votedBy=[])]
    store = SupabaseSessionStore(client)

    updated = asyncio.run(store.update(_PATH, "p1", {"votedBy": ["alice"]}, expected_version=2))

    update_call = client.calls[-1]
    assert update_call[0] == "update"
    assert update_call[3]["version"] == "eq.2"
    assert update_call[4] == {
        "payload": {"question": "Q?", "options": [], "votedBy": ["alice"]},
        "version": 3,
    }
    assert updated.version == 3

    with pytest.raises(VersionConflictError):
        asyncio.run(store.update(_PATH, "p1", {"votedBy": []}, expected_version=1))

    client.update_rows = []
    with pytest.raises(VersionConflictError):
        asyncio.run(store.update(_PATH, "p1", {"votedBy": []}, expected_version=2))


def test_request_failures_become_connectivity_errors() -> None:
    client = FakeSupabaseClient()
    client.fail_with = SupabaseError("boom", status_code=503)
    store = SupabaseSessionStore(client)
    with pytest.raises(ConnectivityError):
        asyncio.run(store.list_records(_PATH))


def test_polling_watch_delivers_changes_and_marks_outages_stale() -> None:
    async def scenario() -> None:
        client = FakeSupabaseClient()
        client.rows = [
            _row("p1", question="Beach or Mountains?", options=[{"text": "Beach"}, {"text": "Mountains"}])
        ]
        store = SupabaseSessionStore(client, poll_interval=0.01)
        engine = SyncEngine(store, session_id="trip-oslo")
        subscription = engine.subscribe_polls()

        first = await subscription.next_snapshot(timeout=1)
        assert [poll.id for poll in first] == ["p1"]

        client.rows = [
            _row(
                "p1",
                version=2,
                question="Beach or Mountains?",
                options=[{"text": "Beach", "votes": 1}, {"text": "Mountains"}],
                votedBy=["alice"],
            )
        ]
        second = await subscription.next_snapshot(timeout=1)
        assert second[0].voted_by == ["alice"]

        client.fail_with = SupabaseError("offline")
        for _ in range(100):
            if subscription.stale:
                break
            await asyncio.sleep(0.01)
        assert subscription.stale is True
        assert engine.snapshot(CollectionKind.POLLS)[0].voted_by == ["alice"]

        client.fail_with = None
        recovered = await subscription.next_snapshot(timeout=1)
        assert subscription.stale is False
        assert recovered[0].version == 2

        subscription.cancel()

    asyncio.run(scenario())


def test_unreadable_rows_are_skipped() -> None:
    client = FakeSupabaseClient()
    client.rows = [_row("r1", version="garbled", text="Hi"), _row("r2", text="Hello")]
    store = SupabaseSessionStore(client)

    records = asyncio.run(store.list_records(_PATH))

    assert [record.id for record in records] == ["r2"]


def test_polling_survives_a_raising_listener() -> None:
    async def scenario() -> None:
        client = FakeSupabaseClient()
        client.rows = [_row("p1", question="Q?")]
        store = SupabaseSessionStore(client, poll_interval=0.01)
        delivered: List[List[str]] = []
        errors: List[Exception] = []

        def on_snapshot(records) -> None:
            if not delivered:
                delivered.append([])
                raise RuntimeError("listener failed")
            delivered.append([record.id for record in records])

        handle = store.watch(_PATH, on_snapshot, errors.append)
        for _ in range(100):
            if len(delivered) > 1:
                break
            await asyncio.sleep(0.01)
        handle.cancel()

        assert delivered[1] == ["p1"]
        assert isinstance(errors[0], RuntimeError)

    asyncio.run(scenario())


def test_expired_session_is_refreshed_before_requests() -> None:
    class ExpiringAuthClient(FakeSupabaseClient):
        def __init__(self) -> None:
            super().__init__()
            self.refreshes = 0

        def sign_in_anonymously(self) -> SupabaseSession:
            return SupabaseSession(
                access_token="tok-1",
                refresh_token="refresh-1",
                token_type="bearer",
                expires_at=1,
                user=SupabaseUser(id="anon-1", is_anonymous=True, raw={}),
            )

        def refresh_session(self, refresh_token: str) -> SupabaseSession:
            self.refreshes += 1
            return SupabaseSession(
                access_token="tok-2",
                refresh_token="refresh-2",
                token_type="bearer",
                expires_at=None,
                user=SupabaseUser(id="anon-1", is_anonymous=True, raw={}),
            )

    async def scenario() -> None:
        client = ExpiringAuthClient()
        identity = SupabaseIdentityProvider(client)  # type: ignore[arg-type]
        store = SupabaseSessionStore(client, token_provider=identity.access_token)

        assert await identity.get_or_create_identity() == "anon-1"
        await store.list_records(_PATH)

        assert client.refreshes == 1
        assert client.calls[-1][2] == "tok-2"

    asyncio.run(scenario())
