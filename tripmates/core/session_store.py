"""Session stores holding the durable state of a group's shared lists."""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    MutableMapping,
    Optional,
    Protocol,
)

import requests

from tripmates.core.db import SESSION_RECORDS_TABLE
from tripmates.core.supabase_api import SupabaseClient, SupabaseError
from tripmates.errors import ConnectivityError, NotFoundError, VersionConflictError
from tripmates.schemas import CollectionKind

_LOGGER = logging.getLogger(__name__)

SnapshotListener = Callable[[List["StoredRecord"]], None]
ErrorListener = Callable[[Exception], None]
TokenProvider = Callable[[], Awaitable[Optional[str]]]


@dataclass(frozen=True, slots=True)
class CollectionPath:
    """Address of one collection kind inside a group session."""

    namespace: str
    session_id: str
    kind: CollectionKind

    def __str__(self) -> str:
        return f"{self.namespace}/public/data/{self.session_id}/{self.kind.value}"


def collection_path(namespace: str, session_id: str, kind: CollectionKind | str) -> CollectionPath:
    """Return the path of ``kind``; all kinds of one session are siblings."""

    return CollectionPath(namespace=namespace, session_id=session_id, kind=CollectionKind(kind))


@dataclass(slots=True)
class StoredRecord:
    """A record as held by the store: id, wire payload and write version."""

    id: str
    data: Dict[str, Any] = field(default_factory=dict)
    version: int = 1

    def as_document(self) -> Dict[str, Any]:
        return {**self.data, "id": self.id, "version": self.version}


class WatchHandle(Protocol):
    def cancel(self) -> None:
        ...


class SessionStore(Protocol):
    """Interface every session store backend implements."""

    async def list_records(self, path: CollectionPath) -> List[StoredRecord]:
        ...

    async def get(self, path: CollectionPath, record_id: str) -> StoredRecord:
        ...

    async def add(self, path: CollectionPath, data: Mapping[str, Any]) -> str:
        ...

    async def delete(self, path: CollectionPath, record_id: str) -> None:
        ...

    async def update(
        self,
        path: CollectionPath,
        record_id: str,
        values: Mapping[str, Any],
        *,
        expected_version: int,
    ) -> StoredRecord:
        ...

    def watch(
        self,
        path: CollectionPath,
        on_snapshot: SnapshotListener,
        on_error: ErrorListener,
    ) -> WatchHandle:
        ...


class _InMemoryWatch:
    def __init__(
        self,
        store: "InMemorySessionStore",
        path: CollectionPath,
        on_snapshot: SnapshotListener,
        on_error: ErrorListener,
    ) -> None:
        self._store = store
        self.path = path
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._store._detach(self)


class InMemorySessionStore:
    """Process-local store used when no hosted database is configured.

    Records keep their arrival order, every mutation notifies the watchers of
    the affected path with a full snapshot, and :meth:`set_offline` simulates
    a dropped connection.
    """

    def __init__(self) -> None:
        self._collections: Dict[CollectionPath, Dict[str, StoredRecord]] = {}
        self._watchers: Dict[CollectionPath, List[_InMemoryWatch]] = {}
        self._offline = False

    @property
    def offline(self) -> bool:
        return self._offline

    def set_offline(self, offline: bool) -> None:
        """Toggle simulated connectivity, notifying watchers of the change."""

        if offline == self._offline:
            return
        self._offline = offline
        for path, watchers in list(self._watchers.items()):
            for watcher in list(watchers):
                if not watcher.active:
                    continue
                if offline:
                    watcher.on_error(ConnectivityError(f"Session store unreachable for {path}"))
                else:
                    watcher.on_snapshot(self._snapshot(path))

    def _ensure_online(self, path: CollectionPath) -> None:
        if self._offline:
            raise ConnectivityError(f"Session store unreachable for {path}")

    def _records(self, path: CollectionPath) -> Dict[str, StoredRecord]:
        return self._collections.setdefault(path, {})

    def _snapshot(self, path: CollectionPath) -> List[StoredRecord]:
        return [copy.deepcopy(record) for record in self._records(path).values()]

    def _notify(self, path: CollectionPath) -> None:
        for watcher in list(self._watchers.get(path, [])):
            if not watcher.active:
                continue
            try:
                watcher.on_snapshot(self._snapshot(path))
            except Exception as exc:
                _LOGGER.exception("Snapshot listener for %s raised", path)
                watcher.on_error(exc)

    def _detach(self, watcher: _InMemoryWatch) -> None:
        watchers = self._watchers.get(watcher.path, [])
        if watcher in watchers:
            watchers.remove(watcher)

    async def list_records(self, path: CollectionPath) -> List[StoredRecord]:
        self._ensure_online(path)
        return self._snapshot(path)

    async def get(self, path: CollectionPath, record_id: str) -> StoredRecord:
        self._ensure_online(path)
        record = self._records(path).get(record_id)
        if record is None:
            raise NotFoundError(str(path), record_id)
        return copy.deepcopy(record)

    async def add(self, path: CollectionPath, data: Mapping[str, Any]) -> str:
        self._ensure_online(path)
        record_id = uuid.uuid4().hex
        self._records(path)[record_id] = StoredRecord(id=record_id, data=copy.deepcopy(dict(data)))
        self._notify(path)
        return record_id

    async def delete(self, path: CollectionPath, record_id: str) -> None:
        self._ensure_online(path)
        records = self._records(path)
        if record_id not in records:
            raise NotFoundError(str(path), record_id)
        del records[record_id]
        self._notify(path)

    async def update(
        self,
        path: CollectionPath,
        record_id: str,
        values: Mapping[str, Any],
        *,
        expected_version: int,
    ) -> StoredRecord:
        self._ensure_online(path)
        record = self._records(path).get(record_id)
        if record is None:
            raise NotFoundError(str(path), record_id)
        if record.version != expected_version:
            raise VersionConflictError(str(path), record_id, expected_version)
        record.data.update(copy.deepcopy(dict(values)))
        record.version += 1
        self._notify(path)
        return copy.deepcopy(record)

    def watch(
        self,
        path: CollectionPath,
        on_snapshot: SnapshotListener,
        on_error: ErrorListener,
    ) -> WatchHandle:
        watcher = _InMemoryWatch(self, path, on_snapshot, on_error)
        self._watchers.setdefault(path, []).append(watcher)
        if self._offline:
            on_error(ConnectivityError(f"Session store unreachable for {path}"))
        else:
            on_snapshot(self._snapshot(path))
        return watcher


class _PollingWatch:
    def __init__(self, task: "asyncio.Task[None]") -> None:
        self._task = task

    def cancel(self) -> None:
        self._task.cancel()


class SupabaseSessionStore:
    """Supabase-backed session store.

    Every record lives in one ``session_records`` row scoped by namespace,
    session id and kind. Entity fields go in the ``payload`` JSON column and
    ``version`` guards updates. The ``seq`` identity column records arrival
    order and breaks ``created_at`` ties. The bearer token is fetched from
    ``token_provider`` before every request. Blocking ``requests`` calls run in worker
    threads so the event loop is never blocked.
    """

    def __init__(
        self,
        client: SupabaseClient,
        *,
        token_provider: Optional[TokenProvider] = None,
        table: str = SESSION_RECORDS_TABLE,
        poll_interval: float = 2.0,
    ) -> None:
        self._client = client
        self._token_provider = token_provider
        self._table = table
        self._poll_interval = poll_interval

    async def _access_token(self) -> str:
        token = await self._token_provider() if self._token_provider else None
        return token or self._client.anon_key

    @staticmethod
    def _scope_filters(path: CollectionPath) -> Dict[str, str]:
        return {
            "namespace": f"eq.{path.namespace}",
            "session_id": f"eq.{path.session_id}",
            "kind": f"eq.{path.kind.value}",
        }

    @staticmethod
    def _to_record(row: Mapping[str, Any]) -> StoredRecord:
        payload: Dict[str, Any] = dict(row.get("payload") or {})
        payload["createdAt"] = row.get("created_at")
        return StoredRecord(id=str(row.get("id")), data=payload, version=int(row.get("version") or 1))

    async def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            access_token = await self._access_token()
            return await asyncio.to_thread(func, *args, access_token=access_token, **kwargs)
        except (SupabaseError, requests.RequestException) as exc:
            raise ConnectivityError(str(exc)) from exc

    async def list_records(self, path: CollectionPath) -> List[StoredRecord]:
        rows = await self._call(
            self._client.select,
            self._table,
            filters=self._scope_filters(path),
            order="created_at.asc.nullslast,seq.asc",
        )
        records: List[StoredRecord] = []
        for row in rows:
            try:
                records.append(self._to_record(row))
            except (TypeError, ValueError) as exc:
                _LOGGER.warning("Skipping unreadable row %s in %s: %s", row.get("id"), path, exc)
        return records

    async def get(self, path: CollectionPath, record_id: str) -> StoredRecord:
        rows = await self._call(
            self._client.select,
            self._table,
            filters={**self._scope_filters(path), "id": f"eq.{record_id}"},
            limit=1,
        )
        if not rows:
            raise NotFoundError(str(path), record_id)
        return self._to_record(rows[0])

    async def add(self, path: CollectionPath, data: Mapping[str, Any]) -> str:
        payload: MutableMapping[str, Any] = dict(data)
        created_at = payload.pop("createdAt", None)
        if isinstance(created_at, datetime):
            created_at = created_at.isoformat()
        row = {
            "namespace": path.namespace,
            "session_id": path.session_id,
            "kind": path.kind.value,
            "payload": payload,
            "created_at": created_at,
        }
        rows = await self._call(self._client.insert, self._table, [row])
        if not rows:
            raise ConnectivityError(f"Supabase did not return a row for the insert into {path}")
        return str(rows[0].get("id"))

    async def delete(self, path: CollectionPath, record_id: str) -> None:
        rows = await self._call(
            self._client.delete,
            self._table,
            filters={**self._scope_filters(path), "id": f"eq.{record_id}"},
        )
        if not rows:
            raise NotFoundError(str(path), record_id)

    async def update(
        self,
        path: CollectionPath,
        record_id: str,
        values: Mapping[str, Any],
        *,
        expected_version: int,
    ) -> StoredRecord:
        current = await self.get(path, record_id)
        if current.version != expected_version:
            raise VersionConflictError(str(path), record_id, expected_version)
        payload = {key: value for key, value in current.data.items() if key != "createdAt"}
        payload.update(values)
        rows = await self._call(
            self._client.update,
            self._table,
            filters={
                **self._scope_filters(path),
                "id": f"eq.{record_id}",
                "version": f"eq.{expected_version}",
            },
            values={"payload": payload, "version": expected_version + 1},
            returning=True,
        )
        if not rows:
            # Another writer bumped the version between our read and write.
            raise VersionConflictError(str(path), record_id, expected_version)
        return self._to_record(rows[0])

    async def _poll(
        self,
        path: CollectionPath,
        on_snapshot: SnapshotListener,
        on_error: ErrorListener,
    ) -> None:
        signature: Optional[tuple] = None
        while True:
            try:
                records = await self.list_records(path)
                current = tuple((record.id, record.version) for record in records)
                if current != signature:
                    on_snapshot(records)
                    signature = current
            except ConnectivityError as exc:
                on_error(exc)
                signature = None
            except Exception as exc:
                _LOGGER.exception("Polling %s failed", path)
                on_error(exc)
                signature = None
            await asyncio.sleep(self._poll_interval)

    def watch(
        self,
        path: CollectionPath,
        on_snapshot: SnapshotListener,
        on_error: ErrorListener,
    ) -> WatchHandle:
        task = asyncio.get_running_loop().create_task(self._poll(path, on_snapshot, on_error))
        _LOGGER.debug("Watching %s every %.1fs", path, self._poll_interval)
        return _PollingWatch(task)


__all__ = [
    "CollectionPath",
    "InMemorySessionStore",
    "SessionStore",
    "StoredRecord",
    "SupabaseSessionStore",
    "WatchHandle",
    "collection_path",
]
