"""Live mirrors of a group session's shared lists.

The engine owns one ordered mirror per collection kind. Each subscription
holds one watch on the session store and receives the full ordered snapshot
after every change; mutations write through to the store and are observed
through the next snapshot rather than their own return value.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
)

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from tripmates.core.config import DEFAULT_NAMESPACE, SyncSettings
from tripmates.core.session_store import (
    CollectionPath,
    SessionStore,
    StoredRecord,
    WatchHandle,
    collection_path,
)
from tripmates.errors import (
    ConfigurationError,
    ConnectivityError,
    NotFoundError,
    ValidationError,
)
from tripmates.schemas import CollectionKind, SessionRecord
from tripmates.sync.collections import definition_for

_LOGGER = logging.getLogger(__name__)

Snapshot = List[SessionRecord]
SnapshotCallback = Callable[[Snapshot], None]

_CLOSED = object()


def _order_key(record: SessionRecord) -> tuple[bool, float]:
    created_at = record.created_at
    return (created_at is None, created_at.timestamp() if created_at else 0.0)


def order_records(records: Iterable[SessionRecord]) -> Snapshot:
    """Sort by ``createdAt`` ascending; untimestamped records go last.

    The sort is stable, so ties keep the order in which the store delivered
    the records.
    """

    return sorted(records, key=_order_key)


class Subscription:
    """A cancelable stream of full, ordered snapshots for one collection."""

    def __init__(
        self,
        kind: CollectionKind,
        *,
        on_snapshot: Optional[SnapshotCallback] = None,
        on_cancel: Optional[Callable[["Subscription"], None]] = None,
    ) -> None:
        self.kind = kind
        self.latest: Snapshot = []
        self.stale = False
        self.cancelled = False
        self.deliveries = 0
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._handle: Optional[WatchHandle] = None
        self._on_snapshot = on_snapshot
        self._on_cancel = on_cancel

    def _attach(self, handle: WatchHandle) -> None:
        self._handle = handle
        if self.cancelled:
            handle.cancel()

    def _deliver(self, snapshot: Snapshot) -> None:
        if self.cancelled:
            return
        self.latest = snapshot
        self.stale = False
        self.deliveries += 1
        self._queue.put_nowait(list(snapshot))
        if self._on_snapshot is not None:
            try:
                self._on_snapshot(list(snapshot))
            except Exception:
                _LOGGER.exception("Snapshot callback for %s raised", self.kind.value)

    def _mark_stale(self) -> None:
        if not self.cancelled:
            self.stale = True

    def cancel(self) -> None:
        """Stop deliveries; snapshots not yet consumed are dropped."""

        if self.cancelled:
            return
        self.cancelled = True
        if self._handle is not None:
            self._handle.cancel()
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)
        if self._on_cancel is not None:
            self._on_cancel(self)

    async def next_snapshot(self, timeout: Optional[float] = None) -> Snapshot:
        """Wait for the next delivered snapshot.

        Raises :class:`StopAsyncIteration` once the subscription is cancelled
        and :class:`asyncio.TimeoutError` if nothing arrives within ``timeout``.
        """

        item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    def __aiter__(self) -> AsyncIterator[Snapshot]:
        return self

    async def __anext__(self) -> Snapshot:
        return await self.next_snapshot()


class SyncEngine:
    """Mediates between client state and the session store for one session."""

    def __init__(
        self,
        store: SessionStore,
        *,
        session_id: str,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> None:
        if not session_id:
            raise ConfigurationError("SyncEngine requires a session id")
        self._store = store
        self._session_id = session_id
        self._namespace = namespace
        self._mirrors: Dict[CollectionKind, Snapshot] = {kind: [] for kind in CollectionKind}
        self._subscriptions: List[Subscription] = []

    @classmethod
    def from_settings(cls, store: SessionStore, settings: SyncSettings) -> "SyncEngine":
        return cls(store, session_id=settings.session_id, namespace=settings.namespace)

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def store(self) -> SessionStore:
        return self._store

    def path(self, kind: CollectionKind | str) -> CollectionPath:
        return collection_path(self._namespace, self._session_id, kind)

    def snapshot(self, kind: CollectionKind | str) -> Snapshot:
        """Return a copy of the last good snapshot mirrored for ``kind``."""

        return [record.model_copy(deep=True) for record in self._mirrors[CollectionKind(kind)]]

    @property
    def open_subscriptions(self) -> Sequence[Subscription]:
        return tuple(self._subscriptions)

    def _normalise(self, kind: CollectionKind, records: Iterable[StoredRecord]) -> Snapshot:
        definition = definition_for(kind)
        parsed: Snapshot = []
        for stored in records:
            try:
                parsed.append(definition.parse_record(stored.as_document()))
            except PydanticValidationError as exc:
                _LOGGER.warning(
                    "Skipping malformed %s record %s: %s", kind.value, stored.id, exc
                )
        return order_records(parsed)

    def _forget(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def subscribe(
        self,
        kind: CollectionKind | str,
        *,
        on_snapshot: Optional[SnapshotCallback] = None,
    ) -> Subscription:
        """Open a live subscription delivering full ordered snapshots of ``kind``."""

        kind = CollectionKind(kind)
        path = self.path(kind)
        subscription = Subscription(kind, on_snapshot=on_snapshot, on_cancel=self._forget)

        def deliver(records: List[StoredRecord]) -> None:
            if subscription.cancelled:
                return
            snapshot = self._normalise(kind, records)
            self._mirrors[kind] = snapshot
            subscription._deliver(snapshot)

        def fail(exc: Exception) -> None:
            if subscription.cancelled:
                return
            _LOGGER.warning("Subscription to %s interrupted: %s", path, exc)
            subscription._mark_stale()

        self._subscriptions.append(subscription)
        subscription._attach(self._store.watch(path, deliver, fail))
        _LOGGER.debug("Subscribed to %s", path)
        return subscription

    async def create(
        self,
        kind: CollectionKind | str,
        payload: Mapping[str, Any] | BaseModel,
        identity: str,
    ) -> Optional[str]:
        """Validate and write a new record, returning its id.

        Raises :class:`ValidationError` before any write. Store failures are
        logged and reported as ``None``; success is confirmed by the next
        snapshot, not by this call.
        """

        kind = CollectionKind(kind)
        if not identity:
            raise ValidationError("An identity is required before writing")
        data = definition_for(kind).validate_draft(payload)
        data["createdAt"] = datetime.now(timezone.utc)
        data["createdBy"] = identity
        path = self.path(kind)
        try:
            record_id = await self._store.add(path, data)
        except ConnectivityError as exc:
            _LOGGER.warning("Could not add %s record: %s", kind.value, exc)
            return None
        _LOGGER.debug("Added %s record %s", kind.value, record_id)
        return record_id

    async def remove(self, kind: CollectionKind | str, record_id: str) -> bool:
        """Delete a record; ``False`` when it was already gone or unreachable."""

        kind = CollectionKind(kind)
        if kind is CollectionKind.POLLS:
            raise ValidationError("Polls are permanent and cannot be deleted")
        path = self.path(kind)
        try:
            await self._store.delete(path, record_id)
        except NotFoundError:
            _LOGGER.info("%s record %s was already removed", kind.value, record_id)
            return False
        except ConnectivityError as exc:
            _LOGGER.warning("Could not remove %s record %s: %s", kind.value, record_id, exc)
            return False
        return True

    async def get_record(
        self,
        kind: CollectionKind | str,
        record_id: str,
        *,
        refresh: bool = False,
    ) -> Optional[SessionRecord]:
        """Return the locally known record, reading the store when needed.

        ``refresh`` bypasses the mirror. ``None`` means the record does not
        exist or cannot be parsed; connectivity failures propagate to the
        caller.
        """

        kind = CollectionKind(kind)
        if not refresh:
            for record in self._mirrors[kind]:
                if record.id == record_id:
                    return record.model_copy(deep=True)
        try:
            stored = await self._store.get(self.path(kind), record_id)
        except NotFoundError:
            return None
        try:
            return definition_for(kind).parse_record(stored.as_document())
        except PydanticValidationError as exc:
            _LOGGER.warning("Ignoring malformed %s record %s: %s", kind.value, record_id, exc)
            return None

    async def update_record(
        self,
        kind: CollectionKind | str,
        record_id: str,
        values: Mapping[str, Any],
        *,
        expected_version: int,
    ) -> SessionRecord:
        """Write ``values`` as one update guarded by ``expected_version``."""

        kind = CollectionKind(kind)
        stored = await self._store.update(
            self.path(kind), record_id, values, expected_version=expected_version
        )
        return definition_for(kind).parse_record(stored.as_document())

    def subscribe_checklist(self, **kwargs: Any) -> Subscription:
        return self.subscribe(CollectionKind.CHECKLIST, **kwargs)

    def subscribe_expenses(self, **kwargs: Any) -> Subscription:
        return self.subscribe(CollectionKind.EXPENSES, **kwargs)

    def subscribe_announcements(self, **kwargs: Any) -> Subscription:
        return self.subscribe(CollectionKind.ANNOUNCEMENTS, **kwargs)

    def subscribe_polls(self, **kwargs: Any) -> Subscription:
        return self.subscribe(CollectionKind.POLLS, **kwargs)

    async def add_checklist_item(self, text: str, identity: str) -> Optional[str]:
        return await self.create(CollectionKind.CHECKLIST, {"text": text}, identity)

    async def add_expense(self, name: str, amount: object, identity: str) -> Optional[str]:
        return await self.create(CollectionKind.EXPENSES, {"name": name, "amount": amount}, identity)

    async def post_announcement(self, text: str, identity: str) -> Optional[str]:
        return await self.create(CollectionKind.ANNOUNCEMENTS, {"text": text}, identity)

    async def create_poll(self, question: str, options: Sequence[Any], identity: str) -> Optional[str]:
        return await self.create(
            CollectionKind.POLLS, {"question": question, "options": options}, identity
        )

    async def delete_checklist_item(self, record_id: str) -> bool:
        return await self.remove(CollectionKind.CHECKLIST, record_id)

    async def delete_expense(self, record_id: str) -> bool:
        return await self.remove(CollectionKind.EXPENSES, record_id)

    async def delete_announcement(self, record_id: str) -> bool:
        return await self.remove(CollectionKind.ANNOUNCEMENTS, record_id)

    def close(self) -> None:
        """Cancel every open subscription."""

        for subscription in list(self._subscriptions):
            subscription.cancel()

    async def __aenter__(self) -> "SyncEngine":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = ["Snapshot", "Subscription", "SyncEngine", "order_records"]
