"""Document store with live subscriptions, backed by SQLAlchemy.

Records are read and written as plain dicts ("documents").  Writes are
committed in a worker thread; after each committed write the store re-runs
every live query that watches the written table and pushes the fresh
snapshot to its subscriber on the event loop.

Usage::

    store = DocumentStore(session_factory)
    pitch_id = await store.add(Pitch, {"title": "AI Tutor", "created_at": SERVER_TIMESTAMP})
    sub = store.subscribe(select(Pitch).order_by(Pitch.created_at.desc()), on_snapshot)
    ...
    sub.cancel()
"""
from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, TypeVar

from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from pitchroom.db import session_scope
from pitchroom.models import Base

log = logging.getLogger(__name__)

T = TypeVar("T")
Document = dict[str, Any]


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP: Any = _ServerTimestamp()
"""Write-time sentinel replaced by the store's monotonic clock."""


class Subscription:
    """Handle for a live query.  Delivers snapshots until :meth:`cancel`."""

    def __init__(
        self,
        store: DocumentStore,
        statement: Select,
        on_snapshot: Callable[[Any], None],
        on_error: Callable[[Exception], None] | None = None,
        single: bool = False,
    ):
        self._store = store
        self.statement = statement
        self.table = statement.column_descriptions[0]["entity"].__tablename__
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._single = single
        self._cancelled = False
        self._requested = 0
        self._delivered = 0

    @property
    def active(self) -> bool:
        return not self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._store._detach(self)

    async def refresh(self) -> None:
        if self._cancelled:
            return
        self._requested += 1
        version = self._requested
        try:
            docs = await self._store.query(self.statement)
        except Exception as exc:
            if self._cancelled:
                return
            log.warning("Live query on %s failed: %s", self.table, exc)
            if self._on_error is not None:
                self._on_error(exc)
            return
        # A newer refresh may have finished first; never roll back to an older snapshot
        if self._cancelled or version < self._delivered:
            return
        self._delivered = version
        self._on_snapshot((docs[0] if docs else None) if self._single else docs)


class DocumentStore:
    def __init__(self, session_factory: Callable[[], Session] | None = None):
        self._factory = session_factory
        self._lock = threading.Lock()
        self._last_ts: datetime | None = None
        self._subscriptions: dict[str, set[Subscription]] = defaultdict(set)
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Execution helpers
    # ------------------------------------------------------------------

    def _execute(self, work: Callable[[Session], T]) -> T:
        with self._lock:
            with session_scope(self._factory) as session:
                return work(session)

    async def _run(self, work: Callable[[Session], T]) -> T:
        return await asyncio.to_thread(self._execute, work)

    def _now(self) -> datetime:
        """Monotonic UTC clock (naive, as stored); must be called under the lock."""
        now = datetime.now(UTC).replace(tzinfo=None)
        if self._last_ts is not None and now <= self._last_ts:
            now = self._last_ts + timedelta(microseconds=1)
        self._last_ts = now
        return now

    def _resolve(self, data: Document) -> Document:
        resolved = dict(data)
        stamp = None
        for key, value in data.items():
            if value is SERVER_TIMESTAMP:
                if stamp is None:
                    stamp = self._now()
                resolved[key] = stamp
        return resolved

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, model: type[Base], doc_id: str) -> Document | None:
        def work(session: Session) -> Document | None:
            obj = session.execute(select(model).where(model.id == doc_id)).scalars().first()
            return obj.to_document() if obj is not None else None
        return await self._run(work)

    async def query(self, statement: Select) -> list[Document]:
        def work(session: Session) -> list[Document]:
            return [obj.to_document() for obj in session.execute(statement).scalars().all()]
        return await self._run(work)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add(self, model: type[Base], data: Document) -> str:
        """Create a new record with a store-assigned id; returns the id."""
        def work(session: Session) -> str:
            doc = self._resolve(data)
            doc["id"] = uuid.uuid4().hex
            obj = model()
            obj.apply(doc)
            session.add(obj)
            session.flush()
            return obj.id
        doc_id = await self._run(work)
        self._publish(model.__tablename__)
        return doc_id

    async def create(self, model: type[Base], doc_id: str, data: Document) -> bool:
        """Insert *doc_id* only if it does not exist yet; an existing record is left untouched.

        Returns True when this call created the record.
        """
        def work(session: Session) -> bool:
            if session.execute(select(model.id).where(model.id == doc_id)).first() is not None:
                return False
            doc = self._resolve(data)
            doc.pop("id", None)
            obj = model(id=doc_id)
            obj.apply(doc)
            session.add(obj)
            return True
        created = await self._run(work)
        if created:
            self._publish(model.__tablename__)
        return created

    async def upsert(self, model: type[Base], doc_id: str, data: Document) -> bool:
        """Create or merge-update the record *doc_id*; only keys in *data* change.

        Returns True when the record was created.
        """
        def work(session: Session) -> bool:
            doc = self._resolve(data)
            obj = session.execute(select(model).where(model.id == doc_id)).scalars().first()
            created = obj is None
            if created:
                obj = model(id=doc_id)
                session.add(obj)
            doc.pop("id", None)
            obj.apply(doc)
            return created
        created = await self._run(work)
        self._publish(model.__tablename__)
        return created

    # ------------------------------------------------------------------
    # Live subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        statement: Select,
        on_snapshot: Callable[[list[Document]], None],
        on_error: Callable[[Exception], None] | None = None,
    ) -> Subscription:
        """Deliver the query's snapshot now and after every change to its table."""
        return self._attach(Subscription(self, statement, on_snapshot, on_error))

    def subscribe_document(
        self,
        model: type[Base],
        doc_id: str,
        on_snapshot: Callable[[Document | None], None],
        on_error: Callable[[Exception], None] | None = None,
    ) -> Subscription:
        statement = select(model).where(model.id == doc_id)
        return self._attach(Subscription(self, statement, on_snapshot, on_error, single=True))

    def _attach(self, sub: Subscription) -> Subscription:
        self._subscriptions[sub.table].add(sub)
        self._spawn(sub)
        return sub

    def _detach(self, sub: Subscription) -> None:
        self._subscriptions[sub.table].discard(sub)

    def _publish(self, table: str) -> None:
        for sub in list(self._subscriptions.get(table, ())):
            self._spawn(sub)

    def _spawn(self, sub: Subscription) -> None:
        task = asyncio.get_running_loop().create_task(sub.refresh())
        self._tasks.add(task)
        task.add_done_callback(self._delivery_done)

    def _delivery_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("Snapshot listener failed", exc_info=task.exception())

    def live_count(self, table: str | None = None) -> int:
        if table is not None:
            return len(self._subscriptions.get(table, ()))
        return sum(len(subs) for subs in self._subscriptions.values())

    async def settle(self) -> None:
        """Wait until every in-flight snapshot delivery has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
