# =============================================
# File: cuppa/db/repo.py
# Purpose: Engine bootstrap from DB_URL + SQL-backed event store
# =============================================
from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Set

from loguru import logger
from sqlalchemy import func, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from cuppa.db.models import InteractionRecord
from cuppa.errors import DependencyFailure, StoreUnavailableError
from cuppa.schemas import InteractionEvent
from cuppa.services.store import DedupeKey, EventStore
from cuppa.utils.timing import as_utc


def build_engine(db_url: str) -> Engine:
    kwargs = {}
    if db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if db_url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
    return create_engine(db_url, echo=False, **kwargs)


def init_db(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)


def _to_record(ev: InteractionEvent) -> InteractionRecord:
    return InteractionRecord(
        event_id=ev.event_id,
        user_id=ev.user_id,
        item_id=ev.item_id,
        interaction_type=ev.interaction_type,
        value=ev.value,
        ts=as_utc(ev.timestamp),
        event_metadata=dict(ev.metadata),
    )


def _to_event(rec: InteractionRecord) -> InteractionEvent:
    return InteractionEvent(
        event_id=rec.event_id,
        user_id=rec.user_id,
        item_id=rec.item_id,
        interaction_type=rec.interaction_type,
        value=rec.value,
        timestamp=as_utc(rec.ts),
        metadata=dict(rec.event_metadata or {}),
    )


class SqlEventStore(EventStore):
    """EventStore over any SQLAlchemy URL; connection loss surfaces as StoreUnavailableError."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        init_db(engine)

    def _fail(self, op: str, e: SQLAlchemyError) -> DependencyFailure:
        logger.warning(f"[store] {op} failed: {e.__class__.__name__}: {e}")
        if isinstance(e, OperationalError):
            return StoreUnavailableError(str(e.orig) if e.orig else str(e))
        return DependencyFailure("event store", f"{op}: {e.__class__.__name__}")

    def add(self, event: InteractionEvent) -> None:
        self.add_many([event])

    def add_many(self, events: Sequence[InteractionEvent]) -> int:
        if not events:
            return 0
        try:
            with Session(self.engine) as session:
                session.add_all([_to_record(ev) for ev in events])
                session.commit()
        except SQLAlchemyError as e:
            raise self._fail("add_many", e) from e
        return len(events)

    def get(self, event_id: str) -> Optional[InteractionEvent]:
        try:
            with Session(self.engine) as session:
                rec = session.exec(
                    select(InteractionRecord).where(InteractionRecord.event_id == event_id)
                ).first()
        except SQLAlchemyError as e:
            raise self._fail("get", e) from e
        return _to_event(rec) if rec else None

    def existing_keys(self, keys: Iterable[DedupeKey]) -> Set[DedupeKey]:
        wanted = set(keys)
        if not wanted:
            return set()
        users = {k[0] for k in wanted}
        items = {k[1] for k in wanted}
        try:
            with Session(self.engine) as session:
                rows = session.exec(
                    select(InteractionRecord).where(
                        InteractionRecord.user_id.in_(users),
                        InteractionRecord.item_id.in_(items),
                    )
                ).all()
        except SQLAlchemyError as e:
            raise self._fail("existing_keys", e) from e
        found = {_to_event(r).dedupe_key() for r in rows}
        return wanted & found

    def find(
        self,
        user_ids: Optional[Iterable[str]] = None,
        item_ids: Optional[Iterable[str]] = None,
        types: Optional[Iterable[str]] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        newest_first: bool = True,
    ) -> List[InteractionEvent]:
        stmt = select(InteractionRecord)
        if user_ids is not None:
            stmt = stmt.where(InteractionRecord.user_id.in_(list(user_ids)))
        if item_ids is not None:
            stmt = stmt.where(InteractionRecord.item_id.in_(list(item_ids)))
        if types is not None:
            stmt = stmt.where(InteractionRecord.interaction_type.in_(list(types)))
        if since is not None:
            stmt = stmt.where(InteractionRecord.ts >= as_utc(since))
        order = InteractionRecord.ts.desc() if newest_first else InteractionRecord.ts.asc()
        stmt = stmt.order_by(order, InteractionRecord.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            with Session(self.engine) as session:
                rows = session.exec(stmt).all()
        except SQLAlchemyError as e:
            raise self._fail("find", e) from e
        return [_to_event(r) for r in rows]

    def latest_timestamp(self) -> Optional[datetime]:
        try:
            with Session(self.engine) as session:
                ts = session.exec(select(func.max(InteractionRecord.ts))).one()
        except SQLAlchemyError as e:
            raise self._fail("latest_timestamp", e) from e
        return as_utc(ts) if ts else None

    def ping(self) -> None:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            raise self._fail("ping", e) from e
