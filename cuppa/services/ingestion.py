# =============================================
# File: cuppa/services/ingestion.py
# Purpose: Validate, enrich and persist interaction events (single + chunked batch)
# =============================================

from __future__ import annotations
import re
import uuid
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from cuppa.config import INTERACTION_TYPES, IngestionConfig
from cuppa.errors import DependencyFailure, NotFoundError, StoreUnavailableError
from cuppa.schemas import BatchError, BatchResult, IngestResult, InteractionEvent, ValidationResult
from cuppa.services.catalog import InMemoryCatalog
from cuppa.services.store import EventStore
from cuppa.utils import metrics
from cuppa.utils.events import EventBus
from cuppa.utils.timing import parse_timestamp, time_of_day, utcnow

# accepted spellings per canonical field; coffeeId is the legacy client name for itemId
_FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "eventId": ("eventId", "event_id"),
    "userId": ("userId", "user_id"),
    "itemId": ("itemId", "item_id", "coffeeId", "coffee_id"),
    "interactionType": ("interactionType", "interaction_type", "type"),
    "value": ("value", "rating"),
    "timestamp": ("timestamp", "ts"),
    "metadata": ("metadata", "meta"),
}

STATS_WINDOWS: Dict[str, timedelta] = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(days=7),
}

ProgressCallback = Callable[[Dict[str, Any]], None]
StoredListener = Callable[[List[str]], None]


def _normalize(raw: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for canon, names in _FIELD_ALIASES.items():
        for n in names:
            if n in raw and raw[n] is not None:
                out[canon] = raw[n]
                break
    return out


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


class IngestionService:
    def __init__(
        self,
        store: EventStore,
        catalog: Optional[InMemoryCatalog] = None,
        bus: Optional[EventBus] = None,
        config: Optional[IngestionConfig] = None,
        clock=utcnow,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.bus = bus or EventBus()
        self.cfg = config or IngestionConfig()
        self._id_re = re.compile(self.cfg.id_pattern)
        self._clock = clock
        self._stored_listeners: List[StoredListener] = []

    def on_stored(self, listener: StoredListener) -> None:
        """Call `listener(user_ids)` synchronously after every successful store write."""
        self._stored_listeners.append(listener)

    def _notify_stored(self, user_ids: List[str]) -> None:
        if not user_ids:
            return
        for listener in list(self._stored_listeners):
            try:
                listener(user_ids)
            except Exception as e:
                logger.warning(f"[ingest] stored listener failed for {len(user_ids)} users: {e!r}")

    # ---------- validation ----------

    def validate(self, raw: Any) -> ValidationResult:
        if not isinstance(raw, dict):
            return ValidationResult(is_valid=False, errors=["event must be an object"])
        data = _normalize(raw)
        errors: List[str] = []
        warnings: List[str] = []

        for field in ("userId", "itemId", "interactionType"):
            if field not in data or data[field] == "":
                errors.append(f"{field} is required")

        for field in ("userId", "itemId"):
            v = data.get(field)
            if v not in (None, "") and not (isinstance(v, str) and self._id_re.match(v)):
                errors.append(f"Invalid {field} format")

        itype = data.get("interactionType")
        if itype not in (None, "") and itype not in INTERACTION_TYPES:
            errors.append(f"Invalid interactionType: {itype}. Valid types: {', '.join(INTERACTION_TYPES)}")

        value = data.get("value")
        if value is not None and not _is_number(value):
            errors.append("value must be numeric")
        elif itype == "rating":
            if value is None:
                errors.append("value is required for rating interactions")
            elif not 1 <= value <= 5:
                errors.append("rating value must be between 1 and 5")

        if "timestamp" in data:
            try:
                ts = parse_timestamp(data["timestamp"])
            except (TypeError, ValueError, OverflowError, OSError):
                errors.append("Invalid timestamp format")
            else:
                if ts is not None and ts > self._clock():
                    warnings.append("Timestamp is in the future")

        meta = data.get("metadata")
        if meta is not None and not isinstance(meta, dict):
            errors.append("metadata must be an object")

        item_id = data.get("itemId")
        if self.catalog is not None and not errors and isinstance(item_id, str):
            try:
                if self.catalog.get_item(item_id) is None:
                    warnings.append(f"Unknown item: {item_id}")
            except Exception as e:
                logger.warning(f"[ingest] catalog lookup failed for {item_id}: {e}")
                warnings.append(f"Catalog lookup failed: {e}")

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def _transform(self, raw: Dict[str, Any]) -> InteractionEvent:
        data = _normalize(raw)
        ts = parse_timestamp(data.get("timestamp")) or self._clock()
        meta = dict(data.get("metadata") or {})
        meta.setdefault("timeOfDay", time_of_day(ts))
        meta.setdefault("dayOfWeek", ts.weekday())
        value = data.get("value")
        return InteractionEvent(
            event_id=str(data.get("eventId") or uuid.uuid4().hex),
            user_id=data["userId"],
            item_id=data["itemId"],
            interaction_type=data["interactionType"],
            value=float(value) if value is not None else None,
            timestamp=ts,
            metadata=meta,
        )

    def _completed(self, ev: InteractionEvent) -> None:
        self.bus.emit("ingestion.completed", {
            "eventId": ev.event_id,
            "userId": ev.user_id,
            "itemId": ev.item_id,
            "interactionType": ev.interaction_type,
        })

    # ---------- single ----------

    def ingest_single(self, raw: Any) -> IngestResult:
        check = self.validate(raw)
        if not check.is_valid:
            metrics.record_ingestion(accepted=0, rejected=1)
            return IngestResult(
                success=False,
                error=f"Validation failed: {', '.join(check.errors)}",
                errors=check.errors,
                warnings=check.warnings,
            )
        ev = self._transform(raw)
        try:
            self.store.add(ev)
        except DependencyFailure as e:
            logger.error(f"[ingest] store write failed for event {ev.event_id}: {e}")
            return IngestResult(success=False, event_id=ev.event_id, error=str(e), warnings=check.warnings)

        metrics.record_ingestion(accepted=1)
        self._notify_stored([ev.user_id])
        self._completed(ev)
        logger.info(f"[ingest] stored {ev.interaction_type} user={ev.user_id} item={ev.item_id}")
        return IngestResult(success=True, event_id=ev.event_id, warnings=check.warnings)

    # ---------- batch ----------

    def ingest_batch(
        self,
        raw_events: Sequence[Any],
        batch_size: Optional[int] = None,
        skip_duplicates: bool = True,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchResult:
        """
        Process `raw_events` in fixed-size chunks. Invalid items are reported per index; a
        failed chunk write fails only that chunk. Losing the store altogether stops the run
        and reports every unprocessed item as failed.
        """
        size = min(max(1, batch_size or self.cfg.batch_size), self.cfg.max_batch_size)
        total = len(raw_events)
        result = BatchResult()

        for chunk_no, start in enumerate(range(0, total, size)):
            chunk = raw_events[start:start + size]
            staged: List[Tuple[int, InteractionEvent]] = []
            for offset, raw in enumerate(chunk):
                idx = start + offset
                check = self.validate(raw)
                if not check.is_valid:
                    result.failed += 1
                    result.errors.append(BatchError(index=idx, error="; ".join(check.errors)))
                    continue
                staged.append((idx, self._transform(raw)))

            stored: List[InteractionEvent] = []
            try:
                if skip_duplicates and staged:
                    staged = self._drop_duplicates(staged, result)
                if staged:
                    self.store.add_many([ev for _, ev in staged])
                    stored = [ev for _, ev in staged]
                    result.processed += len(stored)
            except StoreUnavailableError as e:
                self._fail_items(result, [i for i, _ in staged], str(e))
                rest = range(start + len(chunk), total)
                self._fail_items(result, list(rest), "skipped: event store unavailable")
                result.aborted = True
                logger.error(f"[ingest] store unavailable at chunk {chunk_no}; aborting {len(rest)} remaining items")
                break
            except DependencyFailure as e:
                self._fail_items(result, [i for i, _ in staged], str(e))
                logger.warning(f"[ingest] chunk {chunk_no} write failed ({len(staged)} items): {e}")

            progress = {
                "chunk": chunk_no,
                "total": total,
                "processed": result.processed,
                "failed": result.failed,
                "duplicates": result.duplicates,
                "userIds": sorted({ev.user_id for ev in stored}),
            }
            self._notify_stored(progress["userIds"])
            self.bus.emit("ingestion.batch_progress", progress)
            if on_progress is not None:
                try:
                    on_progress(progress)
                except Exception as e:
                    logger.warning(f"[ingest] progress callback failed: {e!r}")

        metrics.record_ingestion(accepted=result.processed, rejected=result.failed, duplicates=result.duplicates)
        self.bus.emit("ingestion.batch_completed", result.model_dump(by_alias=True))
        logger.info(
            f"[ingest] batch total={total} processed={result.processed} failed={result.failed} "
            f"duplicates={result.duplicates} aborted={result.aborted}"
        )
        return result

    def _drop_duplicates(
        self, staged: List[Tuple[int, InteractionEvent]], result: BatchResult
    ) -> List[Tuple[int, InteractionEvent]]:
        seen = set(self.store.existing_keys(ev.dedupe_key() for _, ev in staged))
        fresh: List[Tuple[int, InteractionEvent]] = []
        for idx, ev in staged:
            key = ev.dedupe_key()
            if key in seen:
                result.duplicates += 1
                continue
            seen.add(key)
            fresh.append((idx, ev))
        return fresh

    @staticmethod
    def _fail_items(result: BatchResult, indexes: List[int], error: str) -> None:
        result.failed += len(indexes)
        result.errors.extend(BatchError(index=i, error=error) for i in indexes)

    # ---------- reads ----------

    def get_event(self, event_id: str) -> InteractionEvent:
        ev = self.store.get(event_id)
        if ev is None:
            raise NotFoundError("event", event_id)
        return ev

    def get_ingestion_stats(self, timeframe: str = "day") -> Dict[str, Any]:
        if timeframe not in STATS_WINDOWS:
            raise ValueError(f"timeframe must be one of {', '.join(STATS_WINDOWS)}")
        span = STATS_WINDOWS[timeframe]
        events = self.store.find(since=self._clock() - span)
        by_type: Dict[str, int] = {}
        for ev in events:
            by_type[ev.interaction_type] = by_type.get(ev.interaction_type, 0) + 1
        hours = span.total_seconds() / 3600.0
        return {
            "timeframe": timeframe,
            "totalInteractions": len(events),
            "interactionsByType": by_type,
            "averagePerHour": len(events) / hours,
            "lastIngestionTime": self.store.latest_timestamp(),
        }
