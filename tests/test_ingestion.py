# =============================================
# File: tests/test_ingestion.py
# Purpose: Event validation, enrichment, single + batch ingestion semantics
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from datetime import datetime, timedelta, timezone

import pytest

from cuppa.errors import DependencyFailure, NotFoundError, StoreUnavailableError
from cuppa.schemas import CatalogItem
from cuppa.services.catalog import InMemoryCatalog
from cuppa.services.ingestion import IngestionService
from cuppa.services.store import InMemoryEventStore
from cuppa.utils.events import EventBus

NOW = datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)  # a Monday morning


def _event(user="u1", item="col-huila", kind="view", value=None, minutes_ago=0, **extra):
    raw = {
        "userId": user,
        "itemId": item,
        "interactionType": kind,
        "timestamp": (NOW - timedelta(minutes=minutes_ago)).isoformat(),
    }
    if value is not None:
        raw["value"] = value
    raw.update(extra)
    return raw


def _service(store=None, bus=None, catalog=None):
    catalog = catalog or InMemoryCatalog([CatalogItem(id="col-huila", roast_level="medium")])
    return IngestionService(store if store is not None else InMemoryEventStore(), catalog=catalog, bus=bus, clock=lambda: NOW)


class _FailingStore(InMemoryEventStore):
    """Fails the n-th bulk write (1-based) with the given exception."""
    def __init__(self, fail_on_call, exc):
        super().__init__()
        self.calls = 0
        self.fail_on_call = fail_on_call
        self.exc = exc

    def add_many(self, events):
        self.calls += 1
        if self.calls == self.fail_on_call:
            raise self.exc
        return super().add_many(events)


# ---------- validate ----------

def test_validate_accepts_well_formed_event():
    res = _service().validate(_event(kind="rating", value=5))
    assert res.is_valid
    assert res.errors == []


def test_validate_reports_missing_required_fields():
    res = _service().validate({"interactionType": "view"})
    assert not res.is_valid
    assert "userId is required" in res.errors
    assert "itemId is required" in res.errors


def test_validate_rejects_unknown_interaction_type():
    res = _service().validate(_event(kind="teleport"))
    assert not res.is_valid
    assert any(e.startswith("Invalid interactionType: teleport") for e in res.errors)


def test_validate_rejects_malformed_identifier():
    res = _service().validate(_event(user="bad id with spaces"))
    assert "Invalid userId format" in res.errors


@pytest.mark.parametrize("value,message", [
    (None, "value is required for rating interactions"),
    (0, "rating value must be between 1 and 5"),
    (6, "rating value must be between 1 and 5"),
    ("five", "value must be numeric"),
])
def test_validate_rating_bounds(value, message):
    raw = _event(kind="rating")
    if value is not None:
        raw["value"] = value
    res = _service().validate(raw)
    assert not res.is_valid
    assert message in res.errors


def test_future_timestamp_is_a_warning_not_an_error():
    raw = _event(minutes_ago=-60)
    res = _service().validate(raw)
    assert res.is_valid
    assert "Timestamp is in the future" in res.warnings


def test_unparseable_timestamp_is_rejected():
    raw = _event()
    raw["timestamp"] = "yesterday-ish"
    res = _service().validate(raw)
    assert "Invalid timestamp format" in res.errors


def test_unknown_catalog_item_is_a_warning():
    res = _service().validate(_event(item="not-in-catalog"))
    assert res.is_valid
    assert "Unknown item: not-in-catalog" in res.warnings


def test_legacy_coffee_id_alias_is_accepted():
    raw = {"userId": "u1", "coffeeId": "col-huila", "interactionType": "favorite"}
    svc = _service()
    out = svc.ingest_single(raw)
    assert out.success
    assert svc.get_event(out.event_id).item_id == "col-huila"


# ---------- single ----------

def test_ingest_single_round_trips_core_fields():
    svc = _service()
    out = svc.ingest_single(_event(kind="rating", value=4))
    assert out.success and out.event_id

    stored = svc.get_event(out.event_id)
    assert (stored.user_id, stored.item_id, stored.interaction_type, stored.value) == ("u1", "col-huila", "rating", 4.0)


def test_ingest_single_enriches_time_fields():
    svc = _service()
    out = svc.ingest_single(_event())
    stored = svc.get_event(out.event_id)
    assert stored.metadata["timeOfDay"] == "morning"
    assert stored.metadata["dayOfWeek"] == 0


def test_ingest_single_keeps_client_metadata():
    svc = _service()
    out = svc.ingest_single(_event(metadata={"deviceType": "mobile", "timeOfDay": "evening"}))
    meta = svc.get_event(out.event_id).metadata
    assert meta["deviceType"] == "mobile"
    assert meta["timeOfDay"] == "evening"


def test_ingest_single_validation_failure_is_a_result():
    out = _service().ingest_single({"userId": "u1"})
    assert not out.success
    assert out.error.startswith("Validation failed")


def test_ingest_single_storage_failure_is_reported():
    store = _FailingStore(1, DependencyFailure("event store", "disk full"))
    out = _service(store=store).ingest_single(_event())
    assert not out.success
    assert "disk full" in out.error
    assert len(store) == 0


def test_ingest_single_notifies_observers():
    bus = EventBus()
    seen = []
    bus.subscribe("ingestion.completed", seen.append)
    out = _service(bus=bus).ingest_single(_event(user="u7"))
    bus.flush()
    assert seen and seen[0]["eventId"] == out.event_id
    assert seen[0]["userId"] == "u7"


def test_stored_listeners_run_before_ingest_returns():
    svc = _service()
    seen = []
    svc.on_stored(seen.append)

    def _broken(user_ids):
        raise RuntimeError("listener down")

    svc.on_stored(_broken)
    assert svc.ingest_single(_event(user="u7")).success
    assert seen == [["u7"]]

    svc.ingest_single({"userId": "u8"})
    assert seen == [["u7"]]


def test_batch_notifies_stored_users_per_written_chunk():
    store = _FailingStore(2, DependencyFailure("event store", "deadlock"))
    svc = _service(store=store)
    seen = []
    svc.on_stored(seen.append)
    batch = [_event(user=f"u{i}", minutes_ago=i) for i in range(4)]

    svc.ingest_batch(batch, batch_size=2)
    assert seen == [["u0", "u1"]]


def test_get_event_unknown_raises_not_found():
    with pytest.raises(NotFoundError):
        _service().get_event("missing")


# ---------- batch ----------

def test_batch_is_idempotent_with_skip_duplicates():
    store = InMemoryEventStore()
    svc = _service(store=store)
    batch = [_event(item="col-huila", minutes_ago=i) for i in range(5)]

    first = svc.ingest_batch(batch, batch_size=2)
    assert (first.processed, first.failed, first.duplicates) == (5, 0, 0)

    second = svc.ingest_batch(batch, batch_size=2)
    assert second.processed == 0
    assert second.duplicates == 5
    assert len(store) == 5


def test_batch_drops_duplicates_within_one_chunk():
    svc = _service()
    res = svc.ingest_batch([_event(), _event(), _event(minutes_ago=1)], batch_size=10)
    assert res.processed == 2
    assert res.duplicates == 1


def test_batch_reports_invalid_items_by_index():
    svc = _service()
    batch = [_event(minutes_ago=1), {"userId": "u1"}, _event(kind="rating", value=9)]
    res = svc.ingest_batch(batch)
    assert res.processed == 1
    assert res.failed == 2
    assert sorted(e.index for e in res.errors) == [1, 2]


def test_chunk_write_failure_only_fails_that_chunk():
    store = _FailingStore(2, DependencyFailure("event store", "deadlock"))
    svc = _service(store=store)
    batch = [_event(minutes_ago=i) for i in range(6)]

    res = svc.ingest_batch(batch, batch_size=2)
    assert res.processed == 4
    assert res.failed == 2
    assert sorted(e.index for e in res.errors) == [2, 3]
    assert not res.aborted
    assert len(store) == 4


def test_store_outage_short_circuits_remaining_chunks():
    store = _FailingStore(2, StoreUnavailableError("connection refused"))
    svc = _service(store=store)
    batch = [_event(minutes_ago=i) for i in range(6)]

    res = svc.ingest_batch(batch, batch_size=2)
    assert res.aborted
    assert res.processed == 2
    assert res.failed == 4
    assert sorted(e.index for e in res.errors) == [2, 3, 4, 5]
    # no write attempted after the outage
    assert store.calls == 2


def test_batch_progress_callback_per_chunk_and_isolated():
    calls = []

    def on_progress(p):
        calls.append(p["chunk"])
        raise RuntimeError("observer bug")

    res = _service().ingest_batch([_event(minutes_ago=i) for i in range(5)], batch_size=2, on_progress=on_progress)
    assert res.processed == 5
    assert calls == [0, 1, 2]


def test_batch_without_skip_duplicates_writes_everything():
    store = InMemoryEventStore()
    svc = _service(store=store)
    svc.ingest_batch([_event()], skip_duplicates=False)
    svc.ingest_batch([_event()], skip_duplicates=False)
    assert len(store) == 2


# ---------- stats ----------

def test_ingestion_stats_counts_by_type():
    svc = _service()
    svc.ingest_batch([
        _event(kind="view", minutes_ago=5),
        _event(kind="view", minutes_ago=10),
        _event(kind="purchase", minutes_ago=15),
        _event(kind="view", minutes_ago=60 * 30),
    ])
    stats = svc.get_ingestion_stats("day")
    assert stats["totalInteractions"] == 3
    assert stats["interactionsByType"] == {"view": 2, "purchase": 1}
    assert stats["averagePerHour"] == pytest.approx(3 / 24)


def test_ingestion_stats_rejects_unknown_timeframe():
    with pytest.raises(ValueError):
        _service().get_ingestion_stats("fortnight")
