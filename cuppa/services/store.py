# =============================================
# File: cuppa/services/store.py
# Purpose: Event storage port + in-process implementation
# =============================================
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from cuppa.schemas import InteractionEvent
from cuppa.utils.timing import as_utc

DedupeKey = Tuple[str, str, str, str]


class EventStore(ABC):
    """
    Persistence for interaction events. Implementations raise `StoreUnavailableError`
    when the backend is unreachable as a whole and `DependencyFailure` for a failed write.
    """

    @abstractmethod
    def add(self, event: InteractionEvent) -> None: ...

    @abstractmethod
    def add_many(self, events: Sequence[InteractionEvent]) -> int:
        """Write all events or none of them; returns the number written."""

    @abstractmethod
    def get(self, event_id: str) -> Optional[InteractionEvent]: ...

    @abstractmethod
    def existing_keys(self, keys: Iterable[DedupeKey]) -> Set[DedupeKey]:
        """Subset of `keys` (user, item, type, iso timestamp) already stored."""

    @abstractmethod
    def find(
        self,
        user_ids: Optional[Iterable[str]] = None,
        item_ids: Optional[Iterable[str]] = None,
        types: Optional[Iterable[str]] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        newest_first: bool = True,
    ) -> List[InteractionEvent]: ...

    @abstractmethod
    def latest_timestamp(self) -> Optional[datetime]: ...

    @abstractmethod
    def ping(self) -> None:
        """Cheap round trip used by health checks; raises when unreachable."""


class InMemoryEventStore(EventStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: List[InteractionEvent] = []
        self._by_id: Dict[str, InteractionEvent] = {}
        self._keys: Set[DedupeKey] = set()

    def add(self, event: InteractionEvent) -> None:
        self.add_many([event])

    def add_many(self, events: Sequence[InteractionEvent]) -> int:
        with self._lock:
            for ev in events:
                self._events.append(ev)
                self._by_id[ev.event_id] = ev
                self._keys.add(ev.dedupe_key())
        return len(events)

    def get(self, event_id: str) -> Optional[InteractionEvent]:
        with self._lock:
            return self._by_id.get(event_id)

    def existing_keys(self, keys: Iterable[DedupeKey]) -> Set[DedupeKey]:
        with self._lock:
            return {k for k in keys if k in self._keys}

    def find(
        self,
        user_ids: Optional[Iterable[str]] = None,
        item_ids: Optional[Iterable[str]] = None,
        types: Optional[Iterable[str]] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        newest_first: bool = True,
    ) -> List[InteractionEvent]:
        users = set(user_ids) if user_ids is not None else None
        items = set(item_ids) if item_ids is not None else None
        kinds = set(types) if types is not None else None
        cutoff = as_utc(since) if since is not None else None
        with self._lock:
            rows = [
                ev for ev in self._events
                if (users is None or ev.user_id in users)
                and (items is None or ev.item_id in items)
                and (kinds is None or ev.interaction_type in kinds)
                and (cutoff is None or as_utc(ev.timestamp) >= cutoff)
            ]
        rows.sort(key=lambda ev: as_utc(ev.timestamp), reverse=newest_first)
        return rows[:limit] if limit is not None else rows

    def latest_timestamp(self) -> Optional[datetime]:
        with self._lock:
            if not self._events:
                return None
            return max(as_utc(ev.timestamp) for ev in self._events)

    def ping(self) -> None:
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
