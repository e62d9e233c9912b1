# =============================================
# File: cuppa/services/catalog.py
# Purpose: Coffee catalog + social connections (read-only collaborators), JSON-backed
# =============================================

from __future__ import annotations
import json
import os
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from loguru import logger

from cuppa.schemas import CatalogItem

DEFAULT_CATALOG_PATH = os.path.join(os.path.dirname(os.path.dirname(__file__)), "data", "catalog.json")

# filter key -> accessor on CatalogItem
_ATTRIBUTES: Dict[str, Callable[[CatalogItem], Any]] = {
    "roastLevel": lambda it: it.roast_level,
    "originCountry": lambda it: it.origin_country,
    "processingMethod": lambda it: it.processing_method,
    "roasterLocation": lambda it: it.roaster_location,
}


class InMemoryCatalog:
    """
    Items keyed by id. `find_items` filters on scalar attributes (exact match, or membership
    when the filter value is a list/set) and on `flavorNotes` (any overlap).
    """
    def __init__(self, items: Iterable[CatalogItem] = ()) -> None:
        self._lock = threading.Lock()
        self._items: Dict[str, CatalogItem] = {}
        for it in items:
            self._items[it.id] = it

    def add(self, item: CatalogItem) -> None:
        with self._lock:
            self._items[item.id] = item

    def get_item(self, item_id: str) -> Optional[CatalogItem]:
        with self._lock:
            return self._items.get(item_id)

    def get_items(self, item_ids: Iterable[str]) -> Dict[str, CatalogItem]:
        with self._lock:
            return {i: self._items[i] for i in item_ids if i in self._items}

    def find_items(
        self,
        filters: Optional[Dict[str, Any]] = None,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[CatalogItem]:
        filters = filters or {}
        excluded: Set[str] = set(exclude_ids or ())
        with self._lock:
            items = list(self._items.values())

        def keep(it: CatalogItem) -> bool:
            if it.id in excluded:
                return False
            for key, wanted in filters.items():
                if key == "flavorNotes":
                    if not set(wanted) & set(it.flavor_notes):
                        return False
                    continue
                getter = _ATTRIBUTES.get(key)
                if getter is None:
                    raise KeyError(f"Unsupported catalog filter: {key}")
                got = getter(it)
                if isinstance(wanted, (list, tuple, set, frozenset)):
                    if got not in wanted:
                        return False
                elif got != wanted:
                    return False
            return True

        return [it for it in items if keep(it)]

    def ping(self) -> None:
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


def load_catalog(path: str = DEFAULT_CATALOG_PATH) -> InMemoryCatalog:
    """Read a JSON list of items (or {"items": [...]}). A missing file yields an empty catalog."""
    if not os.path.exists(path):
        logger.warning(f"[catalog] no catalog at {path}; starting empty")
        return InMemoryCatalog()
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    rows = raw.get("items", []) if isinstance(raw, dict) else raw
    items = [CatalogItem.model_validate(r) for r in rows]
    logger.info(f"[catalog] loaded {len(items)} items from {path}")
    return InMemoryCatalog(items)


class InMemorySocialGraph:
    """Undirected accepted connections between users."""
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._edges: Dict[str, Set[str]] = {}

    def connect(self, a: str, b: str) -> None:
        if a == b:
            return
        with self._lock:
            self._edges.setdefault(a, set()).add(b)
            self._edges.setdefault(b, set()).add(a)

    def connections(self, user_id: str) -> List[str]:
        with self._lock:
            return sorted(self._edges.get(user_id, ()))
