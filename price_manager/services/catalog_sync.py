"""Parent product price range resync & process-local price range cache.

After variation prices change, each touched parent product gets its derived
range recomputed from its valid variations (``_min_variation_price``,
``_max_variation_price`` and the parent's own ``_price`` = minimum) and its
cached range dropped so readers see the new values.
"""
from __future__ import annotations

import threading
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from price_manager.config import CATALOG_SETTINGS
from price_manager.models.db.catalog import CatalogItem, ItemMeta
from price_manager.models.db.enums import PriceMetaKey
from price_manager.utils import get_logger

logger = get_logger(__name__)


class PriceRangeCache:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ranges: dict[int, tuple[str | None, str | None]] = {}

    def get(self, parent_id: int) -> Optional[tuple[str | None, str | None]]:
        with self._lock:
            return self._ranges.get(parent_id)

    def put(self, parent_id: int, price_range: tuple[str | None, str | None]) -> None:
        with self._lock:
            self._ranges[parent_id] = price_range

    def invalidate(self, parent_id: int) -> None:
        with self._lock:
            self._ranges.pop(parent_id, None)

    def clear(self) -> None:
        with self._lock:
            self._ranges.clear()


PRICE_RANGE_CACHE = PriceRangeCache()

# Batches of one job resync the same parent concurrently; the last writer must
# read after every earlier commit. Parents share a fixed pool of striped locks.
PARENT_LOCK_STRIPES = 64
_parent_locks = tuple(threading.Lock() for _ in range(PARENT_LOCK_STRIPES))


def _parent_lock(parent_id: int) -> threading.Lock:
    return _parent_locks[parent_id % PARENT_LOCK_STRIPES]


def set_meta(session: Session, existing: dict[str, ItemMeta], item_id: int, key: str, value: str) -> None:
    """Update the meta row for ``key`` or insert it when the item has none."""
    row = existing.get(key)
    if row is None:
        row = ItemMeta(item_id=item_id, meta_key=key, meta_value=value)
        session.add(row)
        existing[key] = row
    else:
        row.meta_value = value


def _to_decimal(value: str | None) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(value)
    except InvalidOperation:
        return None


def _variation_prices(session: Session, parent_id: int) -> list[Decimal]:
    allowed = tuple(CATALOG_SETTINGS["allowed_statuses"])  # type: ignore[arg-type]
    stmt = (
        select(ItemMeta.meta_value)
        .join(CatalogItem, CatalogItem.id == ItemMeta.item_id)
        .where(
            CatalogItem.parent_id == parent_id,
            CatalogItem.kind == CATALOG_SETTINGS["variation_kind"],
            CatalogItem.status.in_(allowed),
            ItemMeta.meta_key == PriceMetaKey.EFFECTIVE.value,
        )
    )
    prices = (_to_decimal(v) for v in session.scalars(stmt))
    return [p for p in prices if p is not None]


def sync_parent_price_range(session: Session, parent_id: int) -> tuple[str | None, str | None]:
    """Recompute and persist the price range of one parent product. Commits."""
    with _parent_lock(parent_id):
        return _sync_locked(session, parent_id)


def _sync_locked(session: Session, parent_id: int) -> tuple[str | None, str | None]:
    prices = _variation_prices(session, parent_id)
    low = str(min(prices)) if prices else ""
    high = str(max(prices)) if prices else ""
    existing = {
        m.meta_key: m
        for m in session.scalars(
            select(ItemMeta).where(
                ItemMeta.item_id == parent_id,
                ItemMeta.meta_key.in_([
                    PriceMetaKey.MIN_VARIATION.value,
                    PriceMetaKey.MAX_VARIATION.value,
                    PriceMetaKey.EFFECTIVE.value,
                ]),
            )
        )
    }
    set_meta(session, existing, parent_id, PriceMetaKey.MIN_VARIATION.value, low)
    set_meta(session, existing, parent_id, PriceMetaKey.MAX_VARIATION.value, high)
    set_meta(session, existing, parent_id, PriceMetaKey.EFFECTIVE.value, low)
    session.commit()
    PRICE_RANGE_CACHE.invalidate(parent_id)
    return (low or None, high or None)


def resync_parents(session: Session, parent_ids: Iterable[int]) -> list[int]:
    """Resync every parent; a failing parent is logged and skipped. Returns the synced ids."""
    synced: list[int] = []
    for parent_id in sorted(set(parent_ids)):
        try:
            sync_parent_price_range(session, parent_id)
            synced.append(parent_id)
        except SQLAlchemyError as e:
            session.rollback()
            PRICE_RANGE_CACHE.invalidate(parent_id)
            logger.error("Parent price range resync failed", parent_id=parent_id, error=str(e))
    return synced


def get_price_range(session: Session, parent_id: int) -> tuple[str | None, str | None]:
    """Cached read of a parent's (min, max) variation price."""
    cached = PRICE_RANGE_CACHE.get(parent_id)
    if cached is not None:
        return cached
    rows = dict(
        session.execute(
            select(ItemMeta.meta_key, ItemMeta.meta_value).where(
                ItemMeta.item_id == parent_id,
                ItemMeta.meta_key.in_([PriceMetaKey.MIN_VARIATION.value, PriceMetaKey.MAX_VARIATION.value]),
            )
        ).all()
    )
    price_range = (
        rows.get(PriceMetaKey.MIN_VARIATION.value) or None,
        rows.get(PriceMetaKey.MAX_VARIATION.value) or None,
    )
    PRICE_RANGE_CACHE.put(parent_id, price_range)
    return price_range


__all__ = [
    "PRICE_RANGE_CACHE",
    "PriceRangeCache",
    "set_meta",
    "sync_parent_price_range",
    "resync_parents",
    "get_price_range",
]
