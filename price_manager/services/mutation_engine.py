"""Apply one price change to a set of variations in a single transaction.

Flow:
1. Load the valid variations among ``target_ids`` with their current price metas
2. Decide per variation whether anything would change (string comparison)
3. Write regular / sale / effective price for the ones that change, commit once
4. Resync the price range of every touched parent product

Storage errors never escape: the transaction is rolled back and the result
carries the error message instead.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from price_manager.config import CATALOG_SETTINGS
from price_manager.models.db.catalog import CatalogItem, ItemMeta
from price_manager.models.db.enums import PriceMetaKey
from price_manager.services.catalog_sync import resync_parents, set_meta
from price_manager.utils import get_logger

logger = get_logger(__name__)

_PRICE_KEYS = (PriceMetaKey.REGULAR.value, PriceMetaKey.SALE.value, PriceMetaKey.EFFECTIVE.value)


@dataclass
class MutationResult:
    updated_count: int = 0
    skipped_same_price: int = 0
    skipped_invalid: int = 0
    affected_parent_ids: list[int] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _Variation:
    item_id: int
    parent_id: Optional[int]
    metas: dict[str, ItemMeta]

    def current(self, key: PriceMetaKey) -> str:
        row = self.metas.get(key.value)
        return (row.meta_value or "") if row is not None else ""


def effective_price(regular: str, sale: str) -> str:
    return sale if sale != "" else regular


def needs_update(current_regular: str, current_sale: str, regular_price: str, sale_price: Optional[str]) -> bool:
    if regular_price != "" and regular_price != current_regular:
        return True
    if sale_price is None:
        return False
    if sale_price != "":
        return sale_price != current_sale
    return current_sale != ""


def _load_valid(session: Session, target_ids: Iterable[int]) -> dict[int, _Variation]:
    ids = sorted(set(target_ids))
    if not ids:
        return {}
    allowed = tuple(CATALOG_SETTINGS["allowed_statuses"])  # type: ignore[arg-type]
    items = session.execute(
        select(CatalogItem.id, CatalogItem.parent_id).where(
            CatalogItem.id.in_(ids),
            CatalogItem.kind == CATALOG_SETTINGS["variation_kind"],
            CatalogItem.status.in_(allowed),
        )
    ).all()
    variations = {item_id: _Variation(item_id, parent_id, {}) for item_id, parent_id in items}
    if not variations:
        return variations
    metas = session.scalars(
        select(ItemMeta).where(ItemMeta.item_id.in_(list(variations)), ItemMeta.meta_key.in_(_PRICE_KEYS))
    )
    for meta in metas:
        variations[meta.item_id].metas[meta.meta_key] = meta
    return variations


def apply_price_change(
    session: Session,
    target_ids: Sequence[int],
    regular_price: str,
    sale_price: Optional[str],
) -> MutationResult:
    """Write the desired prices onto ``target_ids``.

    ``regular_price == ""`` leaves the regular price unchanged. ``sale_price``
    ``""`` clears the sale price and ``None`` leaves it untouched.
    """
    result = MutationResult()
    try:
        variations = _load_valid(session, target_ids)
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("Loading variations failed", error=str(e))
        result.error = str(e)
        return result

    # One per input position, duplicates included
    result.skipped_invalid = sum(1 for tid in target_ids if tid not in variations)

    to_write: list[_Variation] = []
    for variation in variations.values():
        if needs_update(
            variation.current(PriceMetaKey.REGULAR),
            variation.current(PriceMetaKey.SALE),
            regular_price,
            sale_price,
        ):
            to_write.append(variation)
        else:
            result.skipped_same_price += 1

    if not to_write:
        return result

    try:
        for variation in to_write:
            regular = regular_price if regular_price != "" else variation.current(PriceMetaKey.REGULAR)
            sale = sale_price if sale_price is not None else variation.current(PriceMetaKey.SALE)
            if regular_price != "":
                set_meta(session, variation.metas, variation.item_id, PriceMetaKey.REGULAR.value, regular)
            if sale_price is not None:
                set_meta(session, variation.metas, variation.item_id, PriceMetaKey.SALE.value, sale)
            set_meta(
                session, variation.metas, variation.item_id,
                PriceMetaKey.EFFECTIVE.value, effective_price(regular, sale),
            )
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("Price update transaction rolled back", variation_count=len(to_write), error=str(e))
        result.error = str(e)
        return result

    result.updated_count = len(to_write)
    parents = sorted({v.parent_id for v in to_write if v.parent_id is not None})
    result.affected_parent_ids = resync_parents(session, parents)
    return result


__all__ = ["MutationResult", "apply_price_change", "needs_update", "effective_price"]
