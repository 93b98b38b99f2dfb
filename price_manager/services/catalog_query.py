"""Read side of the catalog: unique attribute combinations, plus the synchronous update path.

A *combination* is the attribute string shared by variations across parent
products (``"color: Red | size: M"``). Selecting one combination gives the
variation ids a price job targets.
"""
from __future__ import annotations

import math
from collections import defaultdict
from typing import NamedTuple, Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from price_manager.config import CATALOG_SETTINGS
from price_manager.models.db.catalog import CatalogItem, ItemMeta
from price_manager.models.db.enums import PriceMetaKey
from price_manager.models.schemas.variations import VariationCombination, VariationPage
from price_manager.services.mutation_engine import MutationResult, apply_price_change
from price_manager.services.price_validation import normalize_price, validate_price_request
from price_manager.utils import get_logger

logger = get_logger(__name__)


class PriceUpdateOutcome(NamedTuple):
    result: MutationResult
    current_price: Optional[str]


def combination_label(attributes: dict[str, str]) -> str:
    """``{"attribute_size": "M", "attribute_color": "Red"}`` -> ``"color: Red | size: M"``."""
    prefix = str(CATALOG_SETTINGS["attribute_prefix"])
    parts = []
    for key in sorted(attributes):
        value = attributes[key]
        if not value:
            continue
        name = key[len(prefix):] if key.startswith(prefix) else key
        parts.append(f"{name}: {value}")
    return " | ".join(parts)


def _valid_variation_rows(session: Session) -> list[tuple[int, Optional[int], str, Optional[str]]]:
    prefix = str(CATALOG_SETTINGS["attribute_prefix"])
    allowed = tuple(CATALOG_SETTINGS["allowed_statuses"])  # type: ignore[arg-type]
    stmt = (
        select(CatalogItem.id, CatalogItem.parent_id, ItemMeta.meta_key, ItemMeta.meta_value)
        .join(ItemMeta, ItemMeta.item_id == CatalogItem.id)
        .where(
            CatalogItem.kind == CATALOG_SETTINGS["variation_kind"],
            CatalogItem.status.in_(allowed),
            or_(
                ItemMeta.meta_key.startswith(prefix, autoescape=True),
                ItemMeta.meta_key.in_([
                    PriceMetaKey.REGULAR.value,
                    PriceMetaKey.SALE.value,
                    PriceMetaKey.EFFECTIVE.value,
                ]),
            ),
        )
        .order_by(CatalogItem.id, ItemMeta.meta_key)
    )
    return [tuple(row) for row in session.execute(stmt).all()]  # type: ignore[misc]


def get_unique_variations(
    session: Session,
    search: str = "",
    page: int = 1,
    per_page: int | None = None,
) -> VariationPage:
    per_page = max(1, int(per_page if per_page is not None else CATALOG_SETTINGS["per_page"]))
    page = max(1, page)
    prefix = str(CATALOG_SETTINGS["attribute_prefix"])

    parents: dict[int, Optional[int]] = {}
    attributes: dict[int, dict[str, str]] = defaultdict(dict)
    prices: dict[int, dict[str, str]] = defaultdict(dict)
    for item_id, parent_id, key, value in _valid_variation_rows(session):
        parents[item_id] = parent_id
        if key.startswith(prefix):
            attributes[item_id][key] = value or ""
        else:
            prices[item_id][key] = value or ""

    groups: dict[str, VariationCombination] = {}
    for item_id in parents:
        label = combination_label(attributes.get(item_id, {}))
        if not label:
            continue
        group = groups.get(label)
        if group is None:
            item_prices = prices.get(item_id, {})
            group = VariationCombination(
                combination=label,
                regular_price=item_prices.get(PriceMetaKey.REGULAR.value),
                sale_price=item_prices.get(PriceMetaKey.SALE.value),
                current_price=item_prices.get(PriceMetaKey.EFFECTIVE.value),
            )
            groups[label] = group
        group.variation_ids.append(item_id)
        parent_id = parents[item_id]
        if parent_id is not None and parent_id not in group.product_ids:
            group.product_ids.append(parent_id)

    needle = search.strip().lower()
    items = sorted(
        (g for g in groups.values() if not needle or needle in g.combination.lower()),
        key=lambda g: g.combination,
    )
    for group in items:
        group.variation_count = len(group.variation_ids)
        group.product_count = len(group.product_ids)

    total = len(items)
    start = (page - 1) * per_page
    return VariationPage(
        items=items[start:start + per_page],
        total=total,
        total_pages=math.ceil(total / per_page) if total else 0,
        page=page,
    )


def _current_price(session: Session, item_id: int) -> Optional[str]:
    return session.scalar(
        select(ItemMeta.meta_value).where(
            ItemMeta.item_id == item_id,
            ItemMeta.meta_key == PriceMetaKey.EFFECTIVE.value,
        )
    )


def update_variation_prices_now(
    session: Session,
    variation_ids: Sequence[int],
    regular_price: str,
    sale_price: Optional[str],
) -> PriceUpdateOutcome:
    """Apply a price change inline. Raises PriceValidationError on bad input.

    ``sale_price`` None leaves the sale price as it is.
    """
    regular = normalize_price(regular_price) or ""
    sale = normalize_price(sale_price)
    validate_price_request(variation_ids, regular, sale)

    result = apply_price_change(session, variation_ids, regular, sale)
    logger.info(
        "Inline price update applied",
        variation_count=len(variation_ids),
        updated=result.updated_count,
        skipped_same_price=result.skipped_same_price,
        skipped_invalid=result.skipped_invalid,
        error=result.error,
    )
    current = _current_price(session, variation_ids[0]) if result.ok else None
    return PriceUpdateOutcome(result=result, current_price=current)


__all__ = [
    "PriceUpdateOutcome",
    "combination_label",
    "get_unique_variations",
    "update_variation_prices_now",
]
