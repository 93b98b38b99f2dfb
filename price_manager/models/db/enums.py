"""Central Enum definitions for core domain states.

These replace scattered string literals to ensure consistency across
DB models, schemas, and job logic.
"""
from __future__ import annotations
import enum


class JobStatus(str, enum.Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.PROCESSING


class ItemKind(str, enum.Enum):
    PRODUCT = "product"
    PRODUCT_VARIATION = "product_variation"


class PriceMetaKey(str, enum.Enum):
    REGULAR = "_regular_price"
    SALE = "_sale_price"
    EFFECTIVE = "_price"
    MIN_VARIATION = "_min_variation_price"
    MAX_VARIATION = "_max_variation_price"


__all__ = [
    "JobStatus",
    "ItemKind",
    "PriceMetaKey",
]
