from .catalog import CatalogItem, ItemMeta
from .job_records import JobRecordRow
from .enums import JobStatus, ItemKind, PriceMetaKey

__all__ = [
    "CatalogItem",
    "ItemMeta",
    "JobRecordRow",
    "JobStatus",
    "ItemKind",
    "PriceMetaKey",
]
