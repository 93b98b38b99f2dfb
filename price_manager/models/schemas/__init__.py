from .base import ResponseBase
from .price_jobs import (
    JobLogEntry,
    PriceJob,
    PriceJobCreate,
    JobStatusView,
    ActiveJob,
    StartJobResult,
)
from .variations import (
    VariationCombination,
    VariationPage,
    VariationPriceUpdate,
    VariationCountRequest,
)

__all__ = [
    # Base
    "ResponseBase",

    # Price jobs
    "JobLogEntry",
    "PriceJob",
    "PriceJobCreate",
    "JobStatusView",
    "ActiveJob",
    "StartJobResult",

    # Variations
    "VariationCombination",
    "VariationPage",
    "VariationPriceUpdate",
    "VariationCountRequest",
]
