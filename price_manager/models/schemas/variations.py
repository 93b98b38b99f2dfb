"""
Pydantic schemas for variation combination listings and synchronous price edits.
"""
from typing import List, Optional
from pydantic import BaseModel, Field


class VariationCombination(BaseModel):
    """All variations sharing one attribute combination string."""
    combination: str = Field(description="e.g. 'color: Red | size: M'")
    variation_ids: List[int] = Field(default_factory=list)
    product_ids: List[int] = Field(default_factory=list)
    regular_price: Optional[str] = None
    sale_price: Optional[str] = None
    current_price: Optional[str] = None
    product_count: int = 0
    variation_count: int = 0
    processing: bool = Field(False, description="True while any of the variations is in an active price job")


class VariationPage(BaseModel):
    items: List[VariationCombination] = Field(default_factory=list)
    total: int = 0
    total_pages: int = 0
    page: int = 1


class VariationPriceUpdate(BaseModel):
    """Request body for the synchronous (small selection) update path."""
    variation_ids: List[int] = Field(default_factory=list)
    regular_price: str = ""
    sale_price: Optional[str] = Field(None, description="None leaves sale untouched, empty string clears it")


class VariationCountRequest(BaseModel):
    variation_ids: List[int] = Field(default_factory=list)
