from __future__ import annotations
"""SQLAlchemy models for catalog items (products, variations) and their meta fields."""
from sqlalchemy import Integer, String, Text, DateTime, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import relationship, Mapped, mapped_column
from sqlalchemy.sql import func
from price_manager.database import Base


class CatalogItem(Base):
    __tablename__ = "catalog_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    # Variations point at their parent product; products have no parent.
    parent_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("catalog_items.id"), nullable=True, index=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="publish", index=True)
    title: Mapped[str | None] = mapped_column(String, nullable=True)
    modified_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    parent: Mapped["CatalogItem | None"] = relationship("CatalogItem", remote_side=[id], back_populates="variations")
    variations: Mapped[list["CatalogItem"]] = relationship("CatalogItem", back_populates="parent")
    meta: Mapped[list["ItemMeta"]] = relationship("ItemMeta", back_populates="item", cascade="all, delete-orphan")


class ItemMeta(Base):
    __tablename__ = "item_meta"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    item_id: Mapped[int] = mapped_column(Integer, ForeignKey("catalog_items.id"), nullable=False)
    meta_key: Mapped[str] = mapped_column(String(255), nullable=False)
    meta_value: Mapped[str | None] = mapped_column(Text, nullable=True)

    item: Mapped["CatalogItem"] = relationship("CatalogItem", back_populates="meta")

    # One row per (item, key); price writes rely on it for upserts
    __table_args__ = (
        UniqueConstraint("item_id", "meta_key", name="unique_item_meta_key"),
        Index("ix_item_meta_key_item", "meta_key", "item_id"),
    )
