from __future__ import annotations
"""SQLAlchemy model backing the key/value job record store."""
from sqlalchemy import Integer, String, Float, JSON
from sqlalchemy.orm import Mapped, mapped_column
from price_manager.database import Base


class JobRecordRow(Base):
    __tablename__ = "job_records"
    key: Mapped[str] = mapped_column(String(191), primary_key=True)
    value: Mapped[dict] = mapped_column(JSON, nullable=False)
    # Incremented on every write; compare-and-set matches on it
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # Denormalized from value["status"] so active jobs are an indexed lookup
    status: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    updated_at: Mapped[float | None] = mapped_column(Float, nullable=True, index=True)
