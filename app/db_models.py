"""ORM model for cached catalogs."""

from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, Float, String
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


class CacheRecord(Base):
    """One cached catalog, keyed by its full cache key."""

    __tablename__ = "catalog_cache"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    config_hash: Mapped[str] = mapped_column(String(64))
    catalog: Mapped[dict[str, Any]] = mapped_column(JSON)
    generated_at: Mapped[float] = mapped_column(Float)
    expires_at: Mapped[float] = mapped_column(Float, index=True)
