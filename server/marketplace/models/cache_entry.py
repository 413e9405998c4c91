"""Persistent cache tier model."""

from datetime import datetime

from sqlalchemy import CheckConstraint, Float, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base


class CacheEntry(Base):
    """One cached value, serialised as JSON, with an absolute expiry."""

    __tablename__ = "cache_entries"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)

    # Epoch seconds, compared against the cache clock
    expires_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)

    created_at: Mapped[datetime] = mapped_column(
        nullable=False,
        server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("length(key) > 0", name="ck_cache_entry_key_not_empty"),
    )

    def __repr__(self) -> str:
        return f"<CacheEntry(key='{self.key}', expires_at={self.expires_at})>"
