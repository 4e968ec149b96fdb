"""Usage ledger rows."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from storage_reconciler.models.base import Base
from storage_reconciler.models.enums import UsageOperation


class StorageUsageEvent(Base):
    """One append-only upload or delete event.

    Rows are never updated or deleted. `size_bytes` is NULL when the size was
    not measured; it is never stored as 0 in that case.
    """

    __tablename__ = "storage_usage"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(255), index=True)
    file_key: Mapped[str] = mapped_column(Text, index=True)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger)
    operation: Mapped[UsageOperation] = mapped_column()
    category: Mapped[str | None] = mapped_column(String(32))  # photo, hero, profile
    reason: Mapped[str | None] = mapped_column(String(255))
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )
