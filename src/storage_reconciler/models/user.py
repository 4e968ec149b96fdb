"""User model (profile-image pointer only)."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from storage_reconciler.models.base import Base


class User(Base):
    """A platform account.

    Only the columns the reconciler reads are mapped. The profile image
    pointer is cleared, never the row, when its blob has vanished.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), unique=True)
    profile_image_url: Mapped[str | None] = mapped_column(String(2048))
    role: Mapped[str] = mapped_column(String(32), default="user")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
