"""Hero banner models."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from storage_reconciler.models.base import Base


class HeroImage(Base):
    """A shared hero banner stored under global/hero-images/."""

    __tablename__ = "hero_images"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    url: Mapped[str | None] = mapped_column(Text)
    image_url: Mapped[str | None] = mapped_column(Text)  # Legacy column
    name: Mapped[str | None] = mapped_column(Text)
    added_by: Mapped[str | None] = mapped_column(String(255))
    user_id: Mapped[str | None] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UserHeroSelection(Base):
    """A photographer's chosen hero banner.

    Either points at a shared HeroImage by id or embeds a custom image URL.
    """

    __tablename__ = "user_hero_selections"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    hero_image_id: Mapped[str | None] = mapped_column(ForeignKey("hero_images.id"))
    custom_image_url: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
