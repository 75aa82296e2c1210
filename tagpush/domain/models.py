from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class DeviceToken(Base):
    __tablename__ = "device_tokens"
    __table_args__ = (
        Index("ix_device_tokens_locale", "locale"),
    )

    # The push token is the identity; registration is an upsert keyed on it.
    token: Mapped[str] = mapped_column(String, primary_key=True)
    platform: Mapped[str] = mapped_column(String, default="ios", nullable=False)
    locale: Mapped[str] = mapped_column(String, default="en", nullable=False)
    last_active_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    tags: Mapped[list["DeviceTag"]] = relationship(
        back_populates="device",
        cascade="all, delete-orphan",
        order_by="DeviceTag.id",
        lazy="selectin",
    )

    @property
    def tag_names(self) -> list[str]:
        return [row.tag for row in self.tags]


class DeviceTag(Base):
    __tablename__ = "device_tags"
    __table_args__ = (
        UniqueConstraint("token", "tag", name="uq_device_tags_token_tag"),
        Index("ix_device_tags_tag", "tag"),
    )

    # Autoincrement ids preserve the order tags were attached in.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token: Mapped[str] = mapped_column(
        String, ForeignKey("device_tokens.token", ondelete="CASCADE"), nullable=False
    )
    tag: Mapped[str] = mapped_column(String, nullable=False)

    device: Mapped[DeviceToken] = relationship(back_populates="tags")
