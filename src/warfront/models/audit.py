"""Append-only audit logs for morale and rage changes.

The authoritative values live on ``User``; these rows only mirror what was
applied and why.
"""

from typing import Any

from sqlalchemy import JSON, Float, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampCreatedMixin


class MoraleEvent(Base, TimestampCreatedMixin):
    """One applied morale delta."""

    __tablename__ = "morale_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    new_value: Mapped[int] = mapped_column(Integer, nullable=False)
    trigger: Mapped[str] = mapped_column(String, nullable=False)
    context: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (Index("idx_morale_events_user", "user_id", "created_at"),)

    def __repr__(self) -> str:
        return f"<MoraleEvent(user={self.user_id}, delta={self.delta}, trigger='{self.trigger}')>"


class RageEvent(Base, TimestampCreatedMixin):
    """One applied rage delta."""

    __tablename__ = "rage_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    delta: Mapped[float] = mapped_column(Float, nullable=False)
    new_value: Mapped[float] = mapped_column(Float, nullable=False)
    trigger: Mapped[str] = mapped_column(String, nullable=False)
    context: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (Index("idx_rage_events_user", "user_id", "created_at"),)

    def __repr__(self) -> str:
        return f"<RageEvent(user={self.user_id}, delta={self.delta}, trigger='{self.trigger}')>"
