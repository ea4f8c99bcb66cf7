"""Per-community combat modifier state."""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin

if TYPE_CHECKING:
    from .community import Community


class CommunityModifierState(Base, TimestampMixin):
    """Disarray, momentum and exhaustion flags for one community.

    ``conquest_timestamps`` holds ISO-8601 strings of recent conquests,
    newest last, and never grows past the exhaustion window capacity.
    """

    __tablename__ = "community_modifier_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    community_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("communities.id"), nullable=False, unique=True
    )

    # Disarray
    disarray_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    disarray_started_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Momentum
    momentum_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    momentum_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Exhaustion
    exhaustion_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    exhaustion_started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    conquest_timestamps: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    last_conquest_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Counters
    current_win_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_conquests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    community: Mapped["Community"] = relationship("Community", back_populates="modifier_state")

    def __repr__(self) -> str:
        return (
            f"<CommunityModifierState(community={self.community_id}, "
            f"disarray={self.disarray_active}, momentum={self.momentum_active}, "
            f"exhaustion={self.exhaustion_active})>"
        )
