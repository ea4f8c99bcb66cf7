"""Rebellion, civil war and negotiation models.

A rebellion starts in agitation, gathers supporters and turns into a civil
war once enough members back it. The civil war is fought as a Battle of
kind ``civil_war``.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from warfront.domain.enums import CivilWarStatus, CooldownType, RebellionStatus

from .base import Base, TimestampCreatedMixin, enum_column

if TYPE_CHECKING:
    from .battle import Battle
    from .community import Community, User

ACTIVE_REBELLION_PREDICATE = text("status IN ('agitation', 'battle')")


class Rebellion(Base, TimestampCreatedMixin):
    """An attempt by members to overthrow their community's ruler.

    Attributes:
        id: Primary key
        community_id: Community being agitated
        leader_id: Member who started the rebellion
        target_id: Ruler at creation time (null if the community had none)
        status: agitation, battle, success, failed or negotiated
        current_supports: Number of support rows
        required_supports: Threshold fixed at creation
        started_at: Creation time
        agitation_expires_at: Deadline for gathering support
        battle_started_at: When the civil war began
        is_leader_exiled: Leader currently exiled (agitation paused)
        exiled_at: When the leader was exiled
        cooldown_until: Community may not rebel again before this time
        cooldown_type: Why the cooldown was set
        resolved_at: When the rebellion became terminal
    """

    __tablename__ = "rebellions"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    # Foreign keys
    community_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("communities.id"), nullable=False
    )
    leader_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    target_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id"), nullable=True
    )

    # State
    status: Mapped[RebellionStatus] = mapped_column(
        enum_column(RebellionStatus), nullable=False, default=RebellionStatus.AGITATION
    )
    current_supports: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    required_supports: Mapped[int] = mapped_column(Integer, nullable=False)
    started_at: Mapped[datetime] = mapped_column(nullable=False)
    agitation_expires_at: Mapped[datetime] = mapped_column(nullable=False)
    battle_started_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Exile
    is_leader_exiled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    exiled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Cooldown and closing
    cooldown_until: Mapped[datetime | None] = mapped_column(nullable=True)
    cooldown_type: Mapped[CooldownType | None] = mapped_column(
        enum_column(CooldownType), nullable=True
    )
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Relationships
    community: Mapped["Community"] = relationship("Community")
    leader: Mapped["User"] = relationship("User", foreign_keys=[leader_id])
    target: Mapped[Optional["User"]] = relationship("User", foreign_keys=[target_id])
    supports: Mapped[list["RebellionSupport"]] = relationship(
        "RebellionSupport", back_populates="rebellion", cascade="all, delete-orphan"
    )
    civil_war: Mapped[Optional["CivilWar"]] = relationship(
        "CivilWar", back_populates="rebellion", uselist=False
    )
    negotiations: Mapped[list["RebellionNegotiation"]] = relationship(
        "RebellionNegotiation", back_populates="rebellion", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("required_supports > 0", name="ck_rebellions_required"),
        CheckConstraint("current_supports >= 0", name="ck_rebellions_current"),
        # At most one open rebellion per community
        Index(
            "uq_rebellions_active_community",
            "community_id",
            unique=True,
            sqlite_where=ACTIVE_REBELLION_PREDICATE,
            postgresql_where=ACTIVE_REBELLION_PREDICATE,
        ),
        Index("idx_rebellions_community_cooldown", "community_id", "cooldown_until"),
        Index("idx_rebellions_status_deadline", "status", "agitation_expires_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    def __repr__(self) -> str:
        return (
            f"<Rebellion(id={self.id}, community={self.community_id}, "
            f"status='{self.status}', supports={self.current_supports}/"
            f"{self.required_supports})>"
        )


class RebellionSupport(Base, TimestampCreatedMixin):
    """One member backing one rebellion."""

    __tablename__ = "rebellion_supports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    rebellion_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("rebellions.id"), nullable=False
    )
    supporter_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)

    rebellion: Mapped["Rebellion"] = relationship("Rebellion", back_populates="supports")

    __table_args__ = (
        UniqueConstraint("rebellion_id", "supporter_id", name="uq_rebellion_supports"),
    )

    def __repr__(self) -> str:
        return f"<RebellionSupport(rebellion={self.rebellion_id}, user={self.supporter_id})>"


class CivilWar(Base, TimestampCreatedMixin):
    """The fighting phase of a rebellion, paired with a civil_war Battle."""

    __tablename__ = "civil_wars"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    rebellion_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("rebellions.id"), nullable=False, unique=True
    )
    battle_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("battles.id"), nullable=False, unique=True
    )
    community_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("communities.id"), nullable=False
    )
    leader_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    ruler_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    status: Mapped[CivilWarStatus] = mapped_column(
        enum_column(CivilWarStatus), nullable=False, default=CivilWarStatus.ACTIVE
    )
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)

    rebellion: Mapped["Rebellion"] = relationship("Rebellion", back_populates="civil_war")
    battle: Mapped["Battle"] = relationship("Battle", back_populates="civil_war")

    def __repr__(self) -> str:
        return (
            f"<CivilWar(id={self.id}, rebellion={self.rebellion_id}, "
            f"battle={self.battle_id}, status='{self.status}')>"
        )


class RebellionNegotiation(Base):
    """A ruler's offer to settle a rebellion, answered by its leader."""

    __tablename__ = "rebellion_negotiations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    rebellion_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("rebellions.id"), nullable=False
    )
    ruler_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    leader_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(nullable=False)
    accepted: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    response_at: Mapped[datetime | None] = mapped_column(nullable=True)
    terms: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    rebellion: Mapped["Rebellion"] = relationship("Rebellion", back_populates="negotiations")

    __table_args__ = (Index("idx_rebellion_negotiations_rebellion", "rebellion_id"),)

    @property
    def is_pending(self) -> bool:
        return self.accepted is None

    def __repr__(self) -> str:
        return (
            f"<RebellionNegotiation(id={self.id}, rebellion={self.rebellion_id}, "
            f"accepted={self.accepted})>"
        )
