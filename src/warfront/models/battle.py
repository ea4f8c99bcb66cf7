"""Battle models for the Warfront combat core.

This module contains the models for battles, their participants and the
raw log of damage actions. Battles are kept forever as history.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from warfront.domain.enums import BattleKind, BattleSide, BattleStatus

from .base import Base, TimestampCreatedMixin, enum_column

if TYPE_CHECKING:
    from .community import Community, Territory, User
    from .rebellion import CivilWar


class Battle(Base, TimestampCreatedMixin):
    """A time-boxed fight over a territory or a community's leadership.

    Attributes:
        id: Primary key
        kind: conquest or civil_war
        territory_id: Contested hex (null for civil wars)
        attacker_community_id: Attacking community
        defender_community_id: Defending community (null for unclaimed land)
        started_at/ends_at: Battle window
        initial_defense: Defense at creation, upper bound for repairs
        current_defense: Remaining defense points
        attacker_score/defender_score: Cumulative effective damage per side
        status: active, attacker_won or defender_won
        resolved_at: When the battle became terminal
        rankings_processed_at: Set once the resolution cascade has run
    """

    __tablename__ = "battles"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    # Foreign keys
    territory_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("territories.id"), nullable=True
    )
    attacker_community_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("communities.id"), nullable=False
    )
    defender_community_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("communities.id"), nullable=True
    )

    # Battle attributes
    kind: Mapped[BattleKind] = mapped_column(
        enum_column(BattleKind), nullable=False, default=BattleKind.CONQUEST
    )
    started_at: Mapped[datetime] = mapped_column(nullable=False)
    ends_at: Mapped[datetime] = mapped_column(nullable=False)
    initial_defense: Mapped[int] = mapped_column(Integer, nullable=False)
    current_defense: Mapped[int] = mapped_column(Integer, nullable=False)
    attacker_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    defender_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Lifecycle
    status: Mapped[BattleStatus] = mapped_column(
        enum_column(BattleStatus), nullable=False, default=BattleStatus.ACTIVE
    )
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rankings_processed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Relationships
    territory: Mapped[Optional["Territory"]] = relationship("Territory")
    attacker_community: Mapped["Community"] = relationship(
        "Community", foreign_keys=[attacker_community_id]
    )
    defender_community: Mapped[Optional["Community"]] = relationship(
        "Community", foreign_keys=[defender_community_id]
    )
    participants: Mapped[list["BattleParticipant"]] = relationship(
        "BattleParticipant", back_populates="battle", cascade="all, delete-orphan"
    )
    civil_war: Mapped[Optional["CivilWar"]] = relationship(
        "CivilWar", back_populates="battle", uselist=False
    )

    __table_args__ = (
        CheckConstraint("current_defense >= 0", name="ck_battles_defense_floor"),
        CheckConstraint(
            "current_defense <= initial_defense", name="ck_battles_defense_ceiling"
        ),
        CheckConstraint("initial_defense > 0", name="ck_battles_initial_defense"),
        CheckConstraint("ends_at > started_at", name="ck_battles_window"),
        Index("idx_battles_status_ends", "status", "ends_at"),
        Index("idx_battles_territory_status", "territory_id", "status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status is BattleStatus.ACTIVE

    @property
    def winner_side(self) -> BattleSide | None:
        if self.status is BattleStatus.ATTACKER_WON:
            return BattleSide.ATTACKER
        if self.status is BattleStatus.DEFENDER_WON:
            return BattleSide.DEFENDER
        return None

    def __repr__(self) -> str:
        return (
            f"<Battle(id={self.id}, kind='{self.kind}', status='{self.status}', "
            f"defense={self.current_defense}/{self.initial_defense})>"
        )


class BattleParticipant(Base):
    """Cumulative contribution of one user to one battle."""

    __tablename__ = "battle_participants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    battle_id: Mapped[int] = mapped_column(Integer, ForeignKey("battles.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    side: Mapped[BattleSide] = mapped_column(enum_column(BattleSide), nullable=False)
    damage_dealt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    actions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    won: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    joined_at: Mapped[datetime] = mapped_column(nullable=False)

    battle: Mapped["Battle"] = relationship("Battle", back_populates="participants")
    user: Mapped["User"] = relationship("User")

    __table_args__ = (
        UniqueConstraint("battle_id", "user_id", name="uq_battle_participants"),
        CheckConstraint("damage_dealt >= 0", name="ck_battle_participants_damage"),
    )

    def __repr__(self) -> str:
        return (
            f"<BattleParticipant(battle={self.battle_id}, user={self.user_id}, "
            f"side='{self.side}', damage={self.damage_dealt})>"
        )


class BattleActionLog(Base, TimestampCreatedMixin):
    """Append-only record of every accepted damage action, misses included."""

    __tablename__ = "battle_action_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    battle_id: Mapped[int] = mapped_column(Integer, ForeignKey("battles.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    side: Mapped[BattleSide] = mapped_column(enum_column(BattleSide), nullable=False)
    raw_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    effective_damage: Mapped[int] = mapped_column(Integer, nullable=False)
    hit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_critical: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    energy_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    disarray_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    defense_after: Mapped[int] = mapped_column(Integer, nullable=False)
    adrenaline_bonus: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    __table_args__ = (Index("idx_battle_action_logs_battle", "battle_id", "user_id"),)

    def __repr__(self) -> str:
        return (
            f"<BattleActionLog(battle={self.battle_id}, user={self.user_id}, "
            f"hit={self.hit}, damage={self.effective_damage}, critical={self.is_critical})>"
        )
