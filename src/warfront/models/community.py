"""Community, membership, user and territory models.

This module contains the aggregates the combat core reads and mutates
but does not own the full lifecycle of:
- Users (the player record carrying morale, rage, energy and military stats)
- Communities and their memberships
- Relations between communities (allied/neutral/hostile)
- Territories on the world map
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

from warfront.domain.enums import MilitaryRank, RelationType

from .base import Base, TimestampCreatedMixin, TimestampMixin, enum_column

if TYPE_CHECKING:
    from .modifier import CommunityModifierState

RULER_RANK_TIER = 0


class User(Base, TimestampMixin):
    """A player.

    The user row is the authoritative store for morale, rage and energy;
    the audit tables only mirror the deltas applied to it.

    Attributes:
        id: Primary key
        username: Unique handle
        morale: 0..100
        rage: 0..rage ceiling
        last_rage_update: When rage last changed
        energy: Action points spent per attack
        strength: Personal damage scalar
        main_community_id: Community whose modifiers apply to this user
        battles_fought/battles_won/total_damage_dealt/highest_damage_battle/
        win_streak/last_battle_win/battle_hero_medals: military ledger
        military_rank/military_rank_score: derived leaderboard values
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String, nullable=False, unique=True)

    morale: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    rage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    last_rage_update: Mapped[datetime | None] = mapped_column(nullable=True)
    energy: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    strength: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)

    main_community_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("communities.id"), nullable=True
    )

    battles_fought: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    battles_won: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_damage_dealt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    highest_damage_battle: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    win_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_battle_win: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    battle_hero_medals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    military_rank: Mapped[MilitaryRank] = mapped_column(
        enum_column(MilitaryRank), nullable=False, default=MilitaryRank.RECRUIT
    )
    military_rank_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    main_community: Mapped[Optional["Community"]] = relationship("Community")
    memberships: Mapped[list["CommunityMember"]] = relationship(
        "CommunityMember", back_populates="user", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("morale >= 0 AND morale <= 100", name="ck_users_morale"),
        CheckConstraint("rage >= 0", name="ck_users_rage"),
        CheckConstraint("energy >= 0", name="ck_users_energy"),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username='{self.username}', morale={self.morale})>"


class Community(Base, TimestampCreatedMixin):
    """A player community that owns territory and has a ruler.

    Attributes:
        id: Primary key
        name: Unique display name
        slug: URL-safe identifier
    """

    __tablename__ = "communities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    slug: Mapped[str] = mapped_column(String, nullable=False, unique=True)

    members: Mapped[list["CommunityMember"]] = relationship(
        "CommunityMember", back_populates="community", cascade="all, delete-orphan"
    )
    territories: Mapped[list["Territory"]] = relationship(
        "Territory", back_populates="owner"
    )
    modifier_state: Mapped[Optional["CommunityModifierState"]] = relationship(
        "CommunityModifierState", back_populates="community", uselist=False
    )
    relations_from: Mapped[list["CommunityRelation"]] = relationship(
        "CommunityRelation",
        back_populates="community",
        foreign_keys="CommunityRelation.community_id",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Community(id={self.id}, name='{self.name}')>"


class CommunityMember(Base):
    """Membership of a user in a community.

    ``rank_tier`` 0 is the ruler, 1 the advisor tier, larger numbers are
    ordinary members (10 by default).
    """

    __tablename__ = "community_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    community_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("communities.id"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    rank_tier: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    joined_at: Mapped[datetime] = mapped_column(nullable=False)

    community: Mapped["Community"] = relationship("Community", back_populates="members")
    user: Mapped["User"] = relationship("User", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("community_id", "user_id", name="uq_community_members"),
        CheckConstraint("rank_tier >= 0", name="ck_community_members_rank"),
        Index("idx_community_members_user", "user_id"),
    )

    @property
    def is_ruler(self) -> bool:
        return self.rank_tier == RULER_RANK_TIER

    def __repr__(self) -> str:
        return (
            f"<CommunityMember(community={self.community_id}, user={self.user_id}, "
            f"rank_tier={self.rank_tier})>"
        )


class CommunityRelation(Base):
    """Directed diplomatic relation between two communities.

    A pair is considered at war when either direction is hostile.
    """

    __tablename__ = "community_relations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    community_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("communities.id"), nullable=False
    )
    other_community_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("communities.id"), nullable=False
    )
    relation_type: Mapped[RelationType] = mapped_column(
        enum_column(RelationType), nullable=False
    )
    since: Mapped[datetime] = mapped_column(nullable=False)

    community: Mapped["Community"] = relationship(
        "Community", back_populates="relations_from", foreign_keys=[community_id]
    )
    other_community: Mapped["Community"] = relationship(
        "Community", foreign_keys=[other_community_id]
    )

    __table_args__ = (
        UniqueConstraint("community_id", "other_community_id", name="uq_community_relations"),
    )

    def __repr__(self) -> str:
        return (
            f"<CommunityRelation(community={self.community_id}, "
            f"other={self.other_community_id}, type='{self.relation_type}')>"
        )


class Territory(Base):
    """A map hex that a community can own.

    Ownership changes only when an attacker wins a conquest battle on it.
    """

    __tablename__ = "territories"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    owner_community_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("communities.id"), nullable=True
    )
    defense_baseline: Mapped[int] = mapped_column(Integer, nullable=False, default=10000)
    is_capital: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_conquered_at: Mapped[datetime | None] = mapped_column(nullable=True)

    owner: Mapped[Optional["Community"]] = relationship("Community", back_populates="territories")

    __table_args__ = (
        CheckConstraint("defense_baseline > 0", name="ck_territories_defense"),
        Index("idx_territories_owner", "owner_community_id"),
    )

    def __repr__(self) -> str:
        return f"<Territory(id='{self.id}', owner={self.owner_community_id})>"
