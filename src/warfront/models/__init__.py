"""SQLAlchemy models for the Warfront combat core.

This module exports all database models and the declarative base.
"""

# Audit logs
from .audit import MoraleEvent, RageEvent

# Base classes
from .base import Base, TimestampCreatedMixin, TimestampMixin, UTCDateTime, utc_now

# Battle models
from .battle import Battle, BattleActionLog, BattleParticipant

# Community models
from .community import (
    RULER_RANK_TIER,
    Community,
    CommunityMember,
    CommunityRelation,
    Territory,
    User,
)

# Modifier state
from .modifier import CommunityModifierState

# Rebellion models
from .rebellion import CivilWar, Rebellion, RebellionNegotiation, RebellionSupport

__all__ = [
    "RULER_RANK_TIER",
    "Base",
    "Battle",
    "BattleActionLog",
    "BattleParticipant",
    "CivilWar",
    "Community",
    "CommunityMember",
    "CommunityModifierState",
    "CommunityRelation",
    "MoraleEvent",
    "RageEvent",
    "Rebellion",
    "RebellionNegotiation",
    "RebellionSupport",
    "Territory",
    "TimestampCreatedMixin",
    "TimestampMixin",
    "UTCDateTime",
    "User",
    "utc_now",
]
