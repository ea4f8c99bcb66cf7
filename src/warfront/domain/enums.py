"""Closed status and tag enumerations for the Warfront domain."""

from __future__ import annotations

from enum import StrEnum


class BattleKind(StrEnum):
    """What a battle is fought over."""

    CONQUEST = "conquest"
    CIVIL_WAR = "civil_war"


class BattleStatus(StrEnum):
    """Battle lifecycle; only ACTIVE is non-terminal."""

    ACTIVE = "active"
    ATTACKER_WON = "attacker_won"
    DEFENDER_WON = "defender_won"

    @property
    def is_terminal(self) -> bool:
        return self is not BattleStatus.ACTIVE


class BattleSide(StrEnum):
    ATTACKER = "attacker"
    DEFENDER = "defender"

    @property
    def opponent(self) -> BattleSide:
        return BattleSide.DEFENDER if self is BattleSide.ATTACKER else BattleSide.ATTACKER


class RebellionStatus(StrEnum):
    """Rebellion lifecycle states."""

    AGITATION = "agitation"
    BATTLE = "battle"
    SUCCESS = "success"
    FAILED = "failed"
    NEGOTIATED = "negotiated"

    @property
    def is_active(self) -> bool:
        return self in (RebellionStatus.AGITATION, RebellionStatus.BATTLE)


class CivilWarStatus(StrEnum):
    ACTIVE = "active"
    REBELS_WON = "rebels_won"
    RULERS_WON = "rulers_won"
    NEGOTIATED = "negotiated"


class CooldownType(StrEnum):
    """Why a community may not start a new rebellion yet."""

    EXILE = "exile"
    FAILURE = "failure"
    NEGOTIATION = "negotiation"


class RelationType(StrEnum):
    """Community relationship states."""

    ALLIED = "allied"
    NEUTRAL = "neutral"
    HOSTILE = "hostile"


class RageTrigger(StrEnum):
    """Community-scoped events that feed a member's rage."""

    TERRITORY_LOST = "territory_lost"
    CAPITAL_LOST = "capital_lost"
    ALLY_DEFEATED = "ally_defeated"
    BATTLE_LOST = "battle_lost"
    UNDER_ATTACK = "under_attack"
    DECAY = "decay"


class MoraleTrigger(StrEnum):
    """Tags written to the morale audit log."""

    VICTORY_MOMENTUM = "victory_momentum"
    DEFEAT = "defeat"
    EXILE_ORDERED = "exile_ordered"
    NEGOTIATION_SETTLED = "negotiation_settled"
    REBELLION_SUPPORTER = "rebellion_supporter"
    REBELLION_LOYALIST = "rebellion_loyalist"
    BATTLE_HERO = "medal:battle_hero"
    UPRISING_STARTED = "uprising:started"
    UPRISING_SUPPORT = "uprising:support"
    ADMIN = "admin"


class MilitaryRank(StrEnum):
    """Military ranks in ascending order of score."""

    RECRUIT = "Recruit"
    PRIVATE = "Private"
    CORPORAL = "Corporal"
    SERGEANT = "Sergeant"
    LIEUTENANT = "Lieutenant"
    CAPTAIN = "Captain"
    MAJOR = "Major"
    COLONEL = "Colonel"
    GENERAL = "General"

    @property
    def index(self) -> int:
        return list(MilitaryRank).index(self)


def sql_in(enum_cls: type[StrEnum]) -> str:
    """Render ``'a', 'b'`` for CHECK constraints built from an enum."""

    return ", ".join(f"'{member.value}'" for member in enum_cls)
