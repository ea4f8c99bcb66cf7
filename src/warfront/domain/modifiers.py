"""Pure combat modifier formulas.

Nothing here touches the database; services feed in stored values and the
current time and persist whatever comes back.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import datetime, timedelta

from warfront.domain.enums import MilitaryRank, RageTrigger
from warfront.domain.rules_config import (
    DEFAULT_RULES,
    AdrenalineRules,
    BattleRules,
    DisarrayRules,
    ExhaustionRules,
    FocusRules,
    MoraleRules,
    RageRules,
)
from warfront.utils.rng import roll_percent


def disarray_multiplier(
    started_at: datetime | None,
    now: datetime,
    rules: DisarrayRules = DEFAULT_RULES.disarray,
) -> float:
    """Energy cost multiplier that decays linearly from the ceiling to 1.0."""

    if not rules.enabled or started_at is None:
        return 1.0
    hours = max(0.0, (now - started_at).total_seconds() / 3600)
    if hours >= rules.duration_hours:
        return 1.0
    multiplier = rules.ceiling - (hours / rules.duration_hours) * (rules.ceiling - 1.0)
    return max(1.0, min(rules.ceiling, multiplier))


def disarray_expired(
    started_at: datetime | None,
    now: datetime,
    rules: DisarrayRules = DEFAULT_RULES.disarray,
) -> bool:
    if started_at is None:
        return True
    return now - started_at >= timedelta(hours=rules.duration_hours)


def energy_cost(base_cost: int, multiplier: float) -> int:
    return math.ceil(base_cost * multiplier)


def rank_damage_multiplier(
    rank: MilitaryRank, rules: BattleRules = DEFAULT_RULES.battle
) -> float:
    return 1.0 + rules.rank_damage_bonus * rank.index


def effective_damage(raw_amount: int, rank_multiplier: float, crit_multiplier: float) -> int:
    return math.floor(raw_amount * rank_multiplier * crit_multiplier)


def focus_chance(morale: int, rules: FocusRules = DEFAULT_RULES.focus) -> float:
    """Percent chance that an action lands; always 100 when focus is off."""

    if not rules.enabled:
        return 100.0
    return max(0.0, min(100.0, morale * rules.morale_ratio))


def focus_hit(focus: float, seed: str) -> bool:
    return roll_percent(seed, focus)["success"]


def critical_hit(rage: float, seed: str) -> bool:
    """Roll a critical hit with a chance of ``rage`` percent."""

    return roll_percent(seed, rage)["success"]


def rage_gain(base: float, morale: int, rules: RageRules = DEFAULT_RULES.rage) -> float:
    """Scale a base rage gain up as morale drops.

    At morale 0 the gain is doubled, at morale 100 it is unchanged.
    """

    if not rules.morale_scaling:
        return base
    return base * (1 + (100 - morale) / 100)


def rage_trigger_base(trigger: RageTrigger, rules: RageRules = DEFAULT_RULES.rage) -> float:
    magnitudes = {
        RageTrigger.TERRITORY_LOST: rules.territory_lost,
        RageTrigger.CAPITAL_LOST: rules.capital_lost,
        RageTrigger.ALLY_DEFEATED: rules.ally_defeated,
        RageTrigger.BATTLE_LOST: rules.battle_lost,
        RageTrigger.UNDER_ATTACK: rules.under_attack,
    }
    return magnitudes.get(trigger, 0.0)


def clamp_rage(value: float, rules: RageRules = DEFAULT_RULES.rage) -> float:
    return max(0.0, min(rules.ceiling, value))


def clamp_morale(value: int, rules: MoraleRules = DEFAULT_RULES.morale) -> int:
    return max(rules.minimum, min(rules.maximum, value))


def parse_window(raw: Iterable[str]) -> list[datetime]:
    return [datetime.fromisoformat(item) for item in raw]


def dump_window(window: Iterable[datetime]) -> list[str]:
    return [item.isoformat() for item in window]


def trim_conquest_window(
    window: Iterable[datetime],
    now: datetime,
    rules: ExhaustionRules = DEFAULT_RULES.exhaustion,
) -> list[datetime]:
    """Keep conquests inside the reset window, newest last, bounded in size."""

    cutoff = now - timedelta(hours=rules.reset_hours)
    recent = sorted(ts for ts in window if ts > cutoff)
    return recent[-rules.window_capacity :]


def record_conquest(
    window: Iterable[datetime],
    now: datetime,
    rules: ExhaustionRules = DEFAULT_RULES.exhaustion,
) -> list[datetime]:
    return trim_conquest_window([*window, now], now, rules)


def is_exhausted(window: list[datetime], rules: ExhaustionRules = DEFAULT_RULES.exhaustion) -> bool:
    return rules.enabled and len(window) >= rules.conquest_threshold


def energy_regen(exhausted: bool, rules: ExhaustionRules = DEFAULT_RULES.exhaustion) -> int:
    if exhausted and rules.enabled:
        return math.floor(rules.base_energy_regen * rules.regen_multiplier)
    return rules.base_energy_regen


def battle_progress(started_at: datetime, ends_at: datetime, now: datetime) -> float:
    """Percent of the battle window that has elapsed."""

    total = (ends_at - started_at).total_seconds()
    if total <= 0:
        return 100.0
    return (now - started_at).total_seconds() / total * 100


def defenders_outdamaged(attacker_score: int, defender_score: int, threshold_ratio: float) -> bool:
    if attacker_score <= 0:
        return False
    if defender_score <= 0:
        return True
    return attacker_score / defender_score >= threshold_ratio


def adrenaline_bonus(
    started_at: datetime,
    ends_at: datetime,
    attacker_score: int,
    defender_score: int,
    now: datetime,
    rules: AdrenalineRules = DEFAULT_RULES.adrenaline,
) -> float:
    """Bonus rage for a defender fighting in the final stand.

    The bonus grows with the share of the battle spent inside the final
    stand window and only applies while the attackers out-damage the
    defenders by ``damage_threshold_ratio``.
    """

    if not rules.enabled:
        return 0.0
    progress = battle_progress(started_at, ends_at, now)
    threshold = 100 - rules.final_stand_window_percent
    if progress < threshold or progress > 100:
        return 0.0
    if not defenders_outdamaged(attacker_score, defender_score, rules.damage_threshold_ratio):
        return 0.0
    bonus = math.floor((progress - threshold) * rules.rage_per_percent_time)
    return float(max(0, min(rules.max_rage, bonus)))
