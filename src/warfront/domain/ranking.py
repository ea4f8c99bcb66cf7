"""Military rank score and rank thresholds."""

from __future__ import annotations

import math
from dataclasses import dataclass

from warfront.domain.enums import MilitaryRank
from warfront.domain.rules_config import DEFAULT_RULES, RankingRules


@dataclass(slots=True)
class MilitaryRecord:
    """The subset of a user's military ledger the score depends on."""

    battles_fought: int = 0
    battles_won: int = 0
    total_damage_dealt: int = 0
    highest_damage_battle: int = 0
    win_streak: int = 0
    battle_hero_medals: int = 0
    last_battle_win: bool | None = None


def apply_battle(record: MilitaryRecord, damage: int, won: bool) -> MilitaryRecord:
    """Fold one finished battle into a military record (in place)."""

    record.battles_fought += 1
    record.total_damage_dealt += damage
    record.highest_damage_battle = max(record.highest_damage_battle, damage)
    if won:
        record.battles_won += 1
        record.win_streak += 1
    else:
        record.win_streak = 0
    record.last_battle_win = won
    return record


def rank_score(record: MilitaryRecord, rules: RankingRules = DEFAULT_RULES.ranking) -> int:
    """Score = damage + won-battle bonus + medals, boosted by the win streak."""

    score = record.total_damage_dealt
    if record.battles_fought > 0 and record.battles_won > 0:
        average = record.total_damage_dealt / record.battles_fought
        score += math.floor(record.battles_won * average * rules.won_damage_factor)
    score += record.battle_hero_medals * rules.hero_medal_score
    streak_bonus = min(record.win_streak * rules.streak_bonus_per_win, rules.streak_bonus_cap)
    score += math.floor(score * streak_bonus)
    return score


def rank_for_score(score: int, rules: RankingRules = DEFAULT_RULES.ranking) -> MilitaryRank:
    rank = MilitaryRank.RECRUIT
    for name, threshold in rules.thresholds:
        if score >= threshold:
            rank = MilitaryRank(name)
    return rank
