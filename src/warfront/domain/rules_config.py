"""Declarative game tuning for the combat core."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class BattleRules:
    """Battle window, energy and damage constants."""

    duration_hours: int = 1
    default_defense: int = 10000
    civil_war_defense: int = 10000
    civil_war_duration_hours: int = 1
    base_energy_cost: int = 10
    energy_cap: int = 100
    max_raw_damage: int = 100000
    rank_damage_bonus: float = 0.05  # per military rank index


@dataclass(frozen=True, slots=True)
class RebellionRules:
    """Uprising eligibility, thresholds and cooldowns."""

    agitation_hours: int = 1
    support_ratio: float = 0.2
    personal_morale_threshold: int = 50
    community_morale_threshold: int = 30
    exile_cooldown_hours: int = 1
    exile_morale_penalty: int = 15
    failure_cooldown_hours: int = 48
    negotiation_cooldown_hours: int = 72
    supporter_morale_bonus: int = 20
    loyalist_morale_penalty: int = 10
    reinvite_max_rank_tier: int = 1
    restored_rank_tier: int = 10
    member_rank_tier: int = 10
    uprising_morale_cost: int = 5
    support_morale_bonus: int = 3


@dataclass(frozen=True, slots=True)
class FocusRules:
    """Accuracy gate: the chance that an action lands scales with morale."""

    enabled: bool = True
    morale_ratio: float = 1.0


@dataclass(frozen=True, slots=True)
class AdrenalineRules:
    """Final-stand rage bonus for defenders who are being out-damaged.

    The window is the last ``final_stand_window_percent`` of the battle.
    """

    enabled: bool = True
    final_stand_window_percent: float = 33.0
    damage_threshold_ratio: float = 2.0
    rage_per_percent_time: float = 1.0
    max_rage: float = 33.0


@dataclass(frozen=True, slots=True)
class DisarrayRules:
    """Energy penalty after losing a battle."""

    enabled: bool = True
    ceiling: float = 3.0
    duration_hours: int = 12


@dataclass(frozen=True, slots=True)
class MomentumRules:
    """Morale bonus after winning a conquest."""

    enabled: bool = True
    duration_hours: int = 12
    morale_bonus: int = 15


@dataclass(frozen=True, slots=True)
class ExhaustionRules:
    """Energy regeneration penalty for rapid expansion."""

    enabled: bool = True
    conquest_threshold: int = 2
    reset_hours: int = 12
    regen_multiplier: float = 0.5
    base_energy_regen: int = 10
    window_capacity_factor: int = 4

    @property
    def window_capacity(self) -> int:
        return self.conquest_threshold * self.window_capacity_factor


@dataclass(frozen=True, slots=True)
class RageRules:
    """Rage gain, decay and critical hit constants."""

    enabled: bool = True
    ceiling: float = 100.0
    decay_per_tick: float = 5.0
    morale_scaling: bool = True
    crit_multiplier: float = 3.0
    territory_lost: float = 10.0
    capital_lost: float = 20.0
    ally_defeated: float = 15.0
    battle_lost: float = 10.0
    under_attack: float = 5.0


@dataclass(frozen=True, slots=True)
class MoraleRules:
    """Morale bounds and battle outcome deltas."""

    minimum: int = 0
    maximum: int = 100
    neutral: int = 50
    defeat_penalty: int = 10
    battle_hero_bonus: int = 3


@dataclass(frozen=True, slots=True)
class RankingRules:
    """Military rank score formula and thresholds."""

    won_damage_factor: float = 0.1
    hero_medal_score: int = 5000
    streak_bonus_per_win: float = 0.02
    streak_bonus_cap: float = 0.2
    battle_hero_gold: int = 3
    thresholds: tuple[tuple[str, int], ...] = (
        ("Recruit", 0),
        ("Private", 1000),
        ("Corporal", 5000),
        ("Sergeant", 15000),
        ("Lieutenant", 35000),
        ("Captain", 75000),
        ("Major", 150000),
        ("Colonel", 300000),
        ("General", 600000),
    )


@dataclass(frozen=True, slots=True)
class RulesConfig:
    """Top-level configuration container for all subsystems.

    ``community_overrides`` maps a community id to a complete rules set that
    replaces the global one for that community's combat mechanics.
    """

    battle: BattleRules = BattleRules()
    rebellion: RebellionRules = RebellionRules()
    focus: FocusRules = FocusRules()
    adrenaline: AdrenalineRules = AdrenalineRules()
    disarray: DisarrayRules = DisarrayRules()
    momentum: MomentumRules = MomentumRules()
    exhaustion: ExhaustionRules = ExhaustionRules()
    rage: RageRules = RageRules()
    morale: MoraleRules = MoraleRules()
    ranking: RankingRules = RankingRules()
    community_overrides: Mapping[int, RulesConfig] = field(default_factory=dict)

    def for_community(self, community_id: int | None) -> RulesConfig:
        """Rules for one community, falling back to the global rules."""
        if community_id is None:
            return self
        return self.community_overrides.get(community_id, self)


DEFAULT_RULES = RulesConfig()
