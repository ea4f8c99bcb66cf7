"""Events and result records passed between services.

Events are immutable facts; reports and results are the return values of
service operations and are serialised directly by the HTTP layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from warfront.domain.enums import BattleKind, BattleSide, BattleStatus, RebellionStatus


@dataclass(frozen=True, slots=True)
class ParticipantOutcome:
    user_id: int
    side: BattleSide
    damage_dealt: int


@dataclass(frozen=True, slots=True)
class BattleResolved:
    """A battle has just become terminal."""

    battle_id: int
    kind: BattleKind
    status: BattleStatus
    winner_side: BattleSide
    winner_community_id: int | None
    loser_community_id: int | None
    territory_id: str | None
    was_capital: bool
    resolved_at: datetime
    participants: tuple[ParticipantOutcome, ...] = ()

    @property
    def is_civil_war(self) -> bool:
        return self.kind is BattleKind.CIVIL_WAR

    def winners(self) -> list[ParticipantOutcome]:
        return [p for p in self.participants if p.side is self.winner_side]

    def losers(self) -> list[ParticipantOutcome]:
        return [p for p in self.participants if p.side is not self.winner_side]


@dataclass(frozen=True, slots=True)
class TerritoryOwnershipChanged:
    territory_id: str
    previous_owner_id: int | None
    new_owner_id: int
    battle_id: int
    changed_at: datetime


@dataclass(frozen=True, slots=True)
class RankScoreUpdated:
    user_id: int
    score: int
    rank: str
    battle_id: int


@dataclass(frozen=True, slots=True)
class SideEffectFailure:
    """A best-effort handler that raised; the primary transition still stands."""

    handler: str
    battle_id: int
    error: str


@dataclass(slots=True)
class CascadeReport:
    battle_id: int
    handlers_run: list[str] = field(default_factory=list)
    failures: list[SideEffectFailure] = field(default_factory=list)
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass(frozen=True, slots=True)
class DamageResult:
    battle_id: int
    side: BattleSide
    damage: int
    critical: bool
    energy_cost: int
    current_defense: int
    attacker_score: int
    defender_score: int
    status: BattleStatus
    hit: bool = True
    focus: float = 100.0
    adrenaline_bonus: float = 0.0


@dataclass(frozen=True, slots=True)
class UprisingStarted:
    rebellion_id: int
    required_supports: int
    civil_war_id: int | None = None


@dataclass(frozen=True, slots=True)
class SupportResult:
    current_supports: int
    required_supports: int
    civil_war_started: bool
    civil_war_id: int | None = None


@dataclass(frozen=True, slots=True)
class NegotiationOutcome:
    negotiation_id: int
    accepted: bool
    rebellion_status: RebellionStatus


@dataclass(frozen=True, slots=True)
class UprisingEligibility:
    eligible: bool
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class ModifierSnapshot:
    community_id: int
    disarray_multiplier: float
    disarray_active: bool
    momentum_active: bool
    momentum_expires_at: datetime | None
    exhaustion_active: bool
    recent_conquests: int
    current_win_streak: int
    total_conquests: int


@dataclass(slots=True)
class SweepReport:
    battles_resolved: int = 0
    rebellions_failed: int = 0
    reconciled: int = 0
    errors: int = 0


@dataclass(slots=True)
class MaintenanceReport:
    rage_decayed: int = 0
    disarray_cleared: int = 0
    momentum_cleared: int = 0
    exhaustion_changed: int = 0
    energy_regenerated: int = 0
    errors: int = 0
