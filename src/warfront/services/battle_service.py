"""Battle Service for Warfront.

This module runs territorial conquest battles and the battles that back
civil wars: starting them, applying damage from either side and resolving
them once defense is depleted or the window closes.

Every mutating operation holds the battle's (or territory's) aggregate
lock, reads rows for update, and commits before the lock is released.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from warfront.domain import modifiers as formulas
from warfront.domain.enums import BattleKind, BattleSide, BattleStatus, RageTrigger
from warfront.domain.errors import (
    NotFoundError,
    Reason,
    StateConflictError,
    ValidationError,
)
from warfront.domain.events import CascadeReport, DamageResult
from warfront.domain.rules_config import DEFAULT_RULES, RulesConfig
from warfront.interfaces import INotifier
from warfront.models import (
    Battle,
    BattleActionLog,
    BattleParticipant,
    CivilWar,
    Community,
    RebellionSupport,
    Territory,
    utc_now,
)
from warfront.services import locks
from warfront.services.cascade_service import CascadeService
from warfront.services.collaborators import LoggingNotifier
from warfront.services.ledger_service import LedgerService
from warfront.services.locks import AggregateLocks
from warfront.services.membership import are_hostile, is_member, member_ids
from warfront.services.modifier_service import ModifierService
from warfront.utils.rng import generate_seed

logger = logging.getLogger(__name__)


class BattleService:
    """Service for starting, fighting and resolving battles."""

    def __init__(
        self,
        session: Session,
        modifiers: ModifierService | None = None,
        cascade: CascadeService | None = None,
        notifier: INotifier | None = None,
        rules: RulesConfig = DEFAULT_RULES,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session = session
        self.rules = rules
        self.clock = clock
        self.ledger = LedgerService(session, rules)
        self.modifiers = modifiers or ModifierService(session, self.ledger, rules, clock)
        self.notifier = notifier or LoggingNotifier()
        self.cascade = cascade or CascadeService(
            session, self.modifiers, notifier=self.notifier, rules=rules, clock=clock
        )

    # ---------------------------------------------------------------- reads

    def get_battle(self, battle_id: int) -> Battle:
        battle = self.session.get(Battle, battle_id, populate_existing=True)
        if battle is None:
            raise NotFoundError("battle", battle_id)
        return battle

    def list_active_battles(self) -> Sequence[Battle]:
        return self.session.execute(
            select(Battle).where(Battle.status == BattleStatus.ACTIVE).order_by(Battle.ends_at)
        ).scalars().all()

    def due_battle_ids(self, now: datetime | None = None) -> list[int]:
        """Active battles that are past their deadline or already depleted."""
        now = now or self.clock()
        return list(
            self.session.execute(
                select(Battle.id)
                .where(
                    Battle.status == BattleStatus.ACTIVE,
                    (Battle.ends_at <= now) | (Battle.current_defense <= 0),
                )
                .order_by(Battle.id)
            ).scalars()
        )

    # ---------------------------------------------------------------- start

    def start_battle(self, attacker_community_id: int, territory_id: str) -> int:
        """Start a conquest battle, or return the one already running.

        Raises:
            NotFoundError: Unknown territory or community
            ValidationError: OwnTerritory
            StateConflictError: NotAtWar
        """
        if self.session.get(Community, attacker_community_id) is None:
            raise NotFoundError("community", attacker_community_id)

        with AggregateLocks.hold(locks.TERRITORY, territory_id):
            try:
                territory = self.session.get(
                    Territory, territory_id, with_for_update=True, populate_existing=True
                )
                if territory is None:
                    raise NotFoundError("territory", territory_id)
                owner_id = territory.owner_community_id
                if owner_id == attacker_community_id:
                    raise ValidationError(
                        Reason.OWN_TERRITORY,
                        f"community {attacker_community_id} already owns {territory_id}",
                    )
                if owner_id is not None and not are_hostile(
                    self.session, attacker_community_id, owner_id
                ):
                    raise StateConflictError(
                        Reason.NOT_AT_WAR,
                        f"community {attacker_community_id} is not at war with {owner_id}",
                    )

                existing = self.session.execute(
                    select(Battle.id).where(
                        Battle.territory_id == territory_id,
                        Battle.status == BattleStatus.ACTIVE,
                    )
                ).scalar_one_or_none()
                if existing is not None:
                    self.session.commit()
                    return existing

                now = self.clock()
                rules = self.rules.for_community(attacker_community_id)
                battle = Battle(
                    kind=BattleKind.CONQUEST,
                    territory_id=territory_id,
                    attacker_community_id=attacker_community_id,
                    defender_community_id=owner_id,
                    started_at=now,
                    ends_at=now + timedelta(hours=rules.battle.duration_hours),
                    initial_defense=territory.defense_baseline,
                    current_defense=territory.defense_baseline,
                    attacker_score=0,
                    defender_score=0,
                    status=BattleStatus.ACTIVE,
                )
                self.session.add(battle)
                self.session.flush()
                battle_id = battle.id
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise

        logger.info(
            "battle %s started: community %s attacks %s (owner %s)",
            battle_id,
            attacker_community_id,
            territory_id,
            owner_id,
        )
        if owner_id is not None:
            self._announce_attack(battle_id, attacker_community_id, owner_id, territory_id)
        return battle_id

    def _announce_attack(
        self, battle_id: int, attacker_id: int, defender_id: int, territory_id: str
    ) -> None:
        context = {"battle_id": battle_id, "territory_id": territory_id}
        try:
            self.modifiers.add_community_rage(defender_id, RageTrigger.UNDER_ATTACK, context)
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.exception("under-attack rage failed for battle %s", battle_id)

        for user_id in member_ids(self.session, defender_id):
            try:
                self.notifier.notify(
                    user_id,
                    {
                        "type": "battle_started",
                        "battle_id": battle_id,
                        "territory_id": territory_id,
                        "attacker_community_id": attacker_id,
                    },
                )
            except Exception:
                logger.exception("battle %s notification to user %s failed", battle_id, user_id)

    def open_civil_war_battle(self, community_id: int) -> Battle:
        """Create the battle backing a civil war in the caller's transaction."""
        now = self.clock()
        battle = Battle(
            kind=BattleKind.CIVIL_WAR,
            territory_id=None,
            attacker_community_id=community_id,
            defender_community_id=community_id,
            started_at=now,
            ends_at=now + timedelta(hours=self.rules.battle.civil_war_duration_hours),
            initial_defense=self.rules.battle.civil_war_defense,
            current_defense=self.rules.battle.civil_war_defense,
            attacker_score=0,
            defender_score=0,
            status=BattleStatus.ACTIVE,
        )
        self.session.add(battle)
        self.session.flush()
        return battle

    # --------------------------------------------------------------- damage

    def apply_damage(
        self, battle_id: int, actor_id: int, side: BattleSide | str, raw_amount: int
    ) -> DamageResult:
        """Apply one attack or repair action and attempt resolution.

        Raises:
            ValidationError: InvalidAmount, WrongSide or InsufficientEnergy
            StateConflictError: BattleNotActive
            NotFoundError: Unknown battle
        """
        side = BattleSide(side)
        self._validate_amount(raw_amount)

        with AggregateLocks.hold(locks.BATTLE, battle_id):
            try:
                battle = self._lock_battle(battle_id)
                if not battle.is_active:
                    raise StateConflictError(
                        Reason.BATTLE_NOT_ACTIVE, f"battle {battle_id} is {battle.status}"
                    )
                now = self.clock()
                if now >= battle.ends_at:
                    # The window closed before the sweep got to it
                    self._resolve_locked(battle, now)
                    self.session.commit()
                    raise StateConflictError(
                        Reason.BATTLE_NOT_ACTIVE, f"battle {battle_id} has ended"
                    )
                community_id = self._validate_side(battle, actor_id, side)
                rules = self.rules.for_community(community_id)

                multiplier = self.modifiers.get_disarray_multiplier(community_id)
                cost = formulas.energy_cost(rules.battle.base_energy_cost, multiplier)
                self.ledger.spend_energy(actor_id, cost)
                user = self.ledger.lock_user(actor_id)

                participant = self._participant(battle, actor_id, side)
                participant.actions += 1

                focus = formulas.focus_chance(user.morale, rules.focus)
                hit = formulas.focus_hit(
                    focus, generate_seed(battle.id, actor_id, participant.actions, "focus")
                )
                critical = False
                damage = 0
                bonus = 0.0
                if hit:
                    if side is BattleSide.DEFENDER:
                        bonus = self._adrenaline_bonus(battle, now)
                    rage = formulas.clamp_rage(user.rage + bonus, rules.rage)
                    critical = rules.rage.enabled and formulas.critical_hit(
                        rage,
                        generate_seed(battle.id, actor_id, participant.actions, "critical"),
                    )
                    damage = formulas.effective_damage(
                        raw_amount,
                        formulas.rank_damage_multiplier(user.military_rank, rules.battle),
                        rules.rage.crit_multiplier if critical else 1.0,
                    )

                if side is BattleSide.ATTACKER:
                    battle.current_defense = max(0, battle.current_defense - damage)
                    battle.attacker_score += damage
                else:
                    battle.current_defense = min(
                        battle.initial_defense, battle.current_defense + damage
                    )
                    battle.defender_score += damage
                participant.damage_dealt += damage

                self.session.add(
                    BattleActionLog(
                        battle_id=battle.id,
                        user_id=actor_id,
                        side=side,
                        raw_amount=raw_amount,
                        effective_damage=damage,
                        hit=hit,
                        is_critical=critical,
                        energy_cost=cost,
                        disarray_multiplier=multiplier,
                        defense_after=battle.current_defense,
                        adrenaline_bonus=bonus,
                    )
                )

                self._resolve_locked(battle, now)
                result = DamageResult(
                    battle_id=battle.id,
                    side=side,
                    damage=damage,
                    critical=critical,
                    energy_cost=cost,
                    current_defense=battle.current_defense,
                    attacker_score=battle.attacker_score,
                    defender_score=battle.defender_score,
                    status=battle.status,
                    hit=hit,
                    focus=focus,
                    adrenaline_bonus=bonus,
                )
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
        return result

    def _adrenaline_bonus(self, battle: Battle, now: datetime) -> float:
        rules = self.rules.for_community(battle.defender_community_id)
        return formulas.adrenaline_bonus(
            battle.started_at,
            battle.ends_at,
            battle.attacker_score,
            battle.defender_score,
            now,
            rules.adrenaline,
        )

    def _validate_amount(self, raw_amount: int) -> None:
        if (
            isinstance(raw_amount, bool)
            or not isinstance(raw_amount, int)
            or raw_amount <= 0
            or raw_amount >= self.rules.battle.max_raw_damage
        ):
            raise ValidationError(
                Reason.INVALID_AMOUNT,
                f"damage must be an integer in [1, {self.rules.battle.max_raw_damage})",
            )

    def _validate_side(self, battle: Battle, actor_id: int, side: BattleSide) -> int:
        """Check the actor may fight on ``side`` and return the community they fight for."""
        if battle.kind is BattleKind.CIVIL_WAR:
            community_id = battle.attacker_community_id
            supporter = self._is_civil_war_supporter(battle, actor_id)
            if side is BattleSide.ATTACKER:
                allowed = supporter
            else:
                allowed = not supporter and is_member(self.session, community_id, actor_id)
        elif side is BattleSide.ATTACKER:
            community_id = battle.attacker_community_id
            allowed = is_member(self.session, community_id, actor_id)
        else:
            community_id = battle.defender_community_id
            allowed = community_id is not None and is_member(
                self.session, community_id, actor_id
            )

        if not allowed or community_id is None:
            raise ValidationError(
                Reason.WRONG_SIDE, f"user {actor_id} cannot fight as {side} in battle {battle.id}"
            )
        return community_id

    def _is_civil_war_supporter(self, battle: Battle, actor_id: int) -> bool:
        rebellion_id = self.session.execute(
            select(CivilWar.rebellion_id).where(CivilWar.battle_id == battle.id)
        ).scalar_one_or_none()
        if rebellion_id is None:
            return False
        support = self.session.execute(
            select(RebellionSupport.id).where(
                RebellionSupport.rebellion_id == rebellion_id,
                RebellionSupport.supporter_id == actor_id,
            )
        ).scalar_one_or_none()
        return support is not None

    def _participant(self, battle: Battle, user_id: int, side: BattleSide) -> BattleParticipant:
        participant = self.session.execute(
            select(BattleParticipant)
            .where(
                BattleParticipant.battle_id == battle.id,
                BattleParticipant.user_id == user_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if participant is None:
            participant = BattleParticipant(
                battle_id=battle.id,
                user_id=user_id,
                side=side,
                damage_dealt=0,
                actions=0,
                joined_at=self.clock(),
            )
            self.session.add(participant)
        elif participant.side is not side:
            raise ValidationError(
                Reason.WRONG_SIDE,
                f"user {user_id} already fights as {participant.side} in battle {battle.id}",
            )
        return participant

    # -------------------------------------------------------------- resolve

    def resolve(self, battle_id: int, now: datetime | None = None) -> BattleStatus:
        """Resolve a battle if it is due at ``now``; otherwise return its current status."""
        now = now or self.clock()
        with AggregateLocks.hold(locks.BATTLE, battle_id):
            try:
                battle = self._lock_battle(battle_id)
                self._resolve_locked(battle, now)
                status = battle.status
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
        return status

    def _resolve_locked(self, battle: Battle, now: datetime) -> CascadeReport | None:
        if not battle.is_active:
            return None
        # Depletion wins over the deadline
        if battle.current_defense <= 0:
            battle.status = BattleStatus.ATTACKER_WON
        elif now >= battle.ends_at:
            battle.status = BattleStatus.DEFENDER_WON
        else:
            return None
        battle.resolved_at = now
        logger.info(
            "battle %s resolved %s (defense %s/%s, scores %s:%s)",
            battle.id,
            battle.status,
            battle.current_defense,
            battle.initial_defense,
            battle.attacker_score,
            battle.defender_score,
        )

        if (
            battle.status is BattleStatus.ATTACKER_WON
            and battle.kind is BattleKind.CONQUEST
            and battle.territory_id is not None
        ):
            self._transfer_territory(battle, now)
        return self.cascade.process(battle)

    def _transfer_territory(self, battle: Battle, now: datetime) -> None:
        with AggregateLocks.hold(locks.TERRITORY, battle.territory_id):
            territory = self.session.get(
                Territory, battle.territory_id, with_for_update=True, populate_existing=True
            )
            if territory is None:
                raise NotFoundError("territory", battle.territory_id)
            previous_owner = territory.owner_community_id
            territory.owner_community_id = battle.attacker_community_id
            territory.last_conquered_at = now
        logger.info(
            "territory %s conquered by community %s (was %s)",
            territory.id,
            battle.attacker_community_id,
            previous_owner,
        )
        self.cascade.publish_ownership_change(
            territory.id, previous_owner, battle.attacker_community_id, battle.id
        )

    def close_battle(self, battle: Battle, status: BattleStatus) -> CascadeReport | None:
        """Force an active battle into ``status`` and run the ranking cascade only.

        Used when a civil war is settled outside the battle itself.
        """
        if not battle.is_active:
            return None
        battle.status = status
        battle.resolved_at = self.clock()
        return self.cascade.process(battle, ranking_only=True)

    def _lock_battle(self, battle_id: int) -> Battle:
        self.session.flush()
        battle = self.session.get(Battle, battle_id, with_for_update=True, populate_existing=True)
        if battle is None:
            raise NotFoundError("battle", battle_id)
        return battle
