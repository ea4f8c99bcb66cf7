"""Rebellion Service for Warfront.

Drives a rebellion from agitation through civil war to a terminal status:

    agitation --threshold--> battle --rebels win--> success
    agitation --threshold--> battle --rulers win--> failed
    agitation --deadline--> failed
    agitation --leader exiled--> agitation (paused until reinvited)
    agitation --exiled past deadline + exile cooldown--> failed
    agitation/battle --negotiation accepted--> negotiated

Operations on one rebellion are serialised by its aggregate lock. When a
civil war exists its battle lock is taken first, matching the order used
when a battle resolution settles the civil war it backs.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterator
from contextlib import ExitStack, contextmanager
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from warfront.domain.enums import (
    BattleSide,
    BattleStatus,
    CivilWarStatus,
    CooldownType,
    MoraleTrigger,
    RebellionStatus,
)
from warfront.domain.errors import (
    NotFoundError,
    Reason,
    StateConflictError,
    ValidationError,
    WarfrontError,
)
from warfront.domain.events import (
    BattleResolved,
    NegotiationOutcome,
    SupportResult,
    UprisingEligibility,
    UprisingStarted,
)
from warfront.domain.rules_config import DEFAULT_RULES, RulesConfig
from warfront.interfaces import INotifier
from warfront.models import (
    Battle,
    CivilWar,
    Community,
    CommunityMember,
    Rebellion,
    RebellionNegotiation,
    RebellionSupport,
    User,
    utc_now,
)
from warfront.services import locks
from warfront.services.battle_service import BattleService
from warfront.services.ledger_service import LedgerService
from warfront.services.locks import AggregateLocks
from warfront.services.membership import (
    average_morale,
    find_ruler_id,
    get_membership,
    member_ids,
    non_ruler_member_count,
)

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (RebellionStatus.AGITATION, RebellionStatus.BATTLE)
REBELS_WON = "rebels_won"
RULERS_WON = "rulers_won"


def required_supports(non_ruler_members: int, ratio: float) -> int:
    """Supporters needed to start a civil war, never less than one."""
    return max(1, math.ceil(round(non_ruler_members * ratio, 9)))


class RebellionService:
    """Service for the rebellion lifecycle and its civil wars."""

    def __init__(
        self,
        session: Session,
        battles: BattleService | None = None,
        rules: RulesConfig = DEFAULT_RULES,
        clock: Callable[[], datetime] = utc_now,
        notifier: INotifier | None = None,
    ):
        self.session = session
        self.rules = rules
        self.clock = clock
        self.battles = battles or BattleService(session, rules=rules, clock=clock)
        self.ledger = LedgerService(session, rules)
        self.notifier = notifier or self.battles.notifier

    # ------------------------------------------------------------- locking

    def _civil_war_battle_id(self, rebellion_id: int) -> int | None:
        return self.session.execute(
            select(CivilWar.battle_id).where(CivilWar.rebellion_id == rebellion_id)
        ).scalar_one_or_none()

    @contextmanager
    def _rebellion_locks(self, rebellion_id: int) -> Iterator[None]:
        """Hold the civil-war battle lock (if any) and then the rebellion lock."""
        while True:
            battle_id = self._civil_war_battle_id(rebellion_id)
            with ExitStack() as stack:
                if battle_id is not None:
                    stack.enter_context(AggregateLocks.hold(locks.BATTLE, battle_id))
                stack.enter_context(AggregateLocks.hold(locks.REBELLION, rebellion_id))
                if self._civil_war_battle_id(rebellion_id) == battle_id:
                    yield
                    return

    def _lock_rebellion(self, rebellion_id: int) -> Rebellion:
        self.session.flush()
        rebellion = self.session.get(
            Rebellion, rebellion_id, with_for_update=True, populate_existing=True
        )
        if rebellion is None:
            raise NotFoundError("rebellion", rebellion_id)
        return rebellion

    # --------------------------------------------------------------- start

    def can_start_uprising(self, user_id: int, community_id: int) -> UprisingEligibility:
        """Read-only probe of ``start_uprising``'s preconditions."""
        try:
            self._check_can_start(user_id, community_id, self.clock())
        except WarfrontError as exc:
            return UprisingEligibility(False, exc.reason.value)
        finally:
            self.session.rollback()
        return UprisingEligibility(True)

    def _check_can_start(self, user_id: int, community_id: int, now: datetime) -> None:
        if self.session.get(Community, community_id) is None:
            raise NotFoundError("community", community_id)
        membership = get_membership(self.session, community_id, user_id)
        if membership is None or membership.is_ruler:
            raise ValidationError(
                Reason.NOT_ELIGIBLE,
                f"user {user_id} is not a non-ruler member of community {community_id}",
            )

        user = self.session.get(User, user_id, populate_existing=True)
        if user is None:
            raise NotFoundError("user", user_id)
        rules = self.rules.rebellion
        community_average = average_morale(self.session, community_id)
        unhappy = user.morale < rules.personal_morale_threshold or (
            community_average is not None and community_average < rules.community_morale_threshold
        )
        if not unhappy:
            raise ValidationError(
                Reason.MORALE_TOO_HIGH,
                f"morale {user.morale} (community average {community_average}) is too high",
            )

        active = self.session.execute(
            select(Rebellion.id).where(
                Rebellion.community_id == community_id, Rebellion.status.in_(ACTIVE_STATUSES)
            )
        ).first()
        if active is not None:
            raise StateConflictError(
                Reason.ALREADY_IN_PROGRESS,
                f"community {community_id} already has rebellion {active[0]}",
            )
        cooldown = self.session.execute(
            select(func.max(Rebellion.cooldown_until)).where(
                Rebellion.community_id == community_id
            )
        ).scalar()
        if cooldown is not None and cooldown > now:
            raise StateConflictError(
                Reason.ALREADY_IN_PROGRESS,
                f"community {community_id} cannot rebel again before {cooldown.isoformat()}",
            )

    def start_uprising(self, user_id: int, community_id: int) -> UprisingStarted:
        """Open a rebellion with the requester as its first supporter.

        Raises:
            ValidationError: NotEligible, MoraleTooHigh
            StateConflictError: AlreadyInProgress
        """
        with AggregateLocks.hold(locks.COMMUNITY, community_id):
            try:
                now = self.clock()
                self._check_can_start(user_id, community_id, now)

                required = required_supports(
                    non_ruler_member_count(self.session, community_id),
                    self.rules.rebellion.support_ratio,
                )
                rebellion = Rebellion(
                    community_id=community_id,
                    leader_id=user_id,
                    target_id=find_ruler_id(self.session, community_id),
                    status=RebellionStatus.AGITATION,
                    current_supports=1,
                    required_supports=required,
                    started_at=now,
                    agitation_expires_at=now + timedelta(hours=self.rules.rebellion.agitation_hours),
                    is_leader_exiled=False,
                )
                self.session.add(rebellion)
                self.session.flush()
                self.session.add(RebellionSupport(rebellion_id=rebellion.id, supporter_id=user_id))
                self.ledger.adjust_morale(
                    user_id,
                    -self.rules.rebellion.uprising_morale_cost,
                    MoraleTrigger.UPRISING_STARTED,
                    {"rebellion_id": rebellion.id, "community_id": community_id},
                )

                civil_war_id = None
                if rebellion.current_supports >= required:
                    civil_war_id = self._begin_civil_war(rebellion, now).id
                self.session.flush()
                result = UprisingStarted(rebellion.id, required, civil_war_id)
                self.session.commit()
            except IntegrityError as exc:
                self.session.rollback()
                raise StateConflictError(
                    Reason.ALREADY_IN_PROGRESS,
                    f"community {community_id} already has an open rebellion",
                ) from exc
            except Exception:
                self.session.rollback()
                raise

        logger.info(
            "rebellion %s started in community %s by user %s (needs %s)",
            result.rebellion_id,
            community_id,
            user_id,
            result.required_supports,
        )
        self._notify_members(
            community_id,
            {"type": "rebellion_started", "rebellion_id": result.rebellion_id, "leader_id": user_id},
            exclude=user_id,
        )
        if result.civil_war_id is not None:
            self._announce_civil_war(community_id, result.civil_war_id, user_id)
        return result

    # ------------------------------------------------------------- support

    def support_uprising(self, user_id: int, rebellion_id: int) -> SupportResult:
        """Add a supporter; the threshold-crossing support starts the civil war.

        Raises:
            NotFoundError: Unknown rebellion
            ValidationError: NotEligible, AlreadySupporting
            StateConflictError: NotInAgitation, LeaderExiled
        """
        if self.session.get(Rebellion, rebellion_id) is None:
            raise NotFoundError("rebellion", rebellion_id)

        with self._rebellion_locks(rebellion_id):
            try:
                rebellion = self._lock_rebellion(rebellion_id)
                membership = get_membership(self.session, rebellion.community_id, user_id)
                if membership is None or membership.is_ruler:
                    raise ValidationError(
                        Reason.NOT_ELIGIBLE,
                        f"user {user_id} cannot support rebellion {rebellion_id}",
                    )
                if self._is_supporter(rebellion_id, user_id):
                    raise ValidationError(
                        Reason.ALREADY_SUPPORTING,
                        f"user {user_id} already supports rebellion {rebellion_id}",
                    )
                now = self.clock()
                if rebellion.status is not RebellionStatus.AGITATION or (
                    not rebellion.is_leader_exiled and now >= rebellion.agitation_expires_at
                ):
                    raise StateConflictError(
                        Reason.NOT_IN_AGITATION, f"rebellion {rebellion_id} is {rebellion.status}"
                    )
                if rebellion.is_leader_exiled:
                    raise StateConflictError(
                        Reason.LEADER_EXILED, f"rebellion {rebellion_id} is paused by exile"
                    )

                self.session.add(RebellionSupport(rebellion_id=rebellion_id, supporter_id=user_id))
                self.session.flush()
                rebellion.current_supports = self._support_count(rebellion_id)
                self.ledger.adjust_morale(
                    user_id,
                    self.rules.rebellion.support_morale_bonus,
                    MoraleTrigger.UPRISING_SUPPORT,
                    {"rebellion_id": rebellion_id},
                )

                civil_war = None
                if rebellion.current_supports >= rebellion.required_supports:
                    civil_war = self._begin_civil_war(rebellion, now)
                self.session.flush()
                result = SupportResult(
                    current_supports=rebellion.current_supports,
                    required_supports=rebellion.required_supports,
                    civil_war_started=civil_war is not None,
                    civil_war_id=civil_war.id if civil_war is not None else None,
                )
                community_id, leader_id = rebellion.community_id, rebellion.leader_id
                self.session.commit()
            except IntegrityError as exc:
                self.session.rollback()
                raise ValidationError(
                    Reason.ALREADY_SUPPORTING,
                    f"user {user_id} already supports rebellion {rebellion_id}",
                ) from exc
            except Exception:
                self.session.rollback()
                raise
        if result.civil_war_id is not None:
            self._announce_civil_war(community_id, result.civil_war_id, leader_id)
        return result

    def _announce_civil_war(self, community_id: int, civil_war_id: int, leader_id: int) -> None:
        self._notify_members(
            community_id,
            {"type": "civil_war_started", "civil_war_id": civil_war_id, "leader_id": leader_id},
            exclude=leader_id,
        )

    def _notify_members(
        self, community_id: int, payload: dict[str, object], *, exclude: int | None = None
    ) -> None:
        for member_id in member_ids(self.session, community_id):
            if member_id == exclude:
                continue
            try:
                self.notifier.notify(member_id, payload)
            except Exception:
                logger.exception("%s notification to user %s failed", payload["type"], member_id)

    def _is_supporter(self, rebellion_id: int, user_id: int) -> bool:
        return (
            self.session.execute(
                select(RebellionSupport.id).where(
                    RebellionSupport.rebellion_id == rebellion_id,
                    RebellionSupport.supporter_id == user_id,
                )
            ).scalar_one_or_none()
            is not None
        )

    def _support_count(self, rebellion_id: int) -> int:
        count = self.session.execute(
            select(func.count(RebellionSupport.id)).where(
                RebellionSupport.rebellion_id == rebellion_id
            )
        ).scalar()
        return count or 0

    def _supporter_ids(self, rebellion_id: int) -> set[int]:
        return set(
            self.session.execute(
                select(RebellionSupport.supporter_id).where(
                    RebellionSupport.rebellion_id == rebellion_id
                )
            ).scalars()
        )

    def _begin_civil_war(self, rebellion: Rebellion, now: datetime) -> CivilWar:
        battle = self.battles.open_civil_war_battle(rebellion.community_id)
        civil_war = CivilWar(
            rebellion_id=rebellion.id,
            battle_id=battle.id,
            community_id=rebellion.community_id,
            leader_id=rebellion.leader_id,
            ruler_id=find_ruler_id(self.session, rebellion.community_id) or rebellion.target_id,
            status=CivilWarStatus.ACTIVE,
        )
        self.session.add(civil_war)
        rebellion.status = RebellionStatus.BATTLE
        rebellion.battle_started_at = now
        self.session.flush()
        logger.info(
            "civil war %s (battle %s) started in community %s",
            civil_war.id,
            battle.id,
            rebellion.community_id,
        )
        return civil_war

    # --------------------------------------------------------- exile/reinvite

    def exile_leader(self, rebellion_id: int, ruler_id: int) -> bool:
        """Remove the leader from the community and pause the rebellion.

        Raises:
            ValidationError: NotRuler
            StateConflictError: NotInAgitation, LeaderExiled
        """
        with self._rebellion_locks(rebellion_id):
            try:
                rebellion = self._lock_rebellion(rebellion_id)
                if find_ruler_id(self.session, rebellion.community_id) != ruler_id:
                    raise ValidationError(
                        Reason.NOT_RULER, f"user {ruler_id} does not rule this community"
                    )
                if rebellion.status is not RebellionStatus.AGITATION:
                    raise StateConflictError(
                        Reason.NOT_IN_AGITATION, f"rebellion {rebellion_id} is {rebellion.status}"
                    )
                if rebellion.is_leader_exiled:
                    raise StateConflictError(
                        Reason.LEADER_EXILED, f"rebellion {rebellion_id} leader already exiled"
                    )

                now = self.clock()
                membership = get_membership(self.session, rebellion.community_id, rebellion.leader_id)
                if membership is not None:
                    self.session.delete(membership)
                rebellion.is_leader_exiled = True
                rebellion.exiled_at = now
                rebellion.cooldown_until = now + timedelta(
                    hours=self.rules.rebellion.exile_cooldown_hours
                )
                rebellion.cooldown_type = CooldownType.EXILE
                self.ledger.adjust_morale(
                    ruler_id,
                    -self.rules.rebellion.exile_morale_penalty,
                    MoraleTrigger.EXILE_ORDERED,
                    {"rebellion_id": rebellion_id, "leader_id": rebellion.leader_id},
                )
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
        logger.info("rebellion %s leader %s exiled", rebellion_id, rebellion.leader_id)
        return True

    def reinvite_leader(self, rebellion_id: int, inviter_id: int) -> bool:
        """Restore an exiled leader; agitation time spent in exile is given back.

        Raises:
            ValidationError: InsufficientRank
            StateConflictError: NotExiled
        """
        with self._rebellion_locks(rebellion_id):
            try:
                rebellion = self._lock_rebellion(rebellion_id)
                inviter = get_membership(self.session, rebellion.community_id, inviter_id)
                if inviter is None or inviter.rank_tier > self.rules.rebellion.reinvite_max_rank_tier:
                    raise ValidationError(
                        Reason.INSUFFICIENT_RANK, f"user {inviter_id} may not reinvite leaders"
                    )
                if not rebellion.is_leader_exiled:
                    raise StateConflictError(
                        Reason.NOT_EXILED, f"rebellion {rebellion_id} leader is not exiled"
                    )

                now = self.clock()
                if get_membership(self.session, rebellion.community_id, rebellion.leader_id) is None:
                    self.session.add(
                        CommunityMember(
                            community_id=rebellion.community_id,
                            user_id=rebellion.leader_id,
                            rank_tier=self.rules.rebellion.restored_rank_tier,
                            joined_at=now,
                        )
                    )
                if rebellion.exiled_at is not None:
                    rebellion.agitation_expires_at += max(timedelta(0), now - rebellion.exiled_at)
                rebellion.is_leader_exiled = False
                rebellion.exiled_at = None
                rebellion.cooldown_until = None
                rebellion.cooldown_type = None
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
        logger.info("rebellion %s leader reinvited by user %s", rebellion_id, inviter_id)
        return True

    # ---------------------------------------------------------- negotiation

    def request_negotiation(self, rebellion_id: int, ruler_id: int) -> int:
        """Offer the leader a settlement. Returns the negotiation id.

        Raises:
            ValidationError: NotRuler
            StateConflictError: RebellionClosed, NegotiationPending
        """
        with self._rebellion_locks(rebellion_id):
            try:
                rebellion = self._lock_rebellion(rebellion_id)
                if find_ruler_id(self.session, rebellion.community_id) != ruler_id:
                    raise ValidationError(
                        Reason.NOT_RULER, f"user {ruler_id} does not rule this community"
                    )
                if not rebellion.is_active:
                    raise StateConflictError(
                        Reason.REBELLION_CLOSED, f"rebellion {rebellion_id} is {rebellion.status}"
                    )
                pending = self.session.execute(
                    select(RebellionNegotiation.id).where(
                        RebellionNegotiation.rebellion_id == rebellion_id,
                        RebellionNegotiation.accepted.is_(None),
                    )
                ).first()
                if pending is not None:
                    raise StateConflictError(
                        Reason.NEGOTIATION_PENDING,
                        f"negotiation {pending[0]} is awaiting an answer",
                    )
                negotiation = RebellionNegotiation(
                    rebellion_id=rebellion_id,
                    ruler_id=ruler_id,
                    leader_id=rebellion.leader_id,
                    requested_at=self.clock(),
                    terms={},
                )
                self.session.add(negotiation)
                self.session.flush()
                negotiation_id = negotiation.id
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
        return negotiation_id

    def respond_to_negotiation(
        self, negotiation_id: int, leader_id: int, accept: bool
    ) -> NegotiationOutcome:
        """Answer a negotiation; acceptance settles the rebellion.

        Raises:
            NotFoundError: Unknown negotiation
            ValidationError: NotLeader
            StateConflictError: NegotiationAnswered, RebellionClosed
        """
        negotiation = self.session.get(RebellionNegotiation, negotiation_id)
        if negotiation is None:
            raise NotFoundError("negotiation", negotiation_id)
        rebellion_id = negotiation.rebellion_id

        with self._rebellion_locks(rebellion_id):
            try:
                negotiation = self.session.get(
                    RebellionNegotiation,
                    negotiation_id,
                    with_for_update=True,
                    populate_existing=True,
                )
                if negotiation.leader_id != leader_id:
                    raise ValidationError(
                        Reason.NOT_LEADER, f"user {leader_id} does not lead this rebellion"
                    )
                if negotiation.accepted is not None:
                    raise StateConflictError(
                        Reason.NEGOTIATION_ANSWERED, f"negotiation {negotiation_id} was answered"
                    )
                rebellion = self._lock_rebellion(rebellion_id)
                if not rebellion.is_active:
                    raise StateConflictError(
                        Reason.REBELLION_CLOSED, f"rebellion {rebellion_id} is {rebellion.status}"
                    )

                now = self.clock()
                negotiation.accepted = accept
                negotiation.response_at = now
                if accept:
                    self._settle_by_negotiation(rebellion, negotiation, now)
                outcome = NegotiationOutcome(negotiation_id, accept, rebellion.status)
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
        logger.info(
            "negotiation %s for rebellion %s %s",
            negotiation_id,
            rebellion_id,
            "accepted" if accept else "rejected",
        )
        return outcome

    def _settle_by_negotiation(
        self, rebellion: Rebellion, negotiation: RebellionNegotiation, now: datetime
    ) -> None:
        rebellion.status = RebellionStatus.NEGOTIATED
        rebellion.resolved_at = now
        rebellion.cooldown_until = now + timedelta(
            hours=self.rules.rebellion.negotiation_cooldown_hours
        )
        rebellion.cooldown_type = CooldownType.NEGOTIATION
        rebellion.is_leader_exiled = False

        context = {"rebellion_id": rebellion.id, "negotiation_id": negotiation.id}
        for user_id in {negotiation.ruler_id, negotiation.leader_id}:
            self.ledger.set_morale(
                user_id, self.rules.morale.neutral, MoraleTrigger.NEGOTIATION_SETTLED, context
            )

        civil_war = self._civil_war_of(rebellion.id)
        if civil_war is not None and civil_war.status is CivilWarStatus.ACTIVE:
            civil_war.status = CivilWarStatus.NEGOTIATED
            civil_war.resolved_at = now
            self.session.flush()
            battle = self.session.get(
                Battle, civil_war.battle_id, with_for_update=True, populate_existing=True
            )
            self.battles.close_battle(battle, BattleStatus.DEFENDER_WON)

    # ------------------------------------------------------------ civil war

    def _civil_war_of(self, rebellion_id: int) -> CivilWar | None:
        return self.session.execute(
            select(CivilWar)
            .where(CivilWar.rebellion_id == rebellion_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def resolve_civil_war(self, civil_war_id: int, winner_id: int) -> str:
        """Settle a civil war in favour of ``winner_id``.

        ``winner_id`` must be the rebel leader (rebels won) or the ruler the
        civil war was declared against (rulers won). Returns ``"rebels_won"``
        or ``"rulers_won"``.

        Raises:
            NotFoundError: Unknown civil war
            ValidationError: InvalidWinner
            StateConflictError: RebellionClosed
        """
        civil_war = self.session.get(CivilWar, civil_war_id)
        if civil_war is None:
            raise NotFoundError("civil war", civil_war_id)
        rebellion_id = civil_war.rebellion_id

        with self._rebellion_locks(rebellion_id):
            try:
                civil_war = self._civil_war_of(rebellion_id)
                if winner_id not in (civil_war.leader_id, civil_war.ruler_id):
                    raise ValidationError(
                        Reason.INVALID_WINNER,
                        f"user {winner_id} is neither side of civil war {civil_war_id}",
                    )
                outcome = self._settle_civil_war(
                    civil_war, rebels_won=winner_id == civil_war.leader_id, close_battle=True
                )
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
        return outcome

    def settle_from_battle(self, event: BattleResolved) -> None:
        """Cascade handler: a civil-war battle resolved through the battle engine.

        Runs inside the resolution transaction while the battle lock is held.
        """
        if not event.is_civil_war:
            return
        civil_war = self.session.execute(
            select(CivilWar).where(CivilWar.battle_id == event.battle_id)
        ).scalar_one_or_none()
        if civil_war is None:
            logger.warning("civil-war battle %s has no civil war row", event.battle_id)
            return
        with AggregateLocks.hold(locks.REBELLION, civil_war.rebellion_id):
            civil_war = self._civil_war_of(civil_war.rebellion_id)
            if civil_war.status is not CivilWarStatus.ACTIVE:
                return
            self._settle_civil_war(
                civil_war,
                rebels_won=event.winner_side is BattleSide.ATTACKER,
                close_battle=False,
            )

    def _settle_civil_war(self, civil_war: CivilWar, *, rebels_won: bool, close_battle: bool) -> str:
        if civil_war.status is not CivilWarStatus.ACTIVE:
            raise StateConflictError(
                Reason.REBELLION_CLOSED, f"civil war {civil_war.id} is {civil_war.status}"
            )
        rebellion = self._lock_rebellion(civil_war.rebellion_id)
        now = self.clock()
        context = {"rebellion_id": rebellion.id, "civil_war_id": civil_war.id}

        if rebels_won:
            self._install_new_ruler(civil_war, now)
            supporters = self._supporter_ids(rebellion.id)
            for user_id in member_ids(self.session, civil_war.community_id):
                if user_id in supporters:
                    self.ledger.adjust_morale(
                        user_id,
                        self.rules.rebellion.supporter_morale_bonus,
                        MoraleTrigger.REBELLION_SUPPORTER,
                        context,
                    )
                elif user_id != civil_war.ruler_id:
                    self.ledger.adjust_morale(
                        user_id,
                        -self.rules.rebellion.loyalist_morale_penalty,
                        MoraleTrigger.REBELLION_LOYALIST,
                        context,
                    )
            rebellion.status = RebellionStatus.SUCCESS
            civil_war.status = CivilWarStatus.REBELS_WON
            outcome = REBELS_WON
        else:
            rebellion.status = RebellionStatus.FAILED
            rebellion.cooldown_until = now + timedelta(
                hours=self.rules.rebellion.failure_cooldown_hours
            )
            rebellion.cooldown_type = CooldownType.FAILURE
            civil_war.status = CivilWarStatus.RULERS_WON
            outcome = RULERS_WON
        rebellion.resolved_at = now
        civil_war.resolved_at = now

        if close_battle:
            battle = self.session.get(
                Battle, civil_war.battle_id, with_for_update=True, populate_existing=True
            )
            if battle is not None:
                self.battles.close_battle(
                    battle, BattleStatus.ATTACKER_WON if rebels_won else BattleStatus.DEFENDER_WON
                )
        logger.info(
            "civil war %s in community %s settled: %s",
            civil_war.id,
            civil_war.community_id,
            outcome,
        )
        return outcome

    def _install_new_ruler(self, civil_war: CivilWar, now: datetime) -> None:
        """Promote the leader to ruler and demote the previous ruler."""
        if civil_war.ruler_id is not None and civil_war.ruler_id != civil_war.leader_id:
            old = get_membership(self.session, civil_war.community_id, civil_war.ruler_id)
            if old is not None:
                old.rank_tier = self.rules.rebellion.member_rank_tier
        leader = get_membership(self.session, civil_war.community_id, civil_war.leader_id)
        if leader is None:
            leader = CommunityMember(
                community_id=civil_war.community_id,
                user_id=civil_war.leader_id,
                joined_at=now,
            )
            self.session.add(leader)
        leader.rank_tier = 0

    # ---------------------------------------------------------------- sweep

    def expire_agitations(self, now: datetime | None = None) -> tuple[int, int]:
        """Fail every rebellion whose agitation deadline has passed.

        A rebellion paused by exile gets the exile cooldown on top of its
        deadline; if the leader is not reinvited by then it fails as well.
        Each rebellion is updated conditionally in its own transaction, so
        running the sweep twice changes nothing the second time.

        Returns:
            (expired, failed)
        """
        now = now or self.clock()
        exile_grace = timedelta(hours=self.rules.rebellion.exile_cooldown_hours)
        overdue = (
            Rebellion.is_leader_exiled.is_(False) & (Rebellion.agitation_expires_at <= now)
        ) | (
            Rebellion.is_leader_exiled.is_(True)
            & (Rebellion.agitation_expires_at <= now - exile_grace)
        )
        candidates = list(
            self.session.execute(
                select(Rebellion.id)
                .where(Rebellion.status == RebellionStatus.AGITATION, overdue)
                .order_by(Rebellion.id)
            ).scalars()
        )
        expired = failed = 0
        cooldown_until = now + timedelta(hours=self.rules.rebellion.failure_cooldown_hours)
        for rebellion_id in candidates:
            with AggregateLocks.hold(locks.REBELLION, rebellion_id):
                try:
                    result = self.session.execute(
                        update(Rebellion)
                        .where(
                            Rebellion.id == rebellion_id,
                            Rebellion.status == RebellionStatus.AGITATION,
                            overdue,
                        )
                        .values(
                            status=RebellionStatus.FAILED,
                            cooldown_until=cooldown_until,
                            cooldown_type=CooldownType.FAILURE,
                            resolved_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    self.session.commit()
                except Exception:
                    self.session.rollback()
                    logger.exception("could not expire rebellion %s", rebellion_id)
                    failed += 1
                    continue
            if result.rowcount:
                expired += 1
                logger.info("rebellion %s failed: agitation expired", rebellion_id)
        return expired, failed

    def get_rebellion(self, rebellion_id: int) -> Rebellion:
        rebellion = self.session.get(Rebellion, rebellion_id, populate_existing=True)
        if rebellion is None:
            raise NotFoundError("rebellion", rebellion_id)
        return rebellion
