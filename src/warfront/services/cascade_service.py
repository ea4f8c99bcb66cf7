"""Cascade Service for Warfront.

Everything that follows a battle becoming terminal runs here, in the same
transaction as the resolution:

- Critical handlers (ranking, community modifier transitions, ally rage,
  civil-war settlement) propagate failures so the whole resolution rolls
  back and can be retried.
- Best-effort handlers (battle hero medal, notifications, mission progress)
  run inside a savepoint; a failure is logged, recorded in the
  ``CascadeReport`` and never undoes the primary transition.

``rankings_processed_at`` marks a battle whose cascade has run, which makes
``process`` idempotent and lets ``reconcile_unprocessed`` recover battles
left behind by a crash.

Outward events (ownership changes, rank updates) wait in an ``EventOutbox``
and reach the event sink only once the surrounding transaction commits.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import event as sa_event
from sqlalchemy import select
from sqlalchemy.orm import Session, SessionTransaction

from warfront.domain.enums import BattleKind, BattleSide, MoraleTrigger, RageTrigger
from warfront.domain.events import (
    BattleResolved,
    CascadeReport,
    ParticipantOutcome,
    RankScoreUpdated,
    SideEffectFailure,
    TerritoryOwnershipChanged,
)
from warfront.domain.ranking import MilitaryRecord, apply_battle, rank_for_score, rank_score
from warfront.domain.rules_config import DEFAULT_RULES, RulesConfig
from warfront.interfaces import IEventSink, IMissionTracker, INotifier, IWallet
from warfront.models import Battle, BattleParticipant, Territory, User, utc_now
from warfront.services import locks
from warfront.services.collaborators import (
    LoggingEventSink,
    LoggingMissionTracker,
    LoggingNotifier,
    LoggingWallet,
)
from warfront.services.ledger_service import LedgerService
from warfront.services.locks import AggregateLocks
from warfront.services.membership import allied_community_ids, member_ids
from warfront.services.modifier_service import ModifierService

logger = logging.getLogger(__name__)

RANKING = "ranking"

BattleHandler = Callable[[BattleResolved], None]


@dataclass(frozen=True, slots=True)
class CascadeHandler:
    name: str
    func: BattleHandler
    critical: bool = True


OutwardEvent = TerritoryOwnershipChanged | RankScoreUpdated


class EventOutbox:
    """Holds outward events until the transaction that produced them commits.

    Events queued in a transaction that rolls back are dropped.
    """

    def __init__(self, session: Session, sink: IEventSink):
        self.sink = sink
        self._pending: list[OutwardEvent] = []
        sa_event.listen(session, "after_commit", self._deliver)
        sa_event.listen(session, "after_transaction_end", self._discard)

    @property
    def pending(self) -> tuple[OutwardEvent, ...]:
        return tuple(self._pending)

    def add(self, event: OutwardEvent) -> None:
        self._pending.append(event)

    def mark(self) -> int:
        return len(self._pending)

    def truncate(self, mark: int) -> None:
        del self._pending[mark:]

    def _deliver(self, session: Session) -> None:  # noqa: ARG002
        pending, self._pending = self._pending, []
        for event in pending:
            try:
                self.sink.publish(event)
            except Exception:
                logger.exception("event sink rejected %s", type(event).__name__)

    def _discard(self, session: Session, transaction: SessionTransaction) -> None:  # noqa: ARG002
        if transaction.parent is None and self._pending:
            logger.debug("dropping %d events of a rolled back transaction", len(self._pending))
            self._pending.clear()


class CascadeDispatcher:
    """Ordered handler list: every critical handler runs before any best-effort one."""

    def __init__(self, session: Session, outbox: EventOutbox | None = None):
        self.session = session
        self.outbox = outbox
        self._handlers: list[CascadeHandler] = []

    def register(self, name: str, func: BattleHandler, *, critical: bool = True) -> None:
        if any(handler.name == name for handler in self._handlers):
            raise ValueError(f"cascade handler {name!r} already registered")
        self._handlers.append(CascadeHandler(name, func, critical))

    @property
    def handler_names(self) -> list[str]:
        return [handler.name for handler in self._ordered()]

    def _ordered(self) -> list[CascadeHandler]:
        critical = [h for h in self._handlers if h.critical]
        best_effort = [h for h in self._handlers if not h.critical]
        return critical + best_effort

    def dispatch(
        self, event: BattleResolved, only: Collection[str] | None = None
    ) -> CascadeReport:
        report = CascadeReport(battle_id=event.battle_id)
        for handler in self._ordered():
            if only is not None and handler.name not in only:
                continue
            if handler.critical:
                handler.func(event)
            else:
                mark = self.outbox.mark() if self.outbox is not None else 0
                try:
                    with self.session.begin_nested():
                        handler.func(event)
                except Exception as exc:
                    if self.outbox is not None:
                        self.outbox.truncate(mark)
                    logger.exception(
                        "side effect %s failed for battle %s", handler.name, event.battle_id
                    )
                    report.failures.append(
                        SideEffectFailure(handler.name, event.battle_id, repr(exc))
                    )
                    continue
            report.handlers_run.append(handler.name)
        return report


class CascadeService:
    """Builds ``BattleResolved`` events and runs the resolution cascade."""

    def __init__(
        self,
        session: Session,
        modifiers: ModifierService | None = None,
        *,
        wallet: IWallet | None = None,
        notifier: INotifier | None = None,
        missions: IMissionTracker | None = None,
        event_sink: IEventSink | None = None,
        rules: RulesConfig = DEFAULT_RULES,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session = session
        self.rules = rules
        self.clock = clock
        self.ledger = LedgerService(session, rules)
        self.modifiers = modifiers or ModifierService(session, self.ledger, rules, clock)
        self.wallet = wallet or LoggingWallet()
        self.notifier = notifier or LoggingNotifier()
        self.missions = missions or LoggingMissionTracker()
        self.event_sink = event_sink or LoggingEventSink()

        self.outbox = EventOutbox(session, self.event_sink)
        self.dispatcher = CascadeDispatcher(session, self.outbox)
        self.dispatcher.register(RANKING, self.update_rankings)
        self.dispatcher.register("community_modifiers", self.apply_community_outcome)
        self.dispatcher.register("ally_rage", self.apply_ally_rage)
        self.dispatcher.register("battle_hero", self.award_battle_hero, critical=False)
        self.dispatcher.register("notifications", self.notify_outcome, critical=False)
        self.dispatcher.register("missions", self.track_missions, critical=False)

    # ----------------------------------------------------------- processing

    def build_event(self, battle: Battle) -> BattleResolved:
        winner_side = battle.winner_side
        if winner_side is None:
            raise ValueError(f"battle {battle.id} is not terminal")
        self.session.flush()
        if winner_side is BattleSide.ATTACKER:
            winner, loser = battle.attacker_community_id, battle.defender_community_id
        else:
            winner, loser = battle.defender_community_id, battle.attacker_community_id

        was_capital = False
        if battle.territory_id is not None:
            territory = self.session.get(Territory, battle.territory_id)
            was_capital = bool(territory and territory.is_capital)

        participants = self.session.execute(
            select(BattleParticipant)
            .where(BattleParticipant.battle_id == battle.id)
            .order_by(BattleParticipant.user_id)
        ).scalars()
        return BattleResolved(
            battle_id=battle.id,
            kind=battle.kind,
            status=battle.status,
            winner_side=winner_side,
            winner_community_id=winner,
            loser_community_id=loser,
            territory_id=battle.territory_id,
            was_capital=was_capital,
            resolved_at=battle.resolved_at or self.clock(),
            participants=tuple(
                ParticipantOutcome(p.user_id, p.side, p.damage_dealt) for p in participants
            ),
        )

    def process(self, battle: Battle, *, ranking_only: bool = False) -> CascadeReport:
        """Run the cascade for a terminal battle at most once.

        The caller holds the battle lock and commits.
        """
        if battle.rankings_processed_at is not None:
            return CascadeReport(battle_id=battle.id, skipped=True)
        event = self.build_event(battle)
        report = self.dispatcher.dispatch(event, only={RANKING} if ranking_only else None)
        battle.rankings_processed_at = self.clock()
        logger.info(
            "cascade for battle %s ran %s (%d side effect failures)",
            battle.id,
            ",".join(report.handlers_run),
            len(report.failures),
        )
        return report

    def reconcile_unprocessed(self) -> tuple[int, int]:
        """Re-run the cascade for terminal battles it never completed for.

        Each battle is handled in its own transaction; a battle whose cascade
        fails is logged, rolled back and left for the next run.

        Returns:
            (processed, failed)
        """
        battle_ids = list(
            self.session.execute(
                select(Battle.id)
                .where(Battle.resolved_at.is_not(None), Battle.rankings_processed_at.is_(None))
                .order_by(Battle.id)
            ).scalars()
        )
        processed = failed = 0
        for battle_id in battle_ids:
            with AggregateLocks.hold(locks.BATTLE, battle_id):
                try:
                    battle = self.session.get(
                        Battle, battle_id, with_for_update=True, populate_existing=True
                    )
                    if battle is None or battle.rankings_processed_at is not None:
                        self.session.rollback()
                        continue
                    self.process(battle)
                    self.session.commit()
                except Exception:
                    self.session.rollback()
                    logger.exception("cascade reconciliation failed for battle %s", battle_id)
                    failed += 1
                    continue
            processed += 1
        if processed or failed:
            logger.info("reconciled %d unprocessed battles, %d failed", processed, failed)
        return processed, failed

    # ------------------------------------------------------------- handlers

    def update_rankings(self, event: BattleResolved) -> None:
        for outcome in event.participants:
            won = outcome.side is event.winner_side
            user = self.ledger.lock_user(outcome.user_id)
            record = apply_battle(self._record_of(user), outcome.damage_dealt, won)
            self._store_record(user, record, event.battle_id)

        participants = self.session.execute(
            select(BattleParticipant).where(BattleParticipant.battle_id == event.battle_id)
        ).scalars()
        for participant in participants:
            participant.won = participant.side is event.winner_side

    def apply_community_outcome(self, event: BattleResolved) -> None:
        if event.kind is BattleKind.CIVIL_WAR:
            return
        conquest = event.winner_side is BattleSide.ATTACKER and event.territory_id is not None
        context = {"battle_id": event.battle_id}

        if event.winner_community_id is not None:
            self.modifiers.record_victory(event.winner_community_id, conquest=conquest)

        if event.loser_community_id is not None:
            loser = event.loser_community_id
            self.modifiers.record_defeat(loser)
            for user_id in member_ids(self.session, loser):
                self.ledger.adjust_morale(
                    user_id, -self.rules.morale.defeat_penalty, MoraleTrigger.DEFEAT, context
                )
                if conquest:
                    trigger = (
                        RageTrigger.CAPITAL_LOST if event.was_capital else RageTrigger.TERRITORY_LOST
                    )
                    self.modifiers.add_rage(user_id, trigger, context)
                self.modifiers.add_rage(user_id, RageTrigger.BATTLE_LOST, context)

    def apply_ally_rage(self, event: BattleResolved) -> None:
        if event.kind is BattleKind.CIVIL_WAR or event.loser_community_id is None:
            return
        context = {"battle_id": event.battle_id, "ally_id": event.loser_community_id}
        for ally_id in allied_community_ids(self.session, event.loser_community_id):
            if ally_id == event.winner_community_id:
                continue
            self.modifiers.add_community_rage(ally_id, RageTrigger.ALLY_DEFEATED, context)

    def award_battle_hero(self, event: BattleResolved) -> None:
        winners = [p for p in event.winners() if p.damage_dealt > 0]
        if not winners:
            return
        hero = max(winners, key=lambda p: (p.damage_dealt, -p.user_id))
        user = self.ledger.lock_user(hero.user_id)
        user.battle_hero_medals += 1
        self._store_record(user, self._record_of(user), event.battle_id)
        self.ledger.adjust_morale(
            hero.user_id,
            self.rules.morale.battle_hero_bonus,
            MoraleTrigger.BATTLE_HERO,
            {"battle_id": event.battle_id},
        )
        self.wallet.credit(
            hero.user_id, "gold", self.rules.ranking.battle_hero_gold, str(MoraleTrigger.BATTLE_HERO)
        )
        logger.info("battle %s hero is user %s", event.battle_id, hero.user_id)

    def notify_outcome(self, event: BattleResolved) -> None:
        for outcome in event.participants:
            self.notifier.notify(
                outcome.user_id,
                {
                    "type": "battle_outcome",
                    "battle_id": event.battle_id,
                    "status": str(event.status),
                    "won": outcome.side is event.winner_side,
                    "damage_dealt": outcome.damage_dealt,
                },
            )

    def track_missions(self, event: BattleResolved) -> None:
        for outcome in event.participants:
            self.missions.increment(outcome.user_id, "battle_fought")
            if outcome.side is event.winner_side:
                self.missions.increment(outcome.user_id, "battle_won")

    # -------------------------------------------------------------- helpers

    def publish_ownership_change(
        self, territory_id: str, previous_owner_id: int | None, new_owner_id: int, battle_id: int
    ) -> None:
        self._publish(
            TerritoryOwnershipChanged(
                territory_id=territory_id,
                previous_owner_id=previous_owner_id,
                new_owner_id=new_owner_id,
                battle_id=battle_id,
                changed_at=self.clock(),
            )
        )

    def _publish(self, event: OutwardEvent) -> None:
        self.outbox.add(event)

    @staticmethod
    def _record_of(user: User) -> MilitaryRecord:
        return MilitaryRecord(
            battles_fought=user.battles_fought,
            battles_won=user.battles_won,
            total_damage_dealt=user.total_damage_dealt,
            highest_damage_battle=user.highest_damage_battle,
            win_streak=user.win_streak,
            battle_hero_medals=user.battle_hero_medals,
            last_battle_win=user.last_battle_win,
        )

    def _store_record(self, user: User, record: MilitaryRecord, battle_id: int) -> None:
        user.battles_fought = record.battles_fought
        user.battles_won = record.battles_won
        user.total_damage_dealt = record.total_damage_dealt
        user.highest_damage_battle = record.highest_damage_battle
        user.win_streak = record.win_streak
        user.last_battle_win = record.last_battle_win
        user.military_rank_score = rank_score(record, self.rules.ranking)
        user.military_rank = rank_for_score(user.military_rank_score, self.rules.ranking)
        self._publish(
            RankScoreUpdated(
                user_id=user.id,
                score=user.military_rank_score,
                rank=str(user.military_rank),
                battle_id=battle_id,
            )
        )
