"""Scheduled sweeps: deadline enforcement and periodic maintenance.

Every item is handled in its own transaction. A failing item is logged and
counted; the sweep moves on to the next one.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from warfront.domain.events import MaintenanceReport, SweepReport
from warfront.domain.rules_config import DEFAULT_RULES, RulesConfig
from warfront.models import User, utc_now
from warfront.services.battle_service import BattleService
from warfront.services.rebellion_service import RebellionService

logger = logging.getLogger(__name__)


class SweepService:
    """Runs the battle sweep and the maintenance sweep over one session."""

    def __init__(
        self,
        session: Session,
        battles: BattleService,
        rebellions: RebellionService,
        rules: RulesConfig = DEFAULT_RULES,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session = session
        self.battles = battles
        self.rebellions = rebellions
        self.modifiers = battles.modifiers
        self.ledger = battles.ledger
        self.rules = rules
        self.clock = clock

    def run_battle_sweep(self, now: datetime | None = None) -> SweepReport:
        """Resolve due battles, expire agitations and reconcile skipped cascades.

        Every decision is made against the single timestamp ``now``.
        """
        now = now or self.clock()
        report = SweepReport()

        for battle_id in self.battles.due_battle_ids(now):
            try:
                status = self.battles.resolve(battle_id, now)
            except Exception:
                logger.exception("sweep could not resolve battle %s", battle_id)
                report.errors += 1
                continue
            if status.is_terminal:
                report.battles_resolved += 1
            else:
                logger.warning("battle %s was due but is still %s", battle_id, status)

        try:
            report.rebellions_failed, failed = self.rebellions.expire_agitations(now)
            report.errors += failed
        except Exception:
            logger.exception("sweep could not expire agitations")
            report.errors += 1

        try:
            report.reconciled, failed = self.battles.cascade.reconcile_unprocessed()
            report.errors += failed
        except Exception:
            logger.exception("sweep could not reconcile unprocessed battles")
            report.errors += 1

        if report.battles_resolved or report.rebellions_failed or report.reconciled or report.errors:
            logger.info(
                "battle sweep: %d resolved, %d rebellions failed, %d reconciled, %d errors",
                report.battles_resolved,
                report.rebellions_failed,
                report.reconciled,
                report.errors,
            )
        return report

    def run_maintenance_sweep(self, now: datetime | None = None) -> MaintenanceReport:
        """Rage decay, modifier expiry, exhaustion re-check and energy regeneration."""
        now = now or self.clock()
        report = MaintenanceReport()

        try:
            report.rage_decayed = self.modifiers.decay_rage()
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.exception("rage decay failed")
            report.errors += 1

        try:
            report.disarray_cleared, report.momentum_cleared = self.modifiers.cleanup_expired(now)
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.exception("modifier cleanup failed")
            report.errors += 1

        for community_id in self.modifiers.exhausted_or_tracking_communities():
            try:
                before = self.modifiers.is_exhausted(community_id)
                after = self.modifiers.check_exhaustion(community_id, now)
                self.session.commit()
            except Exception:
                self.session.rollback()
                logger.exception("exhaustion check failed for community %s", community_id)
                report.errors += 1
                continue
            if before != after:
                report.exhaustion_changed += 1

        cap = self.rules.battle.energy_cap
        user_ids = list(
            self.session.execute(
                select(User.id).where(User.energy < cap).order_by(User.id)
            ).scalars()
        )
        for user_id in user_ids:
            try:
                rate = self.modifiers.energy_regen_rate(user_id)
                self.ledger.regenerate_energy(user_id, rate)
                self.session.commit()
            except Exception:
                self.session.rollback()
                logger.exception("energy regeneration failed for user %s", user_id)
                report.errors += 1
                continue
            report.energy_regenerated += 1

        logger.info(
            "maintenance sweep: rage %d, disarray %d, momentum %d, exhaustion %d, energy %d, errors %d",
            report.rage_decayed,
            report.disarray_cleared,
            report.momentum_cleared,
            report.exhaustion_changed,
            report.energy_regenerated,
            report.errors,
        )
        return report
