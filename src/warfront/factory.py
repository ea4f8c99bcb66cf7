"""Service Factory for Warfront.

This module wires the services that share one database session. Use it in
production code so the civil-war settlement handler is registered with the
battle cascade; tests may construct services directly and inject fakes for
the collaborator protocols instead.

Example:
    from warfront.factory import create_services

    services = create_services(session)
    services.battles.apply_damage(battle_id, user_id, "attacker", 500)
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from warfront.domain.rules_config import DEFAULT_RULES, RulesConfig
from warfront.interfaces import IEventSink, IMissionTracker, INotifier, IWallet
from warfront.models import utc_now
from warfront.services.battle_service import BattleService
from warfront.services.cascade_service import CascadeService
from warfront.services.ledger_service import LedgerService
from warfront.services.modifier_service import ModifierService
from warfront.services.rebellion_service import RebellionService
from warfront.services.sweep_service import SweepService

CIVIL_WAR_HANDLER = "civil_war"


@dataclass(slots=True)
class Services:
    """Services bound to one session."""

    session: Session
    ledger: LedgerService
    modifiers: ModifierService
    cascade: CascadeService
    battles: BattleService
    rebellions: RebellionService
    sweeps: SweepService


def create_services(
    session: Session,
    *,
    wallet: IWallet | None = None,
    notifier: INotifier | None = None,
    missions: IMissionTracker | None = None,
    event_sink: IEventSink | None = None,
    rules: RulesConfig = DEFAULT_RULES,
    clock: Callable[[], datetime] = utc_now,
) -> Services:
    """Create every service with proper dependency wiring.

    Args:
        session: Database session shared by all services
        wallet, notifier, missions, event_sink: Collaborators; the logging
            defaults are used when omitted
        rules: Game tuning constants
        clock: Source of the current time

    Returns:
        Fully initialised Services
    """
    ledger = LedgerService(session, rules)
    modifiers = ModifierService(session, ledger, rules, clock)
    cascade = CascadeService(
        session,
        modifiers,
        wallet=wallet,
        notifier=notifier,
        missions=missions,
        event_sink=event_sink,
        rules=rules,
        clock=clock,
    )
    battles = BattleService(session, modifiers, cascade, cascade.notifier, rules, clock)
    rebellions = RebellionService(session, battles, rules, clock, notifier=cascade.notifier)
    cascade.dispatcher.register(CIVIL_WAR_HANDLER, rebellions.settle_from_battle)
    sweeps = SweepService(session, battles, rebellions, rules, clock)
    return Services(
        session=session,
        ledger=ledger,
        modifiers=modifiers,
        cascade=cascade,
        battles=battles,
        rebellions=rebellions,
        sweeps=sweeps,
    )
