"""Service layer for Warfront.

Services operate on one SQLAlchemy session and commit their own units of
work. Collaborators outside the core (wallet, notifications, missions,
event publication) are reached through the protocols in
``warfront.interfaces``.

Architecture:
    - LedgerService: Per-user morale, rage and energy adjustments with audit rows
    - ModifierService: Disarray, momentum, exhaustion and rage transitions
    - CascadeService: Everything that follows a battle becoming terminal
    - BattleService: Conquest and civil-war battles, damage and resolution
    - RebellionService: Uprisings, exile, negotiation and civil-war settlement
    - SweepService: Deadline enforcement and periodic maintenance

Production Usage:
    from warfront.factory import create_services
    services = create_services(session)
    services.rebellions.start_uprising(user_id, community_id)

Testing Usage:
    from warfront.services.cascade_service import CascadeService

    class FakeNotifier:
        def __init__(self):
            self.sent = []

        def notify(self, user_id, payload):
            self.sent.append((user_id, payload))

    cascade = CascadeService(session, notifier=FakeNotifier())
"""

from warfront.services.battle_service import BattleService
from warfront.services.cascade_service import CascadeDispatcher, CascadeService
from warfront.services.ledger_service import LedgerService
from warfront.services.modifier_service import ModifierService
from warfront.services.rebellion_service import RebellionService
from warfront.services.sweep_service import SweepService

__all__ = [
    "BattleService",
    "CascadeDispatcher",
    "CascadeService",
    "LedgerService",
    "ModifierService",
    "RebellionService",
    "SweepService",
]
