"""Ledger primitives for per-user morale, rage and energy.

Every mutation locks the user row inside the caller's transaction, clamps
the new value and writes an audit row. Nothing here commits; the calling
service owns the unit of work.

SQLite ignores ``FOR UPDATE``, so ``lock_user`` first issues a no-op UPDATE
of the row. That takes the database write lock (a row lock elsewhere) and
holds it until the caller commits, so two transactions can never both read
the same balance and spend it.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from warfront.domain.enums import MoraleTrigger, RageTrigger
from warfront.domain.errors import NotFoundError, Reason, ValidationError
from warfront.domain.modifiers import clamp_morale, clamp_rage
from warfront.domain.rules_config import DEFAULT_RULES, RulesConfig
from warfront.models import MoraleEvent, RageEvent, User, utc_now

logger = logging.getLogger(__name__)


class LedgerService:
    """Clamped, audited mutations of a user's morale, rage and energy."""

    def __init__(self, session: Session, rules: RulesConfig = DEFAULT_RULES):
        self.session = session
        self.rules = rules

    def lock_user(self, user_id: int) -> User:
        self.session.flush()
        self.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(energy=User.energy)
            .execution_options(synchronize_session=False)
        )
        user = self.session.get(User, user_id, with_for_update=True, populate_existing=True)
        if user is None:
            raise NotFoundError("user", user_id)
        return user

    def adjust_morale(
        self,
        user_id: int,
        delta: int,
        trigger: MoraleTrigger | str,
        context: dict[str, Any] | None = None,
    ) -> int:
        """Add ``delta`` to morale, clamped to the morale bounds.

        The audit row records the delta actually applied.

        Returns:
            The new morale value
        """
        user = self.lock_user(user_id)
        before = user.morale
        user.morale = clamp_morale(before + delta, self.rules.morale)
        self._audit_morale(user, user.morale - before, trigger, context)
        return user.morale

    def set_morale(
        self,
        user_id: int,
        value: int,
        trigger: MoraleTrigger | str,
        context: dict[str, Any] | None = None,
    ) -> int:
        user = self.lock_user(user_id)
        before = user.morale
        user.morale = clamp_morale(value, self.rules.morale)
        self._audit_morale(user, user.morale - before, trigger, context)
        return user.morale

    def adjust_rage(
        self,
        user_id: int,
        delta: float,
        trigger: RageTrigger | str,
        context: dict[str, Any] | None = None,
    ) -> float:
        """Add ``delta`` to rage, clamped to ``[0, ceiling]``."""
        user = self.lock_user(user_id)
        before = user.rage
        user.rage = clamp_rage(before + delta, self.rules.rage)
        user.last_rage_update = utc_now()
        self.session.add(
            RageEvent(
                user_id=user.id,
                delta=user.rage - before,
                new_value=user.rage,
                trigger=str(trigger),
                context=context or {},
            )
        )
        return user.rage

    def spend_energy(self, user_id: int, amount: int) -> int:
        """Deduct energy or fail before touching anything.

        Raises:
            ValidationError: InsufficientEnergy when the balance is too low
        """
        user = self.lock_user(user_id)
        if user.energy < amount:
            raise ValidationError(
                Reason.INSUFFICIENT_ENERGY,
                f"action costs {amount} energy, user {user_id} has {user.energy}",
            )
        user.energy -= amount
        return user.energy

    def regenerate_energy(self, user_id: int, amount: int) -> int:
        user = self.lock_user(user_id)
        cap = self.rules.battle.energy_cap
        if user.energy < cap:
            user.energy = min(cap, user.energy + max(0, amount))
        return user.energy

    def _audit_morale(
        self,
        user: User,
        applied: int,
        trigger: MoraleTrigger | str,
        context: dict[str, Any] | None,
    ) -> None:
        self.session.add(
            MoraleEvent(
                user_id=user.id,
                delta=applied,
                new_value=user.morale,
                trigger=str(trigger),
                context=context or {},
            )
        )
        logger.debug("morale %s user=%s applied=%+d now=%d", trigger, user.id, applied, user.morale)
