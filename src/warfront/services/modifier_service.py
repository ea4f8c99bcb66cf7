"""Modifier Service for Warfront.

Stores and transitions the per-community combat modifiers (disarray,
momentum, exhaustion) and applies per-user rage. Expired states are
cleared lazily the first time they are read after expiry, and eagerly by
the maintenance sweep.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from warfront.domain import modifiers as formulas
from warfront.domain.enums import MoraleTrigger, RageTrigger
from warfront.domain.errors import NotFoundError
from warfront.domain.events import ModifierSnapshot
from warfront.domain.rules_config import DEFAULT_RULES, RulesConfig
from warfront.models import Community, CommunityMember, CommunityModifierState, User, utc_now
from warfront.services.ledger_service import LedgerService
from warfront.services.membership import member_ids

logger = logging.getLogger(__name__)


class ModifierService:
    """Service for reading and transitioning combat modifiers."""

    def __init__(
        self,
        session: Session,
        ledger: LedgerService | None = None,
        rules: RulesConfig = DEFAULT_RULES,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session = session
        self.rules = rules
        self.ledger = ledger or LedgerService(session, rules)
        self.clock = clock

    # ------------------------------------------------------------------ state

    def _state(self, community_id: int) -> CommunityModifierState:
        self.session.flush()
        state = self._select_state(community_id)
        if state is not None:
            return state
        state = CommunityModifierState(
            community_id=community_id,
            disarray_active=False,
            momentum_active=False,
            exhaustion_active=False,
            conquest_timestamps=[],
            current_win_streak=0,
            total_conquests=0,
        )
        try:
            with self.session.begin_nested():
                self.session.add(state)
        except IntegrityError:
            # Another transaction created the row first
            state = self._select_state(community_id)
            if state is None:
                raise
        return state

    def _select_state(self, community_id: int) -> CommunityModifierState | None:
        return self.session.execute(
            select(CommunityModifierState)
            .where(CommunityModifierState.community_id == community_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _rules(self, community_id: int | None) -> RulesConfig:
        return self.rules.for_community(community_id)

    def _community_of(self, user: User) -> int | None:
        if user.main_community_id is not None:
            return user.main_community_id
        return self.session.execute(
            select(CommunityMember.community_id)
            .where(CommunityMember.user_id == user.id)
            .order_by(CommunityMember.joined_at)
            .limit(1)
        ).scalar_one_or_none()

    # --------------------------------------------------------------- disarray

    def get_disarray_multiplier(self, community_id: int) -> float:
        """Current energy cost multiplier; clears an expired disarray."""
        rules = self._rules(community_id).disarray
        if not rules.enabled:
            return 1.0
        state = self._state(community_id)
        if not state.disarray_active:
            return 1.0
        now = self.clock()
        if formulas.disarray_expired(state.disarray_started_at, now, rules):
            self._clear_disarray(state)
            return 1.0
        return formulas.disarray_multiplier(state.disarray_started_at, now, rules)

    def apply_disarray(self, community_id: int) -> None:
        if not self._rules(community_id).disarray.enabled:
            return
        state = self._state(community_id)
        state.disarray_active = True
        state.disarray_started_at = self.clock()
        logger.info("disarray applied to community %s", community_id)

    def _clear_disarray(self, state: CommunityModifierState) -> None:
        state.disarray_active = False
        state.disarray_started_at = None
        logger.info("disarray expired for community %s", state.community_id)

    # --------------------------------------------------------------- momentum

    def apply_momentum(self, community_id: int) -> list[int]:
        """Activate momentum and grant the morale bonus to current members.

        Returns:
            Ids of the members that received the bonus
        """
        rules = self._rules(community_id).momentum
        if not rules.enabled:
            return []
        now = self.clock()
        state = self._state(community_id)
        state.momentum_active = True
        state.momentum_expires_at = now + timedelta(hours=rules.duration_hours)

        rewarded = member_ids(self.session, community_id)
        for user_id in rewarded:
            self.ledger.adjust_morale(
                user_id,
                rules.morale_bonus,
                MoraleTrigger.VICTORY_MOMENTUM,
                {"community_id": community_id},
            )
        logger.info(
            "momentum applied to community %s (%d members)", community_id, len(rewarded)
        )
        return rewarded

    def is_momentum_active(self, community_id: int) -> bool:
        if not self._rules(community_id).momentum.enabled:
            return False
        state = self._state(community_id)
        if not state.momentum_active:
            return False
        if state.momentum_expires_at is None or self.clock() >= state.momentum_expires_at:
            self._clear_momentum(state)
            return False
        return True

    def _clear_momentum(self, state: CommunityModifierState) -> None:
        state.momentum_active = False
        state.momentum_expires_at = None

    # ------------------------------------------------------------- exhaustion

    def track_conquest(self, community_id: int) -> None:
        now = self.clock()
        rules = self._rules(community_id).exhaustion
        state = self._state(community_id)
        window = formulas.record_conquest(
            formulas.parse_window(state.conquest_timestamps), now, rules
        )
        state.conquest_timestamps = formulas.dump_window(window)
        state.last_conquest_at = now
        state.total_conquests += 1
        self._refresh_exhaustion(state, window, now)

    def check_exhaustion(self, community_id: int, now: datetime | None = None) -> bool:
        """Trim the conquest window and recompute the exhaustion flag."""
        now = now or self.clock()
        rules = self._rules(community_id).exhaustion
        state = self._state(community_id)
        window = formulas.trim_conquest_window(
            formulas.parse_window(state.conquest_timestamps), now, rules
        )
        reset_after = timedelta(hours=rules.reset_hours)
        if state.last_conquest_at is None or now - state.last_conquest_at >= reset_after:
            window = []
        state.conquest_timestamps = formulas.dump_window(window)
        return self._refresh_exhaustion(state, window, now)

    def _refresh_exhaustion(
        self, state: CommunityModifierState, window: list[datetime], now: datetime
    ) -> bool:
        exhausted = formulas.is_exhausted(window, self._rules(state.community_id).exhaustion)
        if exhausted and not state.exhaustion_active:
            state.exhaustion_active = True
            state.exhaustion_started_at = now
            logger.info("community %s is exhausted", state.community_id)
        elif not exhausted and state.exhaustion_active:
            state.exhaustion_active = False
            state.exhaustion_started_at = None
        return exhausted

    def is_exhausted(self, community_id: int) -> bool:
        if not self._rules(community_id).exhaustion.enabled:
            return False
        return self._state(community_id).exhaustion_active

    def energy_regen_rate(self, user_id: int) -> int:
        user = self.session.get(User, user_id)
        if user is None:
            return 0
        community_id = self._community_of(user)
        exhausted = community_id is not None and self.is_exhausted(community_id)
        return formulas.energy_regen(exhausted, self._rules(community_id).exhaustion)

    # -------------------------------------------------------------- outcomes

    def record_victory(self, community_id: int, *, conquest: bool) -> None:
        state = self._state(community_id)
        state.current_win_streak += 1
        self.apply_momentum(community_id)
        if conquest:
            self.track_conquest(community_id)

    def record_defeat(self, community_id: int) -> None:
        state = self._state(community_id)
        state.current_win_streak = 0
        self.apply_disarray(community_id)

    # ------------------------------------------------------------------- rage

    def rage_gain(self, base: float, morale: int) -> float:
        return formulas.rage_gain(base, morale, self.rules.rage)

    def add_rage(
        self,
        user_id: int,
        trigger: RageTrigger,
        context: dict[str, Any] | None = None,
    ) -> float:
        """Apply a rage trigger to one user.

        ``context["base_override"]`` replaces the trigger's base magnitude.

        Returns:
            The rage actually added after scaling and clamping
        """
        if not self.rules.rage.enabled:
            return 0.0
        context = dict(context or {})
        base = context.pop("base_override", None)
        if base is None:
            base = formulas.rage_trigger_base(trigger, self.rules.rage)
        user = self.ledger.lock_user(user_id)
        before = user.rage
        gain = self.rage_gain(float(base), user.morale)
        after = self.ledger.adjust_rage(user_id, gain, trigger, context)
        return after - before

    def add_community_rage(
        self,
        community_id: int,
        trigger: RageTrigger,
        context: dict[str, Any] | None = None,
    ) -> int:
        """Apply a rage trigger to every member of a community."""
        if not self.rules.rage.enabled:
            return 0
        members = member_ids(self.session, community_id)
        for user_id in members:
            self.add_rage(user_id, trigger, context)
        return len(members)

    def decay_rage(self) -> int:
        """Reduce everyone's rage by the decay step, never below zero."""
        if not self.rules.rage.enabled:
            return 0
        self.session.flush()
        user_ids = list(
            self.session.execute(select(User.id).where(User.rage > 0).order_by(User.id)).scalars()
        )
        for user_id in user_ids:
            self.ledger.adjust_rage(user_id, -self.rules.rage.decay_per_tick, RageTrigger.DECAY)
        return len(user_ids)

    # --------------------------------------------------------------- cleanup

    def cleanup_expired(self, now: datetime | None = None) -> tuple[int, int]:
        """Clear every disarray and momentum that has expired at ``now``.

        Returns:
            (disarray_cleared, momentum_cleared)
        """
        self.session.flush()
        now = now or self.clock()
        disarray_cleared = momentum_cleared = 0
        states = self.session.execute(
            select(CommunityModifierState)
            .where(
                CommunityModifierState.disarray_active.is_(True)
                | CommunityModifierState.momentum_active.is_(True)
            )
            .with_for_update()
        ).scalars()
        for state in states:
            if state.disarray_active and formulas.disarray_expired(
                state.disarray_started_at, now, self._rules(state.community_id).disarray
            ):
                self._clear_disarray(state)
                disarray_cleared += 1
            if state.momentum_active and (
                state.momentum_expires_at is None or now >= state.momentum_expires_at
            ):
                self._clear_momentum(state)
                momentum_cleared += 1
        return disarray_cleared, momentum_cleared

    def exhausted_or_tracking_communities(self) -> list[int]:
        self.session.flush()
        return list(
            self.session.execute(
                select(CommunityModifierState.community_id).where(
                    CommunityModifierState.exhaustion_active.is_(True)
                    | CommunityModifierState.last_conquest_at.is_not(None)
                )
            ).scalars()
        )

    def get_state(self, community_id: int) -> ModifierSnapshot:
        if self.session.get(Community, community_id) is None:
            raise NotFoundError("community", community_id)
        multiplier = self.get_disarray_multiplier(community_id)
        momentum = self.is_momentum_active(community_id)
        state = self._state(community_id)
        now = self.clock()
        rules = self._rules(community_id)
        window = formulas.trim_conquest_window(
            formulas.parse_window(state.conquest_timestamps), now, rules.exhaustion
        )
        return ModifierSnapshot(
            community_id=community_id,
            disarray_multiplier=multiplier,
            disarray_active=state.disarray_active,
            momentum_active=momentum,
            momentum_expires_at=state.momentum_expires_at,
            exhaustion_active=rules.exhaustion.enabled and state.exhaustion_active,
            recent_conquests=len(window),
            current_win_streak=state.current_win_streak,
            total_conquests=state.total_conquests,
        )
