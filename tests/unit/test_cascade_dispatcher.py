"""Unit tests for CascadeDispatcher ordering, failure isolation and the event outbox."""

from datetime import UTC, datetime
from unittest.mock import MagicMock, Mock

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from warfront.domain.enums import BattleKind, BattleSide, BattleStatus
from warfront.domain.events import (
    BattleResolved,
    ParticipantOutcome,
    RankScoreUpdated,
    TerritoryOwnershipChanged,
)
from warfront.models import Territory
from warfront.services.cascade_service import CascadeDispatcher, EventOutbox


def _event() -> BattleResolved:
    return BattleResolved(
        battle_id=5,
        kind=BattleKind.CONQUEST,
        status=BattleStatus.ATTACKER_WON,
        winner_side=BattleSide.ATTACKER,
        winner_community_id=1,
        loser_community_id=2,
        territory_id="north-pass",
        was_capital=False,
        resolved_at=datetime(2025, 3, 1, tzinfo=UTC),
        participants=(
            ParticipantOutcome(10, BattleSide.ATTACKER, 900),
            ParticipantOutcome(11, BattleSide.DEFENDER, 300),
        ),
    )


class TestCascadeDispatcher:
    """Test cases for handler ordering and the best-effort boundary."""

    def setup_method(self):
        self.mock_session = Mock(spec=Session)
        self.mock_session.begin_nested.return_value = MagicMock()
        self.dispatcher = CascadeDispatcher(self.mock_session)
        self.calls = []

    def _handler(self, name, fail=False):
        def handler(event):
            self.calls.append(name)
            if fail:
                raise RuntimeError(f"{name} broke")

        return handler

    def test_critical_handlers_run_before_best_effort(self):
        self.dispatcher.register("notify", self._handler("notify"), critical=False)
        self.dispatcher.register("ranking", self._handler("ranking"))
        self.dispatcher.register("missions", self._handler("missions"), critical=False)
        self.dispatcher.register("modifiers", self._handler("modifiers"))

        report = self.dispatcher.dispatch(_event())

        assert self.calls == ["ranking", "modifiers", "notify", "missions"]
        assert report.handlers_run == self.calls
        assert report.ok

    def test_best_effort_failure_is_recorded_not_raised(self):
        self.dispatcher.register("ranking", self._handler("ranking"))
        self.dispatcher.register("notify", self._handler("notify", fail=True), critical=False)
        self.dispatcher.register("missions", self._handler("missions"), critical=False)

        report = self.dispatcher.dispatch(_event())

        assert self.calls == ["ranking", "notify", "missions"]
        assert report.handlers_run == ["ranking", "missions"]
        assert not report.ok
        assert report.failures[0].handler == "notify"
        assert report.failures[0].battle_id == 5
        assert "notify broke" in report.failures[0].error

    def test_best_effort_runs_in_savepoint(self):
        self.dispatcher.register("notify", self._handler("notify"), critical=False)
        self.dispatcher.dispatch(_event())
        self.mock_session.begin_nested.assert_called_once()

    def test_critical_failure_propagates(self):
        self.dispatcher.register("ranking", self._handler("ranking", fail=True))
        self.dispatcher.register("notify", self._handler("notify"), critical=False)

        with pytest.raises(RuntimeError, match="ranking broke"):
            self.dispatcher.dispatch(_event())
        assert self.calls == ["ranking"]

    def test_only_filters_handlers(self):
        self.dispatcher.register("ranking", self._handler("ranking"))
        self.dispatcher.register("modifiers", self._handler("modifiers"))
        self.dispatcher.register("notify", self._handler("notify"), critical=False)

        report = self.dispatcher.dispatch(_event(), only={"ranking"})

        assert self.calls == ["ranking"]
        assert report.handlers_run == ["ranking"]

    def test_duplicate_names_rejected(self):
        self.dispatcher.register("ranking", self._handler("ranking"))
        with pytest.raises(ValueError, match="already registered"):
            self.dispatcher.register("ranking", self._handler("ranking"))

    def test_event_helpers(self):
        event = _event()
        assert [p.user_id for p in event.winners()] == [10]
        assert [p.user_id for p in event.losers()] == [11]
        assert not event.is_civil_war


def _rank_event(user_id=10) -> RankScoreUpdated:
    return RankScoreUpdated(user_id=user_id, score=120, rank="Private", battle_id=5)


class TestEventOutbox:
    def test_delivered_on_commit(self, session, event_sink):
        outbox = EventOutbox(session, event_sink)
        session.execute(select(1))
        outbox.add(_rank_event())
        assert event_sink.events == []

        session.commit()
        assert event_sink.events == [_rank_event()]
        assert outbox.pending == ()

    def test_dropped_on_rollback(self, session, event_sink):
        outbox = EventOutbox(session, event_sink)
        session.execute(select(1))
        outbox.add(_rank_event())
        session.rollback()
        assert outbox.pending == ()

        session.execute(select(1))
        session.commit()
        assert event_sink.events == []

    def test_savepoint_rollback_keeps_outer_events(self, session, event_sink):
        outbox = EventOutbox(session, event_sink)
        session.execute(select(1))
        outbox.add(_rank_event(10))
        savepoint = session.begin_nested()
        savepoint.rollback()
        assert outbox.pending == (_rank_event(10),)

        session.commit()
        assert event_sink.events == [_rank_event(10)]

    def test_sink_failure_is_logged(self, session):
        sink = Mock()
        sink.publish.side_effect = [RuntimeError("broker down"), None]
        outbox = EventOutbox(session, sink)
        session.execute(select(1))
        outbox.add(_rank_event(10))
        outbox.add(_rank_event(11))

        session.commit()
        assert sink.publish.call_count == 2

    def test_failed_best_effort_handler_drops_its_events(self, session, event_sink):
        outbox = EventOutbox(session, event_sink)
        dispatcher = CascadeDispatcher(session, outbox)

        def noisy(event):
            outbox.add(_rank_event(event.battle_id))
            raise RuntimeError("half done")

        dispatcher.register("ranking", lambda event: outbox.add(_rank_event(1)))
        dispatcher.register("noisy", noisy, critical=False)
        report = dispatcher.dispatch(_event())

        assert not report.ok
        assert outbox.pending == (_rank_event(1),)


class TestEventsFollowCommit:
    @pytest.fixture
    def front(self, services, world):
        attackers = world.community("Crows", members=1)
        defenders = world.community("Doves", members=1)
        world.relate(attackers, defenders)
        world.territory("bridge", defenders)
        battle_id = services.battles.start_battle(attackers.id, "bridge")
        return battle_id, world.members(attackers)[0], defenders.id

    def test_critical_failure_publishes_nothing(self, services, front, event_sink, session):
        battle_id, attacker, defenders_id = front

        def refuse(event):
            raise RuntimeError("ledger offline")

        services.cascade.dispatcher.register("audit", refuse)
        with pytest.raises(RuntimeError, match="ledger offline"):
            services.battles.apply_damage(battle_id, attacker, "attacker", 10000)

        assert event_sink.events == []
        assert services.cascade.outbox.pending == ()
        territory = session.get(Territory, "bridge", populate_existing=True)
        assert territory.owner_community_id == defenders_id

    def test_events_published_after_commit(self, services, front, event_sink):
        battle_id, attacker, _ = front
        seen_during_cascade = []
        services.cascade.dispatcher.register(
            "audit", lambda event: seen_during_cascade.append(list(event_sink.events))
        )

        result = services.battles.apply_damage(battle_id, attacker, "attacker", 10000)

        assert result.status is BattleStatus.ATTACKER_WON
        assert seen_during_cascade == [[]]
        kinds = {type(event) for event in event_sink.events}
        assert kinds == {TerritoryOwnershipChanged, RankScoreUpdated}
