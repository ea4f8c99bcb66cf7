"""Unit tests for RebellionService."""

from datetime import timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from warfront.domain.enums import (
    BattleKind,
    BattleStatus,
    CivilWarStatus,
    CooldownType,
    RebellionStatus,
)
from warfront.domain.errors import NotFoundError, Reason, StateConflictError, ValidationError
from warfront.models import Battle, CivilWar, CommunityMember, MoraleEvent, Rebellion, User
from warfront.services.rebellion_service import required_supports


@pytest.fixture
def realm(world):
    """A ruler and ten unhappy members: two supporters start a civil war."""
    return world.community("Realm", members=10, member_morale=40)


def _subjects(world, realm):
    ruler = world.ruler_id(realm)
    return [user_id for user_id in world.members(realm) if user_id != ruler]


def _membership(session, community, user_id):
    return (
        session.query(CommunityMember)
        .filter_by(community_id=community.id, user_id=user_id)
        .one_or_none()
    )


class TestRequiredSupports:
    @pytest.mark.parametrize(
        ("members", "expected"),
        [(0, 1), (1, 1), (5, 1), (6, 2), (10, 2), (15, 3), (20, 4), (21, 5)],
    )
    def test_formula(self, members, expected):
        assert required_supports(members, 0.2) == expected

    @given(st.integers(min_value=0, max_value=10_000))
    def test_never_below_one_or_the_ratio(self, members):
        required = required_supports(members, 0.2)
        assert required >= 1
        assert required >= members * 0.2 - 1e-9
        assert required - 1 < max(1, members * 0.2)


class TestStartUprising:
    def test_creates_agitation(self, services, world, realm, clock, session):
        leader = _subjects(world, realm)[0]
        result = services.rebellions.start_uprising(leader, realm.id)

        assert result.required_supports == 2
        assert result.civil_war_id is None
        rebellion = session.get(Rebellion, result.rebellion_id)
        assert rebellion.status is RebellionStatus.AGITATION
        assert rebellion.current_supports == 1
        assert rebellion.target_id == world.ruler_id(realm)
        assert rebellion.agitation_expires_at == clock.now + timedelta(hours=1)

    def test_instigator_pays_morale(self, services, world, realm, session):
        leader = _subjects(world, realm)[0]
        result = services.rebellions.start_uprising(leader, realm.id)

        assert session.get(User, leader).morale == 35
        event = session.query(MoraleEvent).filter_by(user_id=leader).one()
        assert event.trigger == "uprising:started"
        assert event.delta == -5
        assert event.context == {"rebellion_id": result.rebellion_id, "community_id": realm.id}

    def test_members_are_told(self, services, world, realm, notifier):
        leader = _subjects(world, realm)[0]
        result = services.rebellions.start_uprising(leader, realm.id)

        told = sorted(user_id for user_id, _ in notifier.sent)
        assert told == [u for u in world.members(realm) if u != leader]
        assert notifier.sent[0][1] == {
            "type": "rebellion_started",
            "rebellion_id": result.rebellion_id,
            "leader_id": leader,
        }

    def test_ruler_is_not_eligible(self, services, world, realm):
        with pytest.raises(ValidationError) as excinfo:
            services.rebellions.start_uprising(world.ruler_id(realm), realm.id)
        assert excinfo.value.reason is Reason.NOT_ELIGIBLE

    def test_outsider_is_not_eligible(self, services, world, realm):
        with pytest.raises(ValidationError) as excinfo:
            services.rebellions.start_uprising(world.user().id, realm.id)
        assert excinfo.value.reason is Reason.NOT_ELIGIBLE

    def test_happy_member_in_happy_community(self, services, world):
        content = world.community("Content", members=4, member_morale=70)
        with pytest.raises(ValidationError) as excinfo:
            services.rebellions.start_uprising(_subjects(world, content)[0], content.id)
        assert excinfo.value.reason is Reason.MORALE_TOO_HIGH

    def test_miserable_community_lets_happy_member_rebel(self, services, world):
        happy = world.user(morale=80)
        miserable = [world.user(morale=5) for _ in range(4)]
        community = world.community("Miserable", ruler_morale=5, members=[happy, *miserable])
        result = services.rebellions.start_uprising(happy.id, community.id)
        assert result.rebellion_id

    def test_one_active_rebellion_per_community(self, services, world, realm):
        first, second = _subjects(world, realm)[:2]
        services.rebellions.start_uprising(first, realm.id)
        with pytest.raises(StateConflictError) as excinfo:
            services.rebellions.start_uprising(second, realm.id)
        assert excinfo.value.reason is Reason.ALREADY_IN_PROGRESS

    def test_failure_cooldown(self, services, world, realm, clock):
        first, second = _subjects(world, realm)[:2]
        services.rebellions.start_uprising(first, realm.id)
        clock.advance(hours=1)
        assert services.rebellions.expire_agitations() == (1, 0)

        clock.advance(hours=47)
        with pytest.raises(StateConflictError):
            services.rebellions.start_uprising(second, realm.id)
        clock.advance(hours=1)
        assert services.rebellions.start_uprising(second, realm.id).rebellion_id

    def test_small_community_goes_straight_to_civil_war(self, services, world, session):
        hamlet = world.community("Hamlet", members=1, member_morale=10)
        result = services.rebellions.start_uprising(_subjects(world, hamlet)[0], hamlet.id)

        assert result.required_supports == 1
        assert result.civil_war_id is not None
        civil_war = session.get(CivilWar, result.civil_war_id)
        battle = session.get(Battle, civil_war.battle_id)
        assert battle.kind is BattleKind.CIVIL_WAR
        assert session.get(Rebellion, result.rebellion_id).status is RebellionStatus.BATTLE

    def test_can_start_uprising(self, services, world, realm):
        subject = _subjects(world, realm)[0]
        assert services.rebellions.can_start_uprising(subject, realm.id).eligible
        verdict = services.rebellions.can_start_uprising(world.ruler_id(realm), realm.id)
        assert not verdict.eligible
        assert verdict.reason == "NotEligible"

    def test_unknown_community(self, services, world):
        with pytest.raises(NotFoundError):
            services.rebellions.start_uprising(world.user().id, 404)


class TestSupportUprising:
    @pytest.fixture
    def rebellion_id(self, services, world, realm):
        return services.rebellions.start_uprising(_subjects(world, realm)[0], realm.id).rebellion_id

    def test_threshold_starts_civil_war(self, services, world, realm, rebellion_id, session):
        supporter = _subjects(world, realm)[1]
        result = services.rebellions.support_uprising(supporter, rebellion_id)

        assert result.current_supports == 2
        assert result.civil_war_started
        rebellion = session.get(Rebellion, rebellion_id)
        assert rebellion.status is RebellionStatus.BATTLE
        assert rebellion.battle_started_at is not None
        assert session.query(CivilWar).filter_by(rebellion_id=rebellion_id).count() == 1

    def test_supporter_gains_morale(self, services, world, realm, rebellion_id, session):
        supporter = _subjects(world, realm)[1]
        services.rebellions.support_uprising(supporter, rebellion_id)

        assert session.get(User, supporter).morale == 43
        event = session.query(MoraleEvent).filter_by(user_id=supporter).one()
        assert event.trigger == "uprising:support"
        assert event.delta == 3

    def test_civil_war_is_announced(self, services, world, realm, rebellion_id, notifier):
        leader, supporter = _subjects(world, realm)[:2]
        notifier.sent.clear()
        result = services.rebellions.support_uprising(supporter, rebellion_id)

        told = sorted(user_id for user_id, _ in notifier.sent)
        assert told == [u for u in world.members(realm) if u != leader]
        assert {payload["type"] for _, payload in notifier.sent} == {"civil_war_started"}
        assert notifier.sent[0][1]["civil_war_id"] == result.civil_war_id

    def test_support_below_threshold_is_quiet(self, services, world, notifier):
        county = world.community("County", members=15, member_morale=40)
        subjects = _subjects(world, county)
        rebellion_id = services.rebellions.start_uprising(subjects[0], county.id).rebellion_id
        notifier.sent.clear()

        result = services.rebellions.support_uprising(subjects[1], rebellion_id)
        assert not result.civil_war_started
        assert notifier.sent == []

    def test_already_supporting(self, services, world, realm, rebellion_id):
        leader = _subjects(world, realm)[0]
        with pytest.raises(ValidationError) as excinfo:
            services.rebellions.support_uprising(leader, rebellion_id)
        assert excinfo.value.reason is Reason.ALREADY_SUPPORTING

    def test_ruler_cannot_support(self, services, world, realm, rebellion_id):
        with pytest.raises(ValidationError) as excinfo:
            services.rebellions.support_uprising(world.ruler_id(realm), rebellion_id)
        assert excinfo.value.reason is Reason.NOT_ELIGIBLE

    def test_support_after_civil_war_started(self, services, world, realm, rebellion_id):
        subjects = _subjects(world, realm)
        services.rebellions.support_uprising(subjects[1], rebellion_id)
        with pytest.raises(StateConflictError) as excinfo:
            services.rebellions.support_uprising(subjects[2], rebellion_id)
        assert excinfo.value.reason is Reason.NOT_IN_AGITATION

    def test_support_after_deadline(self, services, world, realm, rebellion_id, clock):
        clock.advance(hours=1)
        with pytest.raises(StateConflictError) as excinfo:
            services.rebellions.support_uprising(_subjects(world, realm)[1], rebellion_id)
        assert excinfo.value.reason is Reason.NOT_IN_AGITATION

    def test_support_while_leader_exiled(self, services, world, realm, rebellion_id):
        services.rebellions.exile_leader(rebellion_id, world.ruler_id(realm))
        with pytest.raises(StateConflictError) as excinfo:
            services.rebellions.support_uprising(_subjects(world, realm)[1], rebellion_id)
        assert excinfo.value.reason is Reason.LEADER_EXILED

    def test_unknown_rebellion(self, services, world, realm):
        with pytest.raises(NotFoundError):
            services.rebellions.support_uprising(_subjects(world, realm)[0], 404)


class TestExileAndReinvite:
    @pytest.fixture
    def rebellion_id(self, services, world, realm):
        return services.rebellions.start_uprising(_subjects(world, realm)[0], realm.id).rebellion_id

    def test_exile_removes_leader_and_costs_ruler_morale(
        self, services, world, realm, rebellion_id, session, clock
    ):
        ruler = world.ruler_id(realm)
        leader = _subjects(world, realm)[0]
        assert services.rebellions.exile_leader(rebellion_id, ruler)

        assert _membership(session, realm, leader) is None
        assert session.get(User, ruler).morale == 35
        rebellion = session.get(Rebellion, rebellion_id)
        assert rebellion.is_leader_exiled
        assert rebellion.cooldown_type is CooldownType.EXILE
        assert rebellion.cooldown_until == clock.now + timedelta(hours=1)

    def test_only_ruler_exiles(self, services, world, realm, rebellion_id):
        with pytest.raises(ValidationError) as excinfo:
            services.rebellions.exile_leader(rebellion_id, _subjects(world, realm)[3])
        assert excinfo.value.reason is Reason.NOT_RULER

    def test_exile_twice(self, services, world, realm, rebellion_id):
        ruler = world.ruler_id(realm)
        services.rebellions.exile_leader(rebellion_id, ruler)
        with pytest.raises(StateConflictError) as excinfo:
            services.rebellions.exile_leader(rebellion_id, ruler)
        assert excinfo.value.reason is Reason.LEADER_EXILED

    def test_reinvite_needs_rank(self, services, world, realm, rebellion_id):
        services.rebellions.exile_leader(rebellion_id, world.ruler_id(realm))
        with pytest.raises(ValidationError) as excinfo:
            services.rebellions.reinvite_leader(rebellion_id, _subjects(world, realm)[3])
        assert excinfo.value.reason is Reason.INSUFFICIENT_RANK

    def test_reinvite_requires_exile(self, services, world, realm, rebellion_id):
        with pytest.raises(StateConflictError) as excinfo:
            services.rebellions.reinvite_leader(rebellion_id, world.ruler_id(realm))
        assert excinfo.value.reason is Reason.NOT_EXILED

    def test_reinvite_restores_membership_and_deadline(
        self, services, world, realm, rebellion_id, session, clock
    ):
        ruler = world.ruler_id(realm)
        leader = _subjects(world, realm)[0]
        deadline = session.get(Rebellion, rebellion_id).agitation_expires_at

        services.rebellions.exile_leader(rebellion_id, ruler)
        clock.advance(minutes=30)
        assert services.rebellions.reinvite_leader(rebellion_id, ruler)

        assert _membership(session, realm, leader).rank_tier == 10
        rebellion = session.get(Rebellion, rebellion_id)
        assert not rebellion.is_leader_exiled
        assert rebellion.cooldown_until is None
        assert rebellion.agitation_expires_at == deadline + timedelta(minutes=30)

    def test_exiled_rebellion_fails_once_exile_cooldown_passes(
        self, services, world, realm, rebellion_id, clock, session
    ):
        services.rebellions.exile_leader(rebellion_id, world.ruler_id(realm))
        clock.advance(hours=1, minutes=59)
        assert services.rebellions.expire_agitations() == (0, 0)

        clock.advance(minutes=1)
        assert services.rebellions.expire_agitations() == (1, 0)
        rebellion = session.get(Rebellion, rebellion_id, populate_existing=True)
        assert rebellion.status is RebellionStatus.FAILED
        assert rebellion.cooldown_type is CooldownType.FAILURE

    def test_reinvited_leader_keeps_agitation_alive(
        self, services, world, realm, rebellion_id, clock
    ):
        ruler = world.ruler_id(realm)
        services.rebellions.exile_leader(rebellion_id, ruler)
        clock.advance(minutes=50)
        services.rebellions.reinvite_leader(rebellion_id, ruler)

        clock.advance(minutes=59)
        assert services.rebellions.expire_agitations() == (0, 0)
        clock.advance(minutes=1)
        assert services.rebellions.expire_agitations() == (1, 0)


class TestExpireAgitations:
    def test_failing_rebellion_is_counted_and_skipped(self, services, world, clock, monkeypatch):
        frost = world.community("Frost", members=10, member_morale=30)
        thaw = world.community("Thaw", members=10, member_morale=30)
        stuck = services.rebellions.start_uprising(_subjects(world, frost)[0], frost.id)
        expired = services.rebellions.start_uprising(_subjects(world, thaw)[0], thaw.id)
        clock.advance(hours=1)

        commit = services.session.commit
        attempts = []

        def flaky_commit():
            attempts.append(True)
            if len(attempts) == 1:
                raise RuntimeError("disk full")
            commit()

        monkeypatch.setattr(services.session, "commit", flaky_commit)
        assert services.rebellions.expire_agitations() == (1, 1)
        monkeypatch.undo()

        assert services.rebellions.get_rebellion(stuck.rebellion_id).status is (
            RebellionStatus.AGITATION
        )
        assert services.rebellions.get_rebellion(expired.rebellion_id).status is (
            RebellionStatus.FAILED
        )
        assert services.rebellions.expire_agitations() == (1, 0)


class TestNegotiation:
    @pytest.fixture
    def rebellion_id(self, services, world, realm):
        return services.rebellions.start_uprising(_subjects(world, realm)[0], realm.id).rebellion_id

    def test_only_ruler_requests(self, services, world, realm, rebellion_id):
        with pytest.raises(ValidationError) as excinfo:
            services.rebellions.request_negotiation(rebellion_id, _subjects(world, realm)[0])
        assert excinfo.value.reason is Reason.NOT_RULER

    def test_one_pending_at_a_time(self, services, world, realm, rebellion_id):
        ruler = world.ruler_id(realm)
        services.rebellions.request_negotiation(rebellion_id, ruler)
        with pytest.raises(StateConflictError) as excinfo:
            services.rebellions.request_negotiation(rebellion_id, ruler)
        assert excinfo.value.reason is Reason.NEGOTIATION_PENDING

    def test_only_leader_responds(self, services, world, realm, rebellion_id):
        negotiation_id = services.rebellions.request_negotiation(
            rebellion_id, world.ruler_id(realm)
        )
        with pytest.raises(ValidationError) as excinfo:
            services.rebellions.respond_to_negotiation(
                negotiation_id, _subjects(world, realm)[1], True
            )
        assert excinfo.value.reason is Reason.NOT_LEADER

    def test_rejection_keeps_rebellion_open(self, services, world, realm, rebellion_id):
        ruler = world.ruler_id(realm)
        leader = _subjects(world, realm)[0]
        negotiation_id = services.rebellions.request_negotiation(rebellion_id, ruler)

        outcome = services.rebellions.respond_to_negotiation(negotiation_id, leader, False)

        assert not outcome.accepted
        assert outcome.rebellion_status is RebellionStatus.AGITATION
        assert services.rebellions.request_negotiation(rebellion_id, ruler) != negotiation_id

    def test_answer_twice(self, services, world, realm, rebellion_id):
        leader = _subjects(world, realm)[0]
        negotiation_id = services.rebellions.request_negotiation(
            rebellion_id, world.ruler_id(realm)
        )
        services.rebellions.respond_to_negotiation(negotiation_id, leader, False)
        with pytest.raises(StateConflictError) as excinfo:
            services.rebellions.respond_to_negotiation(negotiation_id, leader, True)
        assert excinfo.value.reason is Reason.NEGOTIATION_ANSWERED

    def test_acceptance_during_civil_war_closes_battle(
        self, services, world, realm, rebellion_id, session
    ):
        subjects = _subjects(world, realm)
        ruler = world.ruler_id(realm)
        services.rebellions.support_uprising(subjects[1], rebellion_id)
        negotiation_id = services.rebellions.request_negotiation(rebellion_id, ruler)

        outcome = services.rebellions.respond_to_negotiation(negotiation_id, subjects[0], True)

        assert outcome.rebellion_status is RebellionStatus.NEGOTIATED
        civil_war = session.query(CivilWar).filter_by(rebellion_id=rebellion_id).one()
        assert civil_war.status is CivilWarStatus.NEGOTIATED
        battle = session.get(Battle, civil_war.battle_id)
        assert battle.status is BattleStatus.DEFENDER_WON
        assert battle.rankings_processed_at is not None

    def test_closed_rebellion(self, services, world, realm, rebellion_id, clock):
        clock.advance(hours=1)
        services.rebellions.expire_agitations()
        with pytest.raises(StateConflictError) as excinfo:
            services.rebellions.request_negotiation(rebellion_id, world.ruler_id(realm))
        assert excinfo.value.reason is Reason.REBELLION_CLOSED

    def test_unknown_negotiation(self, services, world, realm):
        with pytest.raises(NotFoundError):
            services.rebellions.respond_to_negotiation(404, _subjects(world, realm)[0], True)


class TestCivilWar:
    @pytest.fixture
    def civil_war_id(self, services, world, realm):
        subjects = _subjects(world, realm)
        rebellion_id = services.rebellions.start_uprising(subjects[0], realm.id).rebellion_id
        return services.rebellions.support_uprising(subjects[1], rebellion_id).civil_war_id

    def test_rebels_win(self, services, world, realm, civil_war_id, session):
        ruler = world.ruler_id(realm)
        subjects = _subjects(world, realm)
        leader, supporter, loyalist = subjects[0], subjects[1], subjects[2]

        assert services.rebellions.resolve_civil_war(civil_war_id, leader) == "rebels_won"

        assert _membership(session, realm, leader).rank_tier == 0
        assert _membership(session, realm, ruler).rank_tier == 10
        assert session.get(User, leader).morale == 55
        assert session.get(User, supporter).morale == 63
        assert session.get(User, loyalist).morale == 30
        assert session.get(User, ruler).morale == 50

        civil_war = session.get(CivilWar, civil_war_id)
        assert civil_war.status is CivilWarStatus.REBELS_WON
        assert session.get(Rebellion, civil_war.rebellion_id).status is RebellionStatus.SUCCESS
        assert session.get(Battle, civil_war.battle_id).status is BattleStatus.ATTACKER_WON

    def test_rulers_hold(self, services, world, realm, civil_war_id, session, clock):
        ruler = world.ruler_id(realm)
        assert services.rebellions.resolve_civil_war(civil_war_id, ruler) == "rulers_won"

        civil_war = session.get(CivilWar, civil_war_id)
        rebellion = session.get(Rebellion, civil_war.rebellion_id)
        assert rebellion.status is RebellionStatus.FAILED
        assert rebellion.cooldown_type is CooldownType.FAILURE
        assert rebellion.cooldown_until == clock.now + timedelta(hours=48)
        assert _membership(session, realm, ruler).rank_tier == 0
        assert session.get(Battle, civil_war.battle_id).status is BattleStatus.DEFENDER_WON

    def test_winner_must_be_a_side(self, services, world, realm, civil_war_id, session):
        bystander = _subjects(world, realm)[4]
        with pytest.raises(ValidationError) as excinfo:
            services.rebellions.resolve_civil_war(civil_war_id, bystander)
        assert excinfo.value.reason is Reason.INVALID_WINNER
        assert session.get(CivilWar, civil_war_id).status is CivilWarStatus.ACTIVE

    def test_resolve_twice(self, services, world, realm, civil_war_id):
        ruler = world.ruler_id(realm)
        services.rebellions.resolve_civil_war(civil_war_id, ruler)
        with pytest.raises(StateConflictError) as excinfo:
            services.rebellions.resolve_civil_war(civil_war_id, ruler)
        assert excinfo.value.reason is Reason.REBELLION_CLOSED

    def test_battle_victory_settles_civil_war(self, services, world, realm, civil_war_id, session):
        leader = _subjects(world, realm)[0]
        battle_id = session.get(CivilWar, civil_war_id).battle_id

        for _ in range(9):
            result = services.battles.apply_damage(battle_id, leader, "attacker", 1200)
        assert result.status is BattleStatus.ATTACKER_WON

        assert session.get(CivilWar, civil_war_id).status is CivilWarStatus.REBELS_WON
        assert _membership(session, realm, leader).rank_tier == 0
        # uprising cost, supporter bonus, then the battle hero medal
        assert session.get(User, leader).morale == 58

    def test_battle_deadline_settles_for_rulers(
        self, services, world, realm, civil_war_id, session, clock
    ):
        battle_id = session.get(CivilWar, civil_war_id).battle_id
        clock.advance(hours=1)
        assert services.battles.resolve(battle_id) is BattleStatus.DEFENDER_WON
        assert session.get(CivilWar, civil_war_id).status is CivilWarStatus.RULERS_WON

    def test_civil_war_sides(self, services, world, realm, civil_war_id, session):
        subjects = _subjects(world, realm)
        battle_id = session.get(CivilWar, civil_war_id).battle_id

        with pytest.raises(ValidationError):
            services.battles.apply_damage(battle_id, subjects[5], "attacker", 100)
        with pytest.raises(ValidationError):
            services.battles.apply_damage(battle_id, subjects[0], "defender", 100)
        result = services.battles.apply_damage(battle_id, world.ruler_id(realm), "defender", 100)
        assert result.defender_score == 100
