"""End-to-end scenarios across battles, rebellions and the cascade."""

from datetime import timedelta

import pytest

from warfront.domain.enums import (
    BattleKind,
    BattleStatus,
    CivilWarStatus,
    CooldownType,
    MilitaryRank,
    RebellionStatus,
)
from warfront.domain.errors import Reason, StateConflictError
from warfront.domain.events import TerritoryOwnershipChanged
from warfront.models import Battle, CivilWar, Rebellion, Territory, User

pytestmark = pytest.mark.integration


def _subjects(world, community):
    ruler = world.ruler_id(community)
    return [user_id for user_id in world.members(community) if user_id != ruler]


class TestUprisingThreshold:
    def test_twenty_members_need_four_supporters(self, services, world, session):
        community = world.community("Marsh Hold", members=20, member_morale=40)
        subjects = _subjects(world, community)

        started = services.rebellions.start_uprising(subjects[0], community.id)
        assert started.required_supports == 4
        assert started.civil_war_id is None

        for supporter in subjects[1:3]:
            result = services.rebellions.support_uprising(supporter, started.rebellion_id)
            assert not result.civil_war_started
        assert services.rebellions.get_rebellion(started.rebellion_id).status is (
            RebellionStatus.AGITATION
        )

        result = services.rebellions.support_uprising(subjects[3], started.rebellion_id)
        assert result.civil_war_started
        assert result.current_supports == 4

        rebellion = session.get(Rebellion, started.rebellion_id, populate_existing=True)
        assert rebellion.status is RebellionStatus.BATTLE
        civil_war = session.query(CivilWar).one()
        assert civil_war.id == result.civil_war_id
        assert civil_war.rebellion_id == rebellion.id
        assert civil_war.status is CivilWarStatus.ACTIVE
        assert session.get(Battle, civil_war.battle_id).kind is BattleKind.CIVIL_WAR

        with pytest.raises(StateConflictError) as excinfo:
            services.rebellions.support_uprising(subjects[4], started.rebellion_id)
        assert excinfo.value.reason is Reason.NOT_IN_AGITATION

    def test_threshold_fixed_at_creation(self, services, world, session):
        community = world.community("Fen", members=20, member_morale=40)
        subjects = _subjects(world, community)
        started = services.rebellions.start_uprising(subjects[0], community.id)

        # Ten more join after the uprising began
        for _ in range(10):
            world.join(community, world.user(morale=40))
        session.commit()

        assert services.rebellions.get_rebellion(started.rebellion_id).required_supports == 4


class TestConquest:
    @pytest.fixture
    def conquest(self, services, world):
        attackers = world.community("Iron Crown", members=1)
        defenders = world.community("Willow Vale", members=1)
        world.relate(attackers, defenders)
        world.territory("riverford", defenders)
        battle_id = services.battles.start_battle(attackers.id, "riverford")
        return attackers, defenders, battle_id

    def test_ninth_hit_takes_the_territory(self, services, world, session, conquest):
        attackers, defenders, battle_id = conquest
        attacker = world.members(attackers)[0]

        for _ in range(8):
            result = services.battles.apply_damage(battle_id, attacker, "attacker", 1200)
            assert result.status is BattleStatus.ACTIVE
        assert result.current_defense == 400

        result = services.battles.apply_damage(battle_id, attacker, "attacker", 1200)
        assert result.status is BattleStatus.ATTACKER_WON
        assert result.current_defense == 0
        assert result.attacker_score == 10800

        with pytest.raises(StateConflictError) as excinfo:
            services.battles.apply_damage(battle_id, attacker, "attacker", 1200)
        assert excinfo.value.reason is Reason.BATTLE_NOT_ACTIVE

        territory = session.get(Territory, "riverford", populate_existing=True)
        assert territory.owner_community_id == attackers.id
        battle = session.get(Battle, battle_id, populate_existing=True)
        assert battle.rankings_processed_at is not None
        assert battle.attacker_score == 10800

    def test_cascade_effects(
        self, services, world, session, conquest, wallet, missions, event_sink, notifier
    ):
        attackers, defenders, battle_id = conquest
        attacker = world.members(attackers)[0]
        for _ in range(9):
            services.battles.apply_damage(battle_id, attacker, "attacker", 1200)
        session.expire_all()

        hero = session.get(User, attacker)
        assert hero.energy == 10
        # Momentum +15 then battle hero +3
        assert hero.morale == 68
        assert hero.battle_hero_medals == 1
        assert hero.military_rank_score == 17217
        assert hero.military_rank is MilitaryRank.SERGEANT
        assert wallet.credits == [(attacker, "gold", 3, "medal:battle_hero")]
        assert (attacker, "battle_won") in missions.increments

        for user_id in world.members(defenders):
            loser = session.get(User, user_id)
            assert loser.morale == 40
            # under attack 7.5, territory lost 16, battle lost 16
            assert loser.rage == pytest.approx(39.5)

        changes = [e for e in event_sink.events if isinstance(e, TerritoryOwnershipChanged)]
        assert len(changes) == 1
        assert changes[0].previous_owner_id == defenders.id
        assert changes[0].new_owner_id == attackers.id

        outcomes = [p for _, p in notifier.sent if p["type"] == "battle_outcome"]
        assert outcomes == [
            {
                "type": "battle_outcome",
                "battle_id": battle_id,
                "status": "attacker_won",
                "won": True,
                "damage_dealt": 10800,
            }
        ]

        snapshot = services.modifiers.get_state(defenders.id)
        assert snapshot.disarray_active
        assert snapshot.disarray_multiplier == pytest.approx(3.0)
        assert services.modifiers.get_state(attackers.id).momentum_active


class TestNegotiation:
    def test_accepted_negotiation_sets_cooldown(self, services, world, session, clock):
        community = world.community("Stone Court", members=10, member_morale=40, ruler_morale=20)
        ruler = world.ruler_id(community)
        leader = _subjects(world, community)[0]
        started = services.rebellions.start_uprising(leader, community.id)

        negotiation_id = services.rebellions.request_negotiation(started.rebellion_id, ruler)
        outcome = services.rebellions.respond_to_negotiation(negotiation_id, leader, True)
        assert outcome.rebellion_status is RebellionStatus.NEGOTIATED

        session.expire_all()
        rebellion = session.get(Rebellion, started.rebellion_id)
        assert rebellion.cooldown_type is CooldownType.NEGOTIATION
        assert rebellion.cooldown_until == rebellion.resolved_at + timedelta(hours=72)
        assert session.get(User, ruler).morale == 50
        assert session.get(User, leader).morale == 50

        # The leader's morale is neutral now, so another subject tries
        other = _subjects(world, community)[1]
        clock.advance(hours=71)
        with pytest.raises(StateConflictError) as excinfo:
            services.rebellions.start_uprising(other, community.id)
        assert excinfo.value.reason is Reason.ALREADY_IN_PROGRESS

        clock.advance(hours=1)
        assert services.rebellions.start_uprising(other, community.id).rebellion_id


class TestExileAndReinvite:
    def test_support_resumes_from_prior_count(self, services, world, session, clock):
        community = world.community("Ash Reach", members=15, member_morale=40)
        ruler = world.ruler_id(community)
        subjects = _subjects(world, community)
        leader = subjects[0]

        started = services.rebellions.start_uprising(leader, community.id)
        assert started.required_supports == 3
        services.rebellions.support_uprising(subjects[1], started.rebellion_id)

        services.rebellions.exile_leader(started.rebellion_id, ruler)
        rebellion = services.rebellions.get_rebellion(started.rebellion_id)
        assert rebellion.is_leader_exiled
        assert rebellion.cooldown_type is CooldownType.EXILE
        assert leader not in world.members(community)

        clock.advance(minutes=20)
        services.rebellions.reinvite_leader(started.rebellion_id, ruler)
        rebellion = services.rebellions.get_rebellion(started.rebellion_id)
        assert not rebellion.is_leader_exiled
        assert rebellion.cooldown_until is None
        assert rebellion.cooldown_type is None
        assert rebellion.current_supports == 2
        assert leader in world.members(community)

        result = services.rebellions.support_uprising(subjects[2], started.rebellion_id)
        assert result.current_supports == 3
        assert result.civil_war_started
