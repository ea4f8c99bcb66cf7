"""Shared fixtures for the Warfront test suite.

Adds ``src/`` to ``sys.path`` so tests run without an editable install, and
provides an in-memory database, a controllable clock and a small world
builder for communities, members and territories.
"""

import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

SRC_PATH = Path(__file__).resolve().parents[1] / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from warfront.database import create_db_engine, create_session_factory, init_db  # noqa: E402
from warfront.domain.enums import RelationType  # noqa: E402
from warfront.domain.rules_config import AdrenalineRules, FocusRules, RulesConfig  # noqa: E402
from warfront.factory import create_services  # noqa: E402
from warfront.models import (  # noqa: E402
    Community,
    CommunityMember,
    CommunityRelation,
    Territory,
    User,
)
from warfront.services.locks import AggregateLocks  # noqa: E402

START = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, user_id, payload):
        self.sent.append((user_id, payload))


class RecordingWallet:
    def __init__(self):
        self.credits = []

    def credit(self, user_id, currency, amount, reason):
        self.credits.append((user_id, currency, amount, reason))

    def debit(self, user_id, currency, amount, reason):
        self.credits.append((user_id, currency, -amount, reason))


class RecordingMissions:
    def __init__(self):
        self.increments = []

    def increment(self, user_id, mission_key):
        self.increments.append((user_id, mission_key))


class RecordingSink:
    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)


class World:
    """Builds communities, members and territories directly in the database."""

    def __init__(self, session, clock):
        self.session = session
        self.clock = clock
        self._users = 0

    def user(self, *, morale=50, rage=0.0, energy=100, username=None) -> User:
        self._users += 1
        user = User(
            username=username or f"user{self._users}",
            morale=morale,
            rage=rage,
            energy=energy,
        )
        self.session.add(user)
        self.session.flush()
        return user

    def community(self, name, *, ruler=None, members=(), ruler_morale=50, member_morale=50):
        """Create a community with a ruler and ``members`` plain members.

        ``members`` is either a count or an iterable of existing users.
        """
        community = Community(name=name, slug=name.lower().replace(" ", "-"))
        self.session.add(community)
        self.session.flush()
        ruler = ruler or self.user(morale=ruler_morale)
        self.join(community, ruler, rank_tier=0)
        if isinstance(members, int):
            members = [self.user(morale=member_morale) for _ in range(members)]
        for member in members:
            self.join(community, member)
        self.session.commit()
        return community

    def join(self, community, user, *, rank_tier=10) -> CommunityMember:
        membership = CommunityMember(
            community_id=community.id,
            user_id=user.id,
            rank_tier=rank_tier,
            joined_at=self.clock(),
        )
        self.session.add(membership)
        if user.main_community_id is None:
            user.main_community_id = community.id
        self.session.flush()
        return membership

    def relate(self, community, other, relation=RelationType.HOSTILE) -> None:
        self.session.add(
            CommunityRelation(
                community_id=community.id,
                other_community_id=other.id,
                relation_type=relation,
                since=self.clock(),
            )
        )
        self.session.commit()

    def territory(self, territory_id, owner=None, *, defense=10000, is_capital=False) -> Territory:
        territory = Territory(
            id=territory_id,
            owner_community_id=owner.id if owner is not None else None,
            defense_baseline=defense,
            is_capital=is_capital,
        )
        self.session.add(territory)
        self.session.commit()
        return territory

    def members(self, community) -> list[int]:
        return sorted(
            m.user_id
            for m in self.session.query(CommunityMember).filter_by(community_id=community.id)
        )

    def ruler_id(self, community) -> int:
        return (
            self.session.query(CommunityMember)
            .filter_by(community_id=community.id, rank_tier=0)
            .one()
            .user_id
        )


@pytest.fixture(autouse=True)
def _fresh_locks():
    """Aggregate locks are process-global; start every test with none."""
    AggregateLocks.clear()
    yield
    AggregateLocks.clear()


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine with the full schema."""
    engine = create_db_engine("sqlite:///:memory:", echo=False)
    init_db(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def session(session_factory):
    """Create a new database session for a test."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def wallet():
    return RecordingWallet()


@pytest.fixture
def missions():
    return RecordingMissions()


@pytest.fixture
def event_sink():
    return RecordingSink()


@pytest.fixture
def rules():
    """Default rules with the random miss and adrenaline rolls switched off."""
    return RulesConfig(focus=FocusRules(enabled=False), adrenaline=AdrenalineRules(enabled=False))


@pytest.fixture
def services(session, clock, notifier, wallet, missions, event_sink, rules):
    return create_services(
        session,
        rules=rules,
        wallet=wallet,
        notifier=notifier,
        missions=missions,
        event_sink=event_sink,
        clock=clock,
    )


@pytest.fixture
def world(session, clock):
    return World(session, clock)


@pytest.fixture
def make_world(clock):
    """Build a World over any session, e.g. one bound to a file database."""
    return lambda session: World(session, clock)
