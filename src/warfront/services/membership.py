"""Read helpers over communities, memberships and relations."""

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from warfront.domain.enums import RelationType
from warfront.models import (
    RULER_RANK_TIER,
    CommunityMember,
    CommunityRelation,
    User,
)


def get_membership(session: Session, community_id: int, user_id: int) -> CommunityMember | None:
    return session.execute(
        select(CommunityMember).where(
            CommunityMember.community_id == community_id,
            CommunityMember.user_id == user_id,
        )
    ).scalar_one_or_none()


def is_member(session: Session, community_id: int, user_id: int) -> bool:
    return get_membership(session, community_id, user_id) is not None


def find_ruler_id(session: Session, community_id: int) -> int | None:
    """Return the ruler's user id, or None for a leaderless community."""
    return session.execute(
        select(CommunityMember.user_id)
        .where(
            CommunityMember.community_id == community_id,
            CommunityMember.rank_tier == RULER_RANK_TIER,
        )
        .order_by(CommunityMember.joined_at)
        .limit(1)
    ).scalar_one_or_none()


def member_ids(session: Session, community_id: int) -> list[int]:
    return list(
        session.execute(
            select(CommunityMember.user_id)
            .where(CommunityMember.community_id == community_id)
            .order_by(CommunityMember.user_id)
        ).scalars()
    )


def non_ruler_member_count(session: Session, community_id: int) -> int:
    count = session.execute(
        select(func.count(CommunityMember.id)).where(
            CommunityMember.community_id == community_id,
            CommunityMember.rank_tier != RULER_RANK_TIER,
        )
    ).scalar()
    return count or 0


def average_morale(session: Session, community_id: int) -> float | None:
    """Mean morale over all members, None for an empty community."""
    value = session.execute(
        select(func.avg(User.morale))
        .join(CommunityMember, CommunityMember.user_id == User.id)
        .where(CommunityMember.community_id == community_id)
    ).scalar()
    return float(value) if value is not None else None


def are_hostile(session: Session, community_id: int, other_id: int) -> bool:
    """At war when either direction of the relation is hostile."""
    row = session.execute(
        select(CommunityRelation.id)
        .where(
            CommunityRelation.relation_type == RelationType.HOSTILE,
            or_(
                (CommunityRelation.community_id == community_id)
                & (CommunityRelation.other_community_id == other_id),
                (CommunityRelation.community_id == other_id)
                & (CommunityRelation.other_community_id == community_id),
            ),
        )
        .limit(1)
    ).scalar_one_or_none()
    return row is not None


def allied_community_ids(session: Session, community_id: int) -> list[int]:
    """Communities allied with ``community_id`` in either direction."""
    outgoing = select(CommunityRelation.other_community_id).where(
        CommunityRelation.community_id == community_id,
        CommunityRelation.relation_type == RelationType.ALLIED,
    )
    incoming = select(CommunityRelation.community_id).where(
        CommunityRelation.other_community_id == community_id,
        CommunityRelation.relation_type == RelationType.ALLIED,
    )
    ids = set(session.execute(outgoing).scalars()) | set(session.execute(incoming).scalars())
    ids.discard(community_id)
    return sorted(ids)
