"""Rejection errors raised by the combat core services.

Every rejected operation raises a ``WarfrontError`` carrying a stable
``reason`` code; the HTTP layer maps its ``category`` to a status code.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorCategory(StrEnum):
    VALIDATION = "validation"
    STATE_CONFLICT = "state_conflict"
    NOT_FOUND = "not_found"


class Reason(StrEnum):
    """Stable reason codes returned to callers."""

    # validation
    NOT_ELIGIBLE = "NotEligible"
    MORALE_TOO_HIGH = "MoraleTooHigh"
    NOT_RULER = "NotRuler"
    NOT_LEADER = "NotLeader"
    INSUFFICIENT_RANK = "InsufficientRank"
    ALREADY_SUPPORTING = "AlreadySupporting"
    WRONG_SIDE = "WrongSide"
    INSUFFICIENT_ENERGY = "InsufficientEnergy"
    INVALID_AMOUNT = "InvalidAmount"
    OWN_TERRITORY = "OwnTerritory"
    INVALID_WINNER = "InvalidWinner"
    # state conflicts
    BATTLE_NOT_ACTIVE = "BattleNotActive"
    ALREADY_IN_PROGRESS = "AlreadyInProgress"
    NOT_IN_AGITATION = "NotInAgitation"
    LEADER_EXILED = "LeaderExiled"
    NOT_EXILED = "NotExiled"
    NEGOTIATION_PENDING = "NegotiationPending"
    NEGOTIATION_ANSWERED = "NegotiationAnswered"
    REBELLION_CLOSED = "RebellionClosed"
    NOT_AT_WAR = "NotAtWar"
    # lookups
    NOT_FOUND = "NotFound"


class WarfrontError(RuntimeError):
    """Base class for rejected operations."""

    category: ErrorCategory = ErrorCategory.VALIDATION

    def __init__(self, reason: Reason | str, message: str | None = None) -> None:
        self.reason = Reason(reason)
        self.message = message or self.reason.value
        super().__init__(self.message)

    def to_dict(self) -> dict[str, str]:
        return {"reason": self.reason.value, "message": self.message}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(reason={self.reason.value!r}, message={self.message!r})"


class ValidationError(WarfrontError):
    """The caller is not allowed to perform the operation or sent bad input."""

    category = ErrorCategory.VALIDATION


class StateConflictError(WarfrontError):
    """The aggregate is not in a state that allows the operation."""

    category = ErrorCategory.STATE_CONFLICT


class NotFoundError(WarfrontError):
    """A referenced aggregate does not exist."""

    category = ErrorCategory.NOT_FOUND

    def __init__(self, kind: str, identifier: object) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(Reason.NOT_FOUND, f"{kind} {identifier} not found")
