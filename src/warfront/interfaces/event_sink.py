"""Event Sink Protocol Interface.

Facts the combat core exposes to the rest of the game (map rendering,
leaderboards) are published here.
"""

from typing import Protocol

from warfront.domain.events import RankScoreUpdated, TerritoryOwnershipChanged


class IEventSink(Protocol):
    """Protocol for publishing outward-facing domain events."""

    def publish(self, event: TerritoryOwnershipChanged | RankScoreUpdated) -> None:
        """Publish one event. Must not raise for well-formed events."""
        ...
