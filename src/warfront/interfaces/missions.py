"""Mission Tracker Protocol Interface."""

from typing import Protocol


class IMissionTracker(Protocol):
    """Protocol for advancing a user's mission/battle-pass progress."""

    def increment(self, user_id: int, mission_key: str) -> None:
        """Advance the mission identified by ``mission_key`` by one step."""
        ...
