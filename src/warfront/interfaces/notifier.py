"""Notifier Protocol Interface."""

from typing import Any, Protocol


class INotifier(Protocol):
    """Protocol for delivering a notification to one user."""

    def notify(self, user_id: int, payload: dict[str, Any]) -> None:
        """Send ``payload`` to ``user_id``.

        Args:
            user_id: Recipient
            payload: JSON-serialisable body; always carries a "type" key
        """
        ...
