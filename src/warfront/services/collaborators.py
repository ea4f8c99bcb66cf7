"""Default collaborator implementations that only write to the log.

Deployments wire real wallet, notification and mission adapters through
``warfront.factory``; these keep the core runnable on its own.
"""

import logging
from typing import Any

from warfront.domain.events import RankScoreUpdated, TerritoryOwnershipChanged

logger = logging.getLogger(__name__)


class LoggingWallet:
    def credit(self, user_id: int, currency: str, amount: int, reason: str) -> None:
        logger.info("credit user=%s %s %s (%s)", user_id, amount, currency, reason)

    def debit(self, user_id: int, currency: str, amount: int, reason: str) -> None:
        logger.info("debit user=%s %s %s (%s)", user_id, amount, currency, reason)


class LoggingNotifier:
    def notify(self, user_id: int, payload: dict[str, Any]) -> None:
        logger.info("notify user=%s type=%s", user_id, payload.get("type"))


class LoggingMissionTracker:
    def increment(self, user_id: int, mission_key: str) -> None:
        logger.debug("mission progress user=%s key=%s", user_id, mission_key)


class LoggingEventSink:
    def publish(self, event: TerritoryOwnershipChanged | RankScoreUpdated) -> None:
        logger.info("event %s %s", type(event).__name__, event)
