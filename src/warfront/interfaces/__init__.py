"""Protocol-based interfaces for the collaborators Warfront calls out to.

The combat core never reimplements the economy, notification or mission
systems; it only talks to them through these contracts.
"""

from warfront.interfaces.event_sink import IEventSink
from warfront.interfaces.missions import IMissionTracker
from warfront.interfaces.notifier import INotifier
from warfront.interfaces.wallet import IWallet

__all__ = [
    "IEventSink",
    "IMissionTracker",
    "INotifier",
    "IWallet",
]
