"""
Signaling core: sessions, registry, presence and the call state machine.
"""

from __future__ import annotations

from .calls import CallBinding, CallTable
from .coordinator import CallCoordinator
from .presence import PresenceBroadcaster, PresenceStatus
from .registry import UserRegistry
from .session import CallState, Transport, UserSession

__all__ = [
    "CallBinding",
    "CallCoordinator",
    "CallState",
    "CallTable",
    "PresenceBroadcaster",
    "PresenceStatus",
    "Transport",
    "UserRegistry",
    "UserSession",
]
