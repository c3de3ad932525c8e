"""
Presence computation and fan-out.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from .registry import UserRegistry
from .session import UserSession

LOG = logging.getLogger(__name__)


class PresenceStatus(str, enum.Enum):
    OFFLINE = "offline"
    ONLINE = "online"
    BUSY = "busy"


class PresenceBroadcaster:
    """Derives user status from the registry and pushes it to every client."""

    def __init__(
        self,
        registry: UserRegistry,
        *,
        on_prune: Optional[Callable[[UserSession], None]] = None,
    ) -> None:
        self.registry = registry
        self.on_prune = on_prune

    def status(self, name: Optional[str]) -> PresenceStatus:
        session = self.registry.lookup_by_name(name)
        if session is None:
            return PresenceStatus.OFFLINE
        if session.is_busy:
            return PresenceStatus.BUSY
        return PresenceStatus.ONLINE

    def _live_sessions(self) -> List[UserSession]:
        live: List[UserSession] = []
        for session in self.registry.sessions():
            if session.is_open:
                live.append(session)
                continue
            LOG.debug("Pruning closed session %s from registry", session.name)
            self.registry.remove(session.connection_id)
            if self.on_prune is not None:
                self.on_prune(session)
        return live

    async def _fan_out(self, targets: Iterable[UserSession], build: Callable[[UserSession], Dict[str, Any]]) -> None:
        targets = list(targets)
        if not targets:
            return
        results = await asyncio.gather(
            *[target.send(build(target)) for target in targets],
            return_exceptions=True,
        )
        for target, result in zip(targets, results):
            if isinstance(result, BaseException):
                LOG.error("Presence update to %s failed", target.name, exc_info=result)

    async def broadcast_registered_users(self) -> None:
        targets = self._live_sessions()
        names = self.registry.list_names()
        LOG.debug("Updating user list on %d clients: %s", len(targets), names)
        await self._fan_out(
            targets,
            lambda _target: {"id": "registeredUsers", "response": list(names), "message": ""},
        )

    async def broadcast_status(self, name: str, status: PresenceStatus) -> None:
        targets = self._live_sessions()
        LOG.debug("Publishing %s=%s to %d clients", name, status.value, len(targets))
        await self._fan_out(
            targets,
            lambda target: {
                "id": "responseOnlineStatus",
                "response": status.value,
                "message": name,
                "myUsername": target.name,
            },
        )

    async def query_status(self, requester: UserSession, target_name: str) -> PresenceStatus:
        status = self.status(target_name)
        await requester.send(
            {
                "id": "responseOnlineStatus",
                "response": status.value,
                "message": target_name,
                "myUsername": requester.name,
            }
        )
        return status


__all__ = ["PresenceBroadcaster", "PresenceStatus"]
