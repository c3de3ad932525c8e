"""
Per-connection signaling state.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol

from ..errors import ConflictError, TransportError
from ..media import EndpointHandle, IceCandidate

LOG = logging.getLogger(__name__)


class CallState(str, enum.Enum):
    IDLE = "idle"
    OFFERING = "offering"
    IN_CALL = "in-call"


class Transport(Protocol):
    """Full-duplex text connection delivering one client's frames."""

    connection_id: str

    @property
    def is_open(self) -> bool:
        ...

    async def send_text(self, text: str) -> None:
        ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        ...


TransportFailureHook = Callable[["UserSession"], None]


class UserSession:
    """
    State of one transport connection.

    Every mutation of the call fields and every outbound frame goes through
    ``lock``; :meth:`send` acquires it, :meth:`deliver` expects it held.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        on_transport_failure: Optional[TransportFailureHook] = None,
    ) -> None:
        self.transport = transport
        self._connection_id = str(transport.connection_id)
        self._name: Optional[str] = None
        self.call_state = CallState.IDLE
        self.peer_name: Optional[str] = None
        self.pending_offer: Optional[str] = None
        self.pending_candidates: List[IceCandidate] = []
        self.endpoint: Optional[EndpointHandle] = None
        self.lock = asyncio.Lock()
        self.on_transport_failure = on_transport_failure
        self._closed = False
        self.logger = LOG.getChild(f"session.{self._connection_id[:8]}")

    def __repr__(self) -> str:
        return (
            f"UserSession(connection_id={self._connection_id!r}, name={self._name!r}, "
            f"state={self.call_state.value}, peer={self.peer_name!r})"
        )

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def name(self) -> Optional[str]:
        return self._name

    def assign_name(self, name: str) -> None:
        if self._name is not None and self._name != name:
            raise ConflictError(f"session already registered as {self._name}")
        self._name = name

    @property
    def is_registered(self) -> bool:
        return self._name is not None

    @property
    def is_busy(self) -> bool:
        return self.call_state is not CallState.IDLE

    @property
    def is_open(self) -> bool:
        return not self._closed and self.transport.is_open

    def mark_closed(self) -> None:
        self._closed = True

    def queue_candidate(self, candidate: IceCandidate) -> None:
        self.pending_candidates.append(candidate)

    def drain_candidates(self) -> List[IceCandidate]:
        drained, self.pending_candidates = self.pending_candidates, []
        return drained

    def reset_call(self) -> None:
        self.call_state = CallState.IDLE
        self.peer_name = None
        self.pending_offer = None
        self.pending_candidates = []
        self.endpoint = None

    async def send(self, message: Dict[str, Any]) -> bool:
        async with self.lock:
            return await self.deliver(message)

    async def deliver(self, message: Dict[str, Any]) -> bool:
        if self._closed:
            self.logger.debug("Dropping %s for closed session", message.get("id"))
            return False
        try:
            await self.transport.send_text(json.dumps(message))
        except TransportError as exc:
            self.logger.warning("Send of %s failed: %s", message.get("id"), exc)
            self._closed = True
            if self.on_transport_failure is not None:
                self.on_transport_failure(self)
            return False
        return True


__all__ = ["CallState", "Transport", "UserSession"]
