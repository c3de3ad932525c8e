"""Shared fakes and fixtures for the signaling tests."""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import pytest

from switchboard.errors import TransportError
from switchboard.media import LoopbackMediaEngine
from switchboard.signaling import CallCoordinator, UserSession

T = TypeVar("T")

OFFER = (
    "v=0\r\n"
    "o=- 4611731400430051336 2 IN IP4 127.0.0.1\r\n"
    "s=-\r\n"
    "t=0 0\r\n"
    "m=audio 9 UDP/TLS/RTP/SAVPF 111\r\n"
    "a=setup:actpass\r\n"
    "a=sendrecv\r\n"
    "m=video 9 UDP/TLS/RTP/SAVPF 96\r\n"
    "a=setup:actpass\r\n"
    "a=sendrecv\r\n"
)


class FakeTransport:
    """Records every frame written to it."""

    def __init__(self, connection_id: Optional[str] = None) -> None:
        self.connection_id = connection_id or uuid.uuid4().hex
        self.sent: List[Dict[str, Any]] = []
        self.open = True
        self.fail_sends = False
        self.closed_with: Optional[Tuple[int, Optional[str]]] = None

    @property
    def is_open(self) -> bool:
        return self.open

    async def send_text(self, text: str) -> None:
        if not self.open or self.fail_sends:
            raise TransportError("connection closed")
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.open = False
        self.closed_with = (code, reason)

    def messages(self, message_id: str) -> List[Dict[str, Any]]:
        return [message for message in self.sent if message.get("id") == message_id]

    def last(self, message_id: str) -> Dict[str, Any]:
        found = self.messages(message_id)
        assert found, f"no {message_id} message in {[m.get('id') for m in self.sent]}"
        return found[-1]


class FailingRecordingEngine(LoopbackMediaEngine):
    async def start_recording(self, pipeline) -> None:
        raise RuntimeError("recorder unavailable")


async def connect(coordinator: CallCoordinator) -> Tuple[UserSession, FakeTransport]:
    transport = FakeTransport()
    return coordinator.connect(transport), transport


async def register(coordinator: CallCoordinator, name: str) -> Tuple[UserSession, FakeTransport]:
    session, transport = await connect(coordinator)
    await coordinator.handle_message(session, {"id": "register", "name": name})
    assert transport.last("registerResponse")["response"] == "accepted"
    return session, transport


async def place_call(
    coordinator: CallCoordinator,
    caller: UserSession,
    callee: UserSession,
    *,
    accept: bool = True,
    callee_offer: str = OFFER,
) -> None:
    await coordinator.handle_message(
        caller, {"id": "call", "from": caller.name, "to": callee.name, "sdpOffer": OFFER}
    )
    await coordinator.handle_message(
        callee,
        {
            "id": "incomingCallResponse",
            "callResponse": "accept" if accept else "reject",
            "from": caller.name,
            "sdpOffer": callee_offer,
        },
    )


async def settle(coordinator: CallCoordinator) -> None:
    """Let scheduled cleanups and media events finish."""
    await asyncio.sleep(0)
    while coordinator._background:  # type: ignore[attr-defined]
        await asyncio.gather(*list(coordinator._background))  # type: ignore[attr-defined]
    await coordinator.flush_events()


@pytest.fixture
def engine() -> LoopbackMediaEngine:
    return LoopbackMediaEngine()


@pytest.fixture
def coordinator(engine: LoopbackMediaEngine) -> CallCoordinator:
    return CallCoordinator(engine)


@pytest.fixture
def run(coordinator: CallCoordinator) -> Callable[[Callable[[], Awaitable[T]]], T]:
    def _run(scenario: Callable[[], Awaitable[T]]) -> T:
        async def _main() -> T:
            await coordinator.start()
            try:
                return await scenario()
            finally:
                await coordinator.stop()

        return asyncio.run(_main())

    return _run
