"""
FastAPI surface for the signaling service.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from starlette.websockets import WebSocketState

from .. import __version__
from ..config import IceSettings
from ..errors import TransportError
from ..media import LoopbackMediaEngine, MediaEngine
from ..signaling import CallCoordinator
from . import schemas

LOG = logging.getLogger(__name__)


class WebSocketTransport:
    """Adapts a FastAPI WebSocket to the coordinator's transport contract."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.connection_id = uuid.uuid4().hex
        self._closed = False

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, text: str) -> None:
        if not self.is_open:
            raise TransportError(f"connection {self.connection_id} is closed")
        try:
            await self.websocket.send_text(text)
        except (WebSocketDisconnect, RuntimeError) as exc:
            self._closed = True
            raise TransportError(f"connection {self.connection_id} failed: {exc}") from exc

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closed:
            return
        self._closed = True
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)


class SignalingConnection:
    """Receive loop for one client; messages are handled one at a time."""

    def __init__(self, coordinator: CallCoordinator, websocket: WebSocket) -> None:
        self.coordinator = coordinator
        self.websocket = websocket
        self.transport = WebSocketTransport(websocket)
        self.logger = LOG.getChild(f"ws.{self.transport.connection_id[:8]}")

    async def run(self) -> None:
        try:
            await self.websocket.accept()
        except Exception:  # pragma: no cover
            self.logger.exception("Failed to accept WebSocket connection")
            return

        session = self.coordinator.connect(self.transport)
        self.logger.debug("Connection opened")
        try:
            while session.is_open:
                try:
                    text = await self.websocket.receive_text()
                except WebSocketDisconnect:
                    break
                except RuntimeError as exc:
                    self.logger.debug("Receive after close: %s", exc)
                    break
                await self.coordinator.handle_text(session, text)
        except Exception:  # pragma: no cover
            self.logger.exception("Signaling connection crashed")
        finally:
            # Cleanup must finish even when the handler task is cancelled.
            cleanup = self.coordinator.run_in_background(self.coordinator.close(session))
            await asyncio.shield(cleanup)
            self.logger.debug("Connection closed")


def create_app(
    *,
    ice: Optional[IceSettings] = None,
    media_engine: Optional[MediaEngine] = None,
    coordinator: Optional[CallCoordinator] = None,
) -> FastAPI:
    if coordinator is None:
        coordinator = CallCoordinator(
            media_engine or LoopbackMediaEngine(),
            ice=ice or IceSettings.load(),
        )

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await coordinator.start()
        try:
            yield
        finally:
            await coordinator.stop()

    app = FastAPI(title="Switchboard Signaling API", version=__version__, lifespan=lifespan)
    app.state.coordinator = coordinator
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await SignalingConnection(coordinator, websocket).run()

    @app.get("/healthz")
    async def healthz() -> dict:
        return {
            "status": "ok",
            "users": len(coordinator.registry),
            "calls": len(coordinator.calls),
        }

    @app.get("/users", response_model=schemas.UserListModel)
    async def list_users() -> schemas.UserListModel:
        return schemas.UserListModel(
            users=[
                schemas.UserStatusModel(name=name, status=coordinator.presence.status(name).value)
                for name in coordinator.registry.list_names()
            ]
        )

    @app.get("/users/{name}/status", response_model=schemas.UserStatusModel)
    async def user_status(name: str) -> schemas.UserStatusModel:
        return schemas.UserStatusModel(name=name, status=coordinator.presence.status(name).value)

    @app.delete("/users/{name}")
    async def kill_user(name: str) -> dict:
        if not await coordinator.kill(name):
            raise HTTPException(status_code=404, detail=f"User '{name}' not registered")
        return {"ok": True}

    return app
