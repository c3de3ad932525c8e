"""
Call signaling state machine.

One coordinator is created per process. It owns the user registry, the call
and playback tables and the media event pump, and turns inbound protocol
messages into registry/session mutations, media engine calls and outbound
messages.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError as SchemaError

from ..api import schemas
from ..config import IceSettings
from ..errors import ConflictError, EngineError, NotFoundError, SignalingError, ValidationError
from ..media import (
    EndOfStream,
    EndpointHandle,
    IceCandidateFound,
    MediaEngine,
    MediaEngineError,
    MediaEvent,
    RecordingNotFound,
)
from .calls import CallBinding, CallTable, PlaybackBinding, PlaybackTable
from .presence import PresenceBroadcaster, PresenceStatus
from .registry import UserRegistry
from .session import CallState, Transport, UserSession

LOG = logging.getLogger(__name__)

ERROR_RESPONSE_ID = "error"

ModelT = TypeVar("ModelT", bound=BaseModel)
Handler = Callable[[UserSession, Dict[str, Any]], Awaitable[None]]


def _parse(model: Type[ModelT], message: Dict[str, Any]) -> ModelT:
    try:
        return model.model_validate(message)
    except SchemaError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'message'}: {error['msg']}"
            for error in exc.errors()
        )
        raise ValidationError(f"malformed {message.get('id')} message ({details})") from None


class CallCoordinator:
    """Signaling coordinator for one-to-one calls."""

    def __init__(
        self,
        media: MediaEngine,
        *,
        ice: Optional[IceSettings] = None,
        registry: Optional[UserRegistry] = None,
    ) -> None:
        self.media = media
        self.ice = ice or IceSettings()
        self.registry = registry or UserRegistry()
        self.calls = CallTable()
        self.playbacks = PlaybackTable()
        self.presence = PresenceBroadcaster(self.registry, on_prune=self._schedule_disconnect)

        self._connections: Dict[str, UserSession] = {}
        self._endpoint_owners: Dict[str, str] = {}
        self._closing: Set[str] = set()
        self._background: Set[asyncio.Task] = set()
        self._events: Optional[asyncio.Queue[MediaEvent]] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._handlers: Dict[str, Tuple[str, Handler]] = {
            "appConfig": ("appConfigResponse", self._handle_app_config),
            "register": ("registerResponse", self._handle_register),
            "call": ("callResponse", self._handle_call),
            "incomingCallResponse": ("stopCommunication", self._handle_incoming_call_response),
            "onIceCandidate": (ERROR_RESPONSE_ID, self._handle_ice_candidate),
            "stop": (ERROR_RESPONSE_ID, self._handle_stop),
            "checkOnlineStatus": ("responseOnlineStatus", self._handle_check_online_status),
            "play": ("playResponse", self._handle_play),
            "stopPlay": (ERROR_RESPONSE_ID, self._handle_stop_play),
        }

    # ---------------------------------------------------------------- lifecycle

    async def start(self) -> None:
        if self._pump_task is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()
        self.media.subscribe(self._on_media_event)
        self._pump_task = asyncio.create_task(self._pump_events())
        LOG.info("Call coordinator started")

    async def stop(self) -> None:
        if self._pump_task is None:
            return
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        self.media.unsubscribe(self._on_media_event)
        self._pump_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._pump_task
        self._pump_task = None

        for binding in self.calls.bindings():
            if self.calls.unbind(binding):
                await self._release_binding(binding)
        for session in list(self._connections.values()):
            await self._release_playback(session)

        self._events = None
        self._loop = None
        LOG.info("Call coordinator stopped")

    # ------------------------------------------------------------- connections

    def connect(self, transport: Transport) -> UserSession:
        session = UserSession(transport, on_transport_failure=self._schedule_disconnect)
        self._connections[session.connection_id] = session
        LOG.debug("Connection %s opened", session.connection_id)
        return session

    async def disconnect(self, session: UserSession) -> None:
        """Tear down everything a closed connection owned. Safe to call repeatedly."""

        key = session.connection_id
        if key in self._closing or key not in self._connections:
            return
        self._closing.add(key)
        session.mark_closed()
        try:
            # Already absent when a broadcast pruned it.
            self.registry.remove(key)
            await self.stop_call(session)
            await self._release_playback(session)
            if session.is_registered:
                LOG.info("User %s disconnected", session.name)
                await self.presence.broadcast_status(session.name, self.presence.status(session.name))
                await self.presence.broadcast_registered_users()
            else:
                LOG.debug("Anonymous connection %s closed", key)
        finally:
            self._connections.pop(key, None)
            self._closing.discard(key)

    async def close(self, session: UserSession, *, code: int = 1000, reason: Optional[str] = None) -> None:
        """Disconnect ``session`` and close its transport."""
        await self.disconnect(session)
        await session.transport.close(code=code, reason=reason)

    async def kill(self, name: str) -> bool:
        """Administratively remove a user and close their connection."""

        session = self.registry.lookup_by_name(name)
        if session is None:
            return False
        LOG.info("Killing session of %s", name)
        await self.close(session, reason="session killed")
        return True

    def run_in_background(self, coro: Awaitable[None]) -> asyncio.Task:
        """Run ``coro`` as a task the coordinator keeps alive until it finishes."""
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _schedule_disconnect(self, session: UserSession) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            LOG.warning("No running loop to clean up connection %s", session.connection_id)
            return
        self.run_in_background(self.disconnect(session))

    # ---------------------------------------------------------------- dispatch

    async def handle_text(self, session: UserSession, text: str) -> None:
        try:
            message = json.loads(text)
        except (TypeError, ValueError):
            session.logger.warning("Discarding malformed frame")
            await session.send(ValidationError("message is not valid JSON").to_reply(ERROR_RESPONSE_ID))
            return
        if not isinstance(message, dict):
            await session.send(ValidationError("message must be a JSON object").to_reply(ERROR_RESPONSE_ID))
            return
        await self.handle_message(session, message)

    async def handle_message(self, session: UserSession, message: Dict[str, Any]) -> None:
        if session.connection_id not in self._connections:
            return

        message_id = message.get("id")
        entry = self._handlers.get(message_id) if isinstance(message_id, str) else None
        if entry is None:
            session.logger.warning("Ignoring message with unknown id %r", message_id)
            await session.send(
                ValidationError(f"unknown message id {message_id!r}").to_reply(ERROR_RESPONSE_ID)
            )
            return

        response_id, handler = entry
        session.logger.debug("Incoming %s from %s", message_id, session.name or "anonymous")
        try:
            await handler(session, message)
        except SignalingError as exc:
            session.logger.info("%s rejected: %s", message_id, exc)
            await session.send(exc.to_reply(response_id))
        except Exception:
            session.logger.exception("Unhandled error while processing %s", message_id)
            await session.send(
                {"id": response_id, "response": "rejected", "message": "internal server error"}
            )

    # ---------------------------------------------------------------- handlers

    async def _handle_app_config(self, session: UserSession, message: Dict[str, Any]) -> None:
        request = _parse(schemas.AppConfigRequest, message)
        servers = self.ice.ice_servers(request.type)
        await session.send(
            {
                "id": "appConfigResponse",
                "iceServers": servers,
                "params": {"pc_config": {"iceServers": servers}},
                "result": "SUCCESS",
            }
        )
        session.logger.debug("Sent app config (%s client)", request.type or "native")

    async def _handle_register(self, session: UserSession, message: Dict[str, Any]) -> None:
        request = _parse(schemas.RegisterRequest, message)
        name = request.name
        if session.is_registered:
            raise ValidationError(f"already registered as {session.name}", myUsername=session.name)
        if not name:
            raise ValidationError("empty user name", myUsername=name)
        try:
            self.registry.register(session, name)
        except ConflictError as exc:
            exc.fields.setdefault("myUsername", name)
            raise

        await session.send(
            {"id": "registerResponse", "response": "accepted", "message": "", "myUsername": name}
        )
        LOG.info("User %s registered", name)
        await self.presence.broadcast_registered_users()
        await self.presence.broadcast_status(name, PresenceStatus.ONLINE)

    async def _handle_call(self, caller: UserSession, message: Dict[str, Any]) -> None:
        request = _parse(schemas.CallRequest, message)
        if not caller.is_registered:
            raise ValidationError("register before placing a call")
        if request.from_ and request.from_ != caller.name:
            raise ValidationError(f"call must be placed from {caller.name}, not {request.from_}")

        callee = self.registry.lookup_by_name(request.to)
        if callee is None:
            raise NotFoundError(f"user '{request.to}' is not registered")
        if callee is caller:
            raise ValidationError("cannot call yourself")

        LOG.info("Call from [%s] to [%s]", caller.name, callee.name)
        async with caller.lock:
            if caller.is_busy:
                raise ConflictError("already in a call", response="rejected")
            caller.reset_call()
            caller.call_state = CallState.OFFERING
            caller.pending_offer = request.sdp_offer
            caller.peer_name = callee.name

        delivered = False
        async with callee.lock:
            callee_busy = callee.is_busy
            if not callee_busy:
                callee.reset_call()
                callee.call_state = CallState.OFFERING
                callee.peer_name = caller.name
                delivered = await callee.deliver({"id": "incomingCall", "from": caller.name})
                if not delivered:
                    callee.reset_call()

        if callee_busy or not delivered:
            async with caller.lock:
                caller.reset_call()
            if callee_busy:
                raise ConflictError(f"user '{callee.name}' is busy", response="rejected")
            raise NotFoundError(f"user '{callee.name}' is not reachable")

    async def _handle_incoming_call_response(self, callee: UserSession, message: Dict[str, Any]) -> None:
        request = _parse(schemas.IncomingCallResponseRequest, message)
        if not callee.is_registered:
            raise ValidationError("register before answering a call")

        caller = self.registry.lookup_by_name(request.from_)
        pending = (
            caller is not None
            and callee.call_state is CallState.OFFERING
            and callee.peer_name == caller.name
            and caller.call_state is CallState.OFFERING
            and caller.peer_name == callee.name
        )
        if not pending:
            async with callee.lock:
                if callee.peer_name == request.from_ and callee.call_state is CallState.OFFERING:
                    callee.reset_call()
            raise NotFoundError(f"no pending call from '{request.from_}'")

        if request.call_response == "reject":
            LOG.info("Call from [%s] to [%s] rejected", caller.name, callee.name)
            async with callee.lock:
                callee.reset_call()
            async with caller.lock:
                caller.reset_call()
                await caller.deliver(
                    {
                        "id": "callResponse",
                        "response": "rejected",
                        "message": f"user '{callee.name}' rejected the call",
                    }
                )
            return

        if not request.sdp_offer:
            await self._fail_setup(caller, callee, "accepting a call requires an sdpOffer")
            return
        await self._establish_call(caller, callee, request.sdp_offer)

    async def _handle_ice_candidate(self, session: UserSession, message: Dict[str, Any]) -> None:
        if not session.is_registered:
            session.logger.debug("Dropping candidate from unregistered connection")
            return
        candidate = _parse(schemas.IceCandidateRequest, message).to_candidate()
        async with session.lock:
            endpoint = session.endpoint
            if endpoint is None:
                playback = self.playbacks.get(session.connection_id)
                endpoint = playback.playback.endpoint if playback is not None else None
            if endpoint is None:
                if session.call_state is CallState.OFFERING:
                    session.queue_candidate(candidate)
                else:
                    session.logger.debug("Dropping candidate received outside a call")
                return
            await self.media.forward_candidate(endpoint, candidate)

    async def _handle_stop(self, session: UserSession, message: Dict[str, Any]) -> None:
        if not session.is_registered:
            return
        await self.stop_call(session)

    async def _handle_check_online_status(self, session: UserSession, message: Dict[str, Any]) -> None:
        request = _parse(schemas.CheckOnlineStatusRequest, message)
        await self.presence.query_status(session, request.user)

    async def _handle_play(self, session: UserSession, message: Dict[str, Any]) -> None:
        request = _parse(schemas.PlayRequest, message)
        LOG.debug("Playing recorded call of user [%s]", request.user)
        missing = f"No recording for user [{request.user}]. Please request a correct user!"
        if not session.is_registered:
            raise ValidationError("register before requesting playback", error="not registered")
        if self.registry.lookup_by_name(request.user) is None:
            raise NotFoundError(missing, error=missing)

        await self._release_playback(session)
        try:
            playback = await self.media.create_playback_pipeline(request.user)
        except RecordingNotFound:
            raise NotFoundError(missing, error=missing) from None

        self.playbacks.put(PlaybackBinding(session=session, playback=playback))
        try:
            answer = await self.media.generate_answer(playback.endpoint, request.sdp_offer)
            await self.media.start_playback(playback)
        except MediaEngineError as exc:
            await self._release_playback(session)
            raise EngineError(f"playback failed: {exc}", error=str(exc)) from exc

        await session.send({"id": "playResponse", "response": "accepted", "sdpAnswer": answer})
        await self.media.gather_candidates(playback.endpoint)

    async def _handle_stop_play(self, session: UserSession, message: Dict[str, Any]) -> None:
        await self._release_playback(session)

    # ------------------------------------------------------------- call setup

    async def _establish_call(self, caller: UserSession, callee: UserSession, callee_offer: str) -> None:
        binding = CallBinding(caller=caller, callee=callee)
        try:
            self.calls.bind(binding)
        except ConflictError as exc:
            await self._fail_setup(caller, callee, str(exc))
            return

        LOG.info("Accepted call from [%s] to [%s]", caller.name, callee.name)
        try:
            pipeline = await self.media.create_paired_pipeline(caller.name, callee.name)
            binding.pipeline = pipeline
            self._ensure_bound(binding)

            caller_answer = await self.media.generate_answer(
                pipeline.caller_endpoint, caller.pending_offer or ""
            )
            callee_answer = await self.media.generate_answer(pipeline.callee_endpoint, callee_offer)

            await self._attach_endpoint(binding, caller, pipeline.caller_endpoint)
            await self._attach_endpoint(binding, callee, pipeline.callee_endpoint)
            await self.media.gather_candidates(pipeline.callee_endpoint)
            await self.media.gather_candidates(pipeline.caller_endpoint)
            await self.media.start_recording(pipeline)
            self._ensure_bound(binding)
        except Exception as exc:
            LOG.error("Rejecting call from [%s] to [%s]: %s", caller.name, callee.name, exc)
            won = self.calls.unbind(binding)
            await self._release_binding(binding)
            if won:
                await self._fail_setup(caller, callee, f"call setup failed: {exc}")
            return

        notifications = (
            (callee, {"id": "startCommunication", "sdpAnswer": callee_answer}),
            (caller, {"id": "callResponse", "response": "accepted", "sdpAnswer": caller_answer}),
        )
        for participant, notification in notifications:
            async with participant.lock:
                if not self.calls.is_bound(binding):
                    return
                participant.call_state = CallState.IN_CALL
                participant.peer_name = binding.other(participant).name
                participant.pending_offer = None
                await participant.deliver(notification)

        for participant in binding.participants:
            await self.presence.broadcast_status(participant.name, PresenceStatus.BUSY)

    def _ensure_bound(self, binding: CallBinding) -> None:
        if not self.calls.is_bound(binding):
            raise EngineError("call was torn down during setup")

    async def _attach_endpoint(
        self, binding: CallBinding, session: UserSession, endpoint: EndpointHandle
    ) -> None:
        async with session.lock:
            self._ensure_bound(binding)
            session.endpoint = endpoint
            self._endpoint_owners[endpoint.endpoint_id] = session.connection_id
            queued = session.drain_candidates()
            for candidate in queued:
                await self.media.forward_candidate(endpoint, candidate)
        if queued:
            session.logger.debug("Replayed %d queued candidates", len(queued))

    async def _fail_setup(self, caller: UserSession, callee: UserSession, reason: str) -> None:
        async with caller.lock:
            caller.reset_call()
            await caller.deliver({"id": "callResponse", "response": "rejected", "message": reason})
        async with callee.lock:
            callee.reset_call()
            await callee.deliver({"id": "stopCommunication", "message": reason})

    # --------------------------------------------------------------- teardown

    async def stop_call(self, session: UserSession) -> bool:
        """
        End the call or pending offer ``session`` takes part in.

        Returns ``False`` when there was nothing to stop.
        """

        binding = self.calls.get(session.connection_id)
        if binding is not None:
            return await self._end_call(binding, stopper=session)
        if session.call_state is CallState.OFFERING:
            await self._cancel_offer(session)
            return True
        return False

    async def _end_call(self, binding: CallBinding, *, stopper: UserSession) -> bool:
        if not self.calls.unbind(binding):
            return False
        partner = binding.other(stopper)
        LOG.info("Stopping call between [%s] and [%s]", stopper.name, partner.name)

        await self._release_binding(binding)
        for participant in binding.participants:
            async with participant.lock:
                participant.reset_call()
                if participant is not stopper:
                    await participant.deliver({"id": "stopCommunication"})

        for participant in binding.participants:
            if participant.connection_id in self._closing or not participant.is_open:
                continue
            if self.registry.lookup_by_connection(participant.connection_id) is participant:
                await self.presence.broadcast_status(
                    participant.name, self.presence.status(participant.name)
                )
        return True

    async def _cancel_offer(self, session: UserSession) -> None:
        peer = self.registry.lookup_by_name(session.peer_name)
        async with session.lock:
            session.reset_call()
        if peer is None or peer is session:
            return
        async with peer.lock:
            if (
                peer.peer_name == session.name
                and peer.call_state is CallState.OFFERING
                and self.calls.get(peer.connection_id) is None
            ):
                peer.reset_call()
                await peer.deliver({"id": "stopCommunication"})
        LOG.info("Pending call between [%s] and [%s] cancelled", session.name, peer.name)

    async def _release_binding(self, binding: CallBinding) -> None:
        pipeline = binding.pipeline
        if pipeline is None:
            return
        for endpoint in (pipeline.caller_endpoint, pipeline.callee_endpoint):
            self._endpoint_owners.pop(endpoint.endpoint_id, None)
        pipeline_id = binding.claim_release()
        if pipeline_id is not None:
            await self._release_pipeline(pipeline_id)

    async def _release_playback(self, session: UserSession) -> None:
        binding = self.playbacks.pop(session.connection_id)
        if binding is not None:
            await self._release_pipeline(binding.playback.pipeline_id)

    async def _release_pipeline(self, pipeline_id: str) -> None:
        try:
            await self.media.release(pipeline_id)
        except Exception:
            LOG.exception("Failed to release pipeline %s", pipeline_id)

    # ------------------------------------------------------------ media events

    def _on_media_event(self, event: MediaEvent) -> None:
        loop = self._loop
        events = self._events
        if loop is None or events is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(events.put_nowait, event)
        except RuntimeError:
            LOG.debug("Media event dropped; loop is shutting down.", exc_info=True)

    async def _pump_events(self) -> None:
        assert self._events is not None
        events = self._events
        while True:
            event = await events.get()
            try:
                await self._dispatch_event(event)
            except Exception:
                LOG.exception("Failed to handle media event %r", event)
            finally:
                events.task_done()

    async def flush_events(self) -> None:
        """Wait until every media event emitted so far has been handled."""
        if self._events is None:
            return
        await asyncio.sleep(0)
        await self._events.join()

    async def _dispatch_event(self, event: MediaEvent) -> None:
        if isinstance(event, IceCandidateFound):
            session: Optional[UserSession] = None
            owner = self._endpoint_owners.get(event.endpoint.endpoint_id)
            if owner is not None:
                session = self._connections.get(owner)
            else:
                playback = self.playbacks.find_endpoint(event.endpoint.endpoint_id)
                session = playback.session if playback is not None else None
            if session is None:
                LOG.debug("Candidate for released endpoint %s ignored", event.endpoint.endpoint_id)
                return
            await session.send({"id": "iceCandidate", "candidate": event.candidate.to_dict()})
            return

        if isinstance(event, EndOfStream):
            binding = self.playbacks.pop_pipeline(event.pipeline_id)
            if binding is None:
                return
            await self._release_pipeline(event.pipeline_id)
            await binding.session.send({"id": "playEnd"})


__all__ = ["CallCoordinator"]
