"""
Contract between the signaling core and the media engine.

The media engine owns pipelines and endpoints; the signaling core only ever
holds the opaque handles defined here and releases them through
:meth:`MediaEngine.release`.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union


class MediaEngineError(RuntimeError):
    """Base class for media engine failures."""


class RecordingNotFound(MediaEngineError):
    """Raised when a playback is requested for a user without a recording."""


@dataclass(frozen=True)
class IceCandidate:
    """Serialisable ICE candidate container."""

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }


@dataclass(frozen=True)
class EndpointHandle:
    endpoint_id: str
    pipeline_id: str


@dataclass(frozen=True)
class PairedPipeline:
    """Pipeline connecting two call participants, with one endpoint per side."""

    pipeline_id: str
    caller_endpoint: EndpointHandle
    callee_endpoint: EndpointHandle


@dataclass(frozen=True)
class PlaybackPipeline:
    """Pipeline replaying a recording into a single endpoint."""

    pipeline_id: str
    endpoint: EndpointHandle
    recorded_user: str


@dataclass(frozen=True)
class IceCandidateFound:
    endpoint: EndpointHandle
    candidate: IceCandidate


@dataclass(frozen=True)
class EndOfStream:
    pipeline_id: str


MediaEvent = Union[IceCandidateFound, EndOfStream]
MediaEventListener = Callable[[MediaEvent], None]


class MediaEngine(abc.ABC):
    """
    Abstract media engine.

    Listeners registered through :meth:`subscribe` may be invoked from any
    thread; consumers are expected to hand events over to their own loop.
    """

    def __init__(self) -> None:
        self._listeners: List[MediaEventListener] = []

    def subscribe(self, listener: MediaEventListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: MediaEventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event: MediaEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    @abc.abstractmethod
    async def create_paired_pipeline(self, caller: str, callee: str) -> PairedPipeline:
        """Create a pipeline with one WebRTC endpoint per call participant."""

    @abc.abstractmethod
    async def generate_answer(self, endpoint: EndpointHandle, offer: str) -> str:
        """Process ``offer`` on ``endpoint`` and return the SDP answer."""

    @abc.abstractmethod
    async def gather_candidates(self, endpoint: EndpointHandle) -> None:
        ...

    @abc.abstractmethod
    async def forward_candidate(self, endpoint: EndpointHandle, candidate: IceCandidate) -> None:
        ...

    @abc.abstractmethod
    async def start_recording(self, pipeline: PairedPipeline) -> None:
        ...

    @abc.abstractmethod
    async def release(self, pipeline_id: str) -> None:
        """Release a pipeline. Releasing an unknown or released pipeline is a no-op."""

    @abc.abstractmethod
    async def create_playback_pipeline(self, recorded_user: str) -> PlaybackPipeline:
        """Create a playback pipeline; raise :class:`RecordingNotFound` if nothing was recorded."""

    @abc.abstractmethod
    async def start_playback(self, playback: PlaybackPipeline) -> None:
        ...


__all__ = [
    "EndOfStream",
    "EndpointHandle",
    "IceCandidate",
    "IceCandidateFound",
    "MediaEngine",
    "MediaEngineError",
    "MediaEvent",
    "MediaEventListener",
    "PairedPipeline",
    "PlaybackPipeline",
    "RecordingNotFound",
]
