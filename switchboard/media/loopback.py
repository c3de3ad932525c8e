"""
In-memory media engine.

The loopback engine negotiates SDP locally and keeps no media state beyond
bookkeeping, which makes it suitable for development servers and tests.
"""

from __future__ import annotations

import itertools
import logging
import threading
import uuid
from typing import Dict, List, Optional, Set, Tuple

from .engine import (
    EndOfStream,
    EndpointHandle,
    IceCandidate,
    IceCandidateFound,
    MediaEngine,
    MediaEngineError,
    PairedPipeline,
    PlaybackPipeline,
    RecordingNotFound,
)

LOG = logging.getLogger(__name__)

_DIRECTION_MIRROR = {
    "sendonly": "recvonly",
    "recvonly": "sendonly",
    "sendrecv": "sendrecv",
    "inactive": "inactive",
}


def build_answer(offer: str, session_version: int = 1) -> str:
    """
    Build a minimal SDP answer mirroring the media sections of ``offer``.
    """

    lines = [line.strip() for line in (offer or "").splitlines() if line.strip()]
    if not lines or not lines[0].startswith("v="):
        raise MediaEngineError("SDP offer must start with a version line")

    sections: List[Tuple[str, str]] = []
    media_line: Optional[str] = None
    direction = "sendrecv"
    for line in lines:
        if line.startswith("m="):
            if media_line is not None:
                sections.append((media_line, direction))
            media_line = line
            direction = "sendrecv"
        elif media_line is not None and line[2:] in _DIRECTION_MIRROR and line.startswith("a="):
            direction = line[2:]
    if media_line is not None:
        sections.append((media_line, direction))
    if not sections:
        raise MediaEngineError("SDP offer has no media sections")

    answer = [
        "v=0",
        f"o=switchboard {session_version} {session_version} IN IP4 127.0.0.1",
        "s=-",
        "t=0 0",
    ]
    for index, (media, offered_direction) in enumerate(sections):
        answer.append(media)
        answer.append(f"a=mid:{index}")
        answer.append("a=setup:active")
        answer.append(f"a={_DIRECTION_MIRROR[offered_direction]}")
    return "\r\n".join(answer) + "\r\n"


class LoopbackMediaEngine(MediaEngine):
    """Media engine that negotiates locally and records only bookkeeping."""

    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.Lock()
        self._versions = itertools.count(1)
        self._pipelines: Dict[str, Tuple[str, ...]] = {}
        self._recordings: Set[str] = set()
        self._candidate_ports = itertools.count(50000)
        self.released: List[str] = []
        self.forwarded: Dict[str, List[IceCandidate]] = {}
        self.gathering: Set[str] = set()
        self.playing: Set[str] = set()

    def _new_endpoint(self, pipeline_id: str) -> EndpointHandle:
        return EndpointHandle(endpoint_id=uuid.uuid4().hex, pipeline_id=pipeline_id)

    def _require_pipeline(self, pipeline_id: str) -> None:
        with self._lock:
            if pipeline_id not in self._pipelines:
                raise MediaEngineError(f"pipeline {pipeline_id} is not active")

    @property
    def active_pipelines(self) -> List[str]:
        with self._lock:
            return list(self._pipelines)

    def has_recording(self, user: str) -> bool:
        with self._lock:
            return user in self._recordings

    async def create_paired_pipeline(self, caller: str, callee: str) -> PairedPipeline:
        pipeline_id = uuid.uuid4().hex
        pipeline = PairedPipeline(
            pipeline_id=pipeline_id,
            caller_endpoint=self._new_endpoint(pipeline_id),
            callee_endpoint=self._new_endpoint(pipeline_id),
        )
        with self._lock:
            self._pipelines[pipeline_id] = (caller, callee)
        LOG.debug("Created call pipeline %s for %s -> %s", pipeline_id, caller, callee)
        return pipeline

    async def generate_answer(self, endpoint: EndpointHandle, offer: str) -> str:
        self._require_pipeline(endpoint.pipeline_id)
        return build_answer(offer, next(self._versions))

    async def gather_candidates(self, endpoint: EndpointHandle) -> None:
        self._require_pipeline(endpoint.pipeline_id)
        with self._lock:
            self.gathering.add(endpoint.endpoint_id)
            port = next(self._candidate_ports)
        candidate = IceCandidate(
            candidate=f"candidate:1 1 UDP 2122252543 127.0.0.1 {port} typ host",
            sdp_mid="0",
            sdp_mline_index=0,
        )
        self.emit(IceCandidateFound(endpoint=endpoint, candidate=candidate))

    async def forward_candidate(self, endpoint: EndpointHandle, candidate: IceCandidate) -> None:
        self._require_pipeline(endpoint.pipeline_id)
        with self._lock:
            self.forwarded.setdefault(endpoint.endpoint_id, []).append(candidate)

    async def start_recording(self, pipeline: PairedPipeline) -> None:
        with self._lock:
            participants = self._pipelines.get(pipeline.pipeline_id)
            if participants is None:
                raise MediaEngineError(f"pipeline {pipeline.pipeline_id} is not active")
            self._recordings.update(participants)

    async def release(self, pipeline_id: str) -> None:
        with self._lock:
            if self._pipelines.pop(pipeline_id, None) is None:
                return
            self.released.append(pipeline_id)
            self.playing.discard(pipeline_id)
        LOG.debug("Released pipeline %s", pipeline_id)

    async def create_playback_pipeline(self, recorded_user: str) -> PlaybackPipeline:
        if not self.has_recording(recorded_user):
            raise RecordingNotFound(f"No recording for user [{recorded_user}]")
        pipeline_id = uuid.uuid4().hex
        with self._lock:
            self._pipelines[pipeline_id] = (recorded_user,)
        return PlaybackPipeline(
            pipeline_id=pipeline_id,
            endpoint=self._new_endpoint(pipeline_id),
            recorded_user=recorded_user,
        )

    async def start_playback(self, playback: PlaybackPipeline) -> None:
        self._require_pipeline(playback.pipeline_id)
        with self._lock:
            self.playing.add(playback.pipeline_id)

    def finish_playback(self, pipeline_id: str) -> None:
        """Signal end of stream for a playback pipeline."""
        self.emit(EndOfStream(pipeline_id=pipeline_id))
