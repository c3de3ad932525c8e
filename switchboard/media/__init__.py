"""
Media engine contract and the bundled loopback implementation.
"""

from __future__ import annotations

from .engine import (
    EndOfStream,
    EndpointHandle,
    IceCandidate,
    IceCandidateFound,
    MediaEngine,
    MediaEngineError,
    MediaEvent,
    PairedPipeline,
    PlaybackPipeline,
    RecordingNotFound,
)
from .loopback import LoopbackMediaEngine

__all__ = [
    "EndOfStream",
    "EndpointHandle",
    "IceCandidate",
    "IceCandidateFound",
    "LoopbackMediaEngine",
    "MediaEngine",
    "MediaEngineError",
    "MediaEvent",
    "PairedPipeline",
    "PlaybackPipeline",
    "RecordingNotFound",
]
