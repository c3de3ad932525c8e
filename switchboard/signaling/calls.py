"""
Call and playback bindings keyed by connection id.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..errors import ConflictError
from ..media import PairedPipeline, PlaybackPipeline
from .session import UserSession


@dataclass(eq=False)
class CallBinding:
    """
    The two participants of one call and the pipeline joining them.

    A binding is recorded once when the callee accepts and looked up from
    either side; the partner is always ``other(session)``.
    """

    caller: UserSession
    callee: UserSession
    pipeline: Optional[PairedPipeline] = None
    released: bool = False

    @property
    def participants(self) -> Tuple[UserSession, UserSession]:
        return (self.caller, self.callee)

    def other(self, session: UserSession) -> UserSession:
        if session is self.caller:
            return self.callee
        if session is self.callee:
            return self.caller
        raise ValueError(f"{session!r} is not part of this call")

    def claim_release(self) -> Optional[str]:
        """Return the pipeline id the first time only."""
        if self.released or self.pipeline is None:
            return None
        self.released = True
        return self.pipeline.pipeline_id


class CallTable:
    """Thread-safe table of active call bindings."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._bindings: Dict[str, CallBinding] = {}

    def __len__(self) -> int:
        with self._lock:
            return len({id(binding) for binding in self._bindings.values()})

    def bind(self, binding: CallBinding) -> None:
        keys = [session.connection_id for session in binding.participants]
        with self._lock:
            for key in keys:
                if key in self._bindings:
                    raise ConflictError("participant is already in a call", response="rejected")
            for key in keys:
                self._bindings[key] = binding

    def get(self, connection_id: str) -> Optional[CallBinding]:
        with self._lock:
            return self._bindings.get(connection_id)

    def is_bound(self, binding: CallBinding) -> bool:
        with self._lock:
            return any(
                self._bindings.get(session.connection_id) is binding
                for session in binding.participants
            )

    def unbind(self, binding: CallBinding) -> bool:
        removed = False
        with self._lock:
            for session in binding.participants:
                if self._bindings.get(session.connection_id) is binding:
                    del self._bindings[session.connection_id]
                    removed = True
        return removed

    def bindings(self) -> List[CallBinding]:
        with self._lock:
            unique: Dict[int, CallBinding] = {}
            for binding in self._bindings.values():
                unique.setdefault(id(binding), binding)
            return list(unique.values())


@dataclass(eq=False)
class PlaybackBinding:
    session: UserSession
    playback: PlaybackPipeline


class PlaybackTable:
    """Active playback pipelines, at most one per connection."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_connection: Dict[str, PlaybackBinding] = {}

    def put(self, binding: PlaybackBinding) -> Optional[PlaybackBinding]:
        with self._lock:
            previous = self._by_connection.get(binding.session.connection_id)
            self._by_connection[binding.session.connection_id] = binding
            return previous

    def get(self, connection_id: str) -> Optional[PlaybackBinding]:
        with self._lock:
            return self._by_connection.get(connection_id)

    def pop(self, connection_id: str) -> Optional[PlaybackBinding]:
        with self._lock:
            return self._by_connection.pop(connection_id, None)

    def pop_pipeline(self, pipeline_id: str) -> Optional[PlaybackBinding]:
        with self._lock:
            for key, binding in list(self._by_connection.items()):
                if binding.playback.pipeline_id == pipeline_id:
                    return self._by_connection.pop(key)
        return None

    def find_endpoint(self, endpoint_id: str) -> Optional[PlaybackBinding]:
        with self._lock:
            for binding in self._by_connection.values():
                if binding.playback.endpoint.endpoint_id == endpoint_id:
                    return binding
        return None


__all__ = ["CallBinding", "CallTable", "PlaybackBinding", "PlaybackTable"]
