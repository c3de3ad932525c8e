"""
Error taxonomy shared by the signaling core and the transport adapter.
"""

from __future__ import annotations

from typing import Any, Dict


class SignalingError(RuntimeError):
    """Base class for failures that are answered on the originating connection."""

    response = "rejected"

    def __init__(self, message: str, **fields: Any) -> None:
        super().__init__(message)
        self.fields: Dict[str, Any] = fields

    def to_reply(self, response_id: str) -> Dict[str, Any]:
        reply: Dict[str, Any] = {
            "id": response_id,
            "response": self.response,
            "message": str(self),
        }
        reply.update(self.fields)
        return reply


class ValidationError(SignalingError):
    """Raised for empty names and malformed or out-of-order messages."""


class NotFoundError(SignalingError):
    """Raised when a callee or target user is not registered."""


class ConflictError(SignalingError):
    """Raised when a name is already registered or a session is already bound."""

    response = "skipped"


class EngineError(SignalingError):
    """Raised when the media engine fails to bind or negotiate a call."""


class TransportError(SignalingError):
    """Raised by transports when a frame cannot be written to a closed connection."""
