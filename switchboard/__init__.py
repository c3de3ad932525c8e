"""
Switchboard call-signaling service.

Registers WebSocket clients under unique user names, negotiates one-to-one
calls between them through a pluggable media engine, relays ICE candidates
and publishes presence.
"""

from __future__ import annotations

from .config import IceSettings

__version__ = "0.1.0"

__all__ = [
    "IceSettings",
    "__version__",
]
