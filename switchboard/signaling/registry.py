"""
Directory of registered users.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from ..errors import ConflictError, ValidationError
from .session import UserSession

LOG = logging.getLogger(__name__)


class UserRegistry:
    """
    Maps user names and connection ids to sessions.

    Both maps are guarded by one lock so they always describe the same
    session set; critical sections never await.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._by_name: Dict[str, UserSession] = {}
        self._by_connection: Dict[str, UserSession] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_name)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._by_name

    def register(self, session: UserSession, name: str) -> None:
        if not name:
            raise ValidationError("empty user name")
        with self._lock:
            if name in self._by_name:
                raise ConflictError(f"user {name} already registered")
            if session.connection_id in self._by_connection:
                current = self._by_connection[session.connection_id].name
                raise ConflictError(f"connection already registered as {current}")
            session.assign_name(name)
            self._by_name[name] = session
            self._by_connection[session.connection_id] = session
        LOG.debug("Registered %s on connection %s", name, session.connection_id)

    def lookup_by_name(self, name: Optional[str]) -> Optional[UserSession]:
        if name is None:
            return None
        with self._lock:
            return self._by_name.get(name)

    def lookup_by_connection(self, connection_id: str) -> Optional[UserSession]:
        with self._lock:
            return self._by_connection.get(connection_id)

    def remove(self, connection_id: str) -> Optional[UserSession]:
        with self._lock:
            session = self._by_connection.pop(connection_id, None)
            if session is None:
                return None
            if session.name is not None and self._by_name.get(session.name) is session:
                del self._by_name[session.name]
        LOG.debug("Removed %s (connection %s)", session.name, connection_id)
        return session

    def remove_by_name(self, name: str) -> Optional[UserSession]:
        with self._lock:
            session = self._by_name.get(name)
            if session is None:
                return None
            return self.remove(session.connection_id)

    def list_names(self) -> List[str]:
        with self._lock:
            return list(self._by_name)

    def sessions(self) -> List[UserSession]:
        with self._lock:
            return list(self._by_name.values())


__all__ = ["UserRegistry"]
