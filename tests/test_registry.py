"""Tests covering the user registry."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import FakeTransport

from switchboard.errors import ConflictError, ValidationError
from switchboard.signaling import UserRegistry, UserSession


def make_session() -> UserSession:
    return UserSession(FakeTransport())


def test_register_indexes_both_maps() -> None:
    registry = UserRegistry()
    session = make_session()

    registry.register(session, "alice")

    assert registry.list_names() == ["alice"]
    assert registry.lookup_by_name("alice") is session
    assert registry.lookup_by_connection(session.connection_id) is session
    assert session.name == "alice"
    assert "alice" in registry
    assert len(registry) == 1


def test_duplicate_name_leaves_registry_unchanged() -> None:
    registry = UserRegistry()
    first = make_session()
    second = make_session()
    registry.register(first, "alice")

    with pytest.raises(ConflictError):
        registry.register(second, "alice")

    assert registry.list_names() == ["alice"]
    assert registry.lookup_by_name("alice") is first
    assert registry.lookup_by_connection(second.connection_id) is None
    assert second.name is None


def test_empty_name_is_invalid() -> None:
    registry = UserRegistry()

    with pytest.raises(ValidationError):
        registry.register(make_session(), "")

    assert len(registry) == 0


def test_connection_cannot_register_twice() -> None:
    registry = UserRegistry()
    session = make_session()
    registry.register(session, "alice")

    with pytest.raises(ConflictError):
        registry.register(session, "alicia")

    assert registry.list_names() == ["alice"]


def test_remove_is_idempotent() -> None:
    registry = UserRegistry()
    session = make_session()
    registry.register(session, "alice")

    assert registry.remove(session.connection_id) is session
    assert registry.remove(session.connection_id) is None
    assert registry.lookup_by_name("alice") is None
    assert registry.list_names() == []


def test_remove_by_name() -> None:
    registry = UserRegistry()
    alice = make_session()
    bob = make_session()
    registry.register(alice, "alice")
    registry.register(bob, "bob")

    assert registry.remove_by_name("bob") is bob
    assert registry.remove_by_name("bob") is None
    assert registry.lookup_by_connection(bob.connection_id) is None
    assert registry.sessions() == [alice]


def test_concurrent_registration_has_single_winner() -> None:
    registry = UserRegistry()
    sessions = [make_session() for _ in range(32)]

    def attempt(session: UserSession) -> bool:
        try:
            registry.register(session, "contested")
        except ConflictError:
            return False
        return True

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, sessions))

    assert results.count(True) == 1
    winner = sessions[results.index(True)]
    assert registry.lookup_by_name("contested") is winner
    assert len(registry) == 1
