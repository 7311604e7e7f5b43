"""Tests for the connection registry and session serialization."""

from __future__ import annotations

import threading
import time

import pytest

from sftpbridge import (
    AuthenticationFailed,
    ConnectionLost,
    ConnectionManager,
    ConnectionNotFound,
    ConnectionState,
    ConnectionTimeout,
    Endpoint,
    HostUnreachable,
    NotFound,
    PasswordCredentials,
    PermissionDenied,
    Settings,
)
from sftpbridge.connection import PRIMARY_CHANNEL, SessionArena

from fakes import FakeChannelFactory, FakeServer


@pytest.fixture
def manager(factory: FakeChannelFactory) -> ConnectionManager:
    manager = ConnectionManager(factory, Settings())
    yield manager
    manager.close_all()


def _connect(manager: ConnectionManager, password: str = "p", host: str = "h") -> str:
    return manager.connect(Endpoint(host, 22, "u"), PasswordCredentials(password))


class TestConnect:
    def test_returns_unique_ids(self, manager: ConnectionManager) -> None:
        ids = {_connect(manager) for _ in range(5)}
        assert len(ids) == 5
        for connection_id in ids:
            assert manager.state(connection_id) == ConnectionState.CONNECTED

    def test_connection_is_immediately_usable(self, manager: ConnectionManager) -> None:
        connection_id = _connect(manager)
        names = manager.with_session(connection_id, lambda sftp: sftp.listdir_attr("/"))
        assert {a.filename for a in names} == {"a.txt", "b", "home"}

    def test_bad_password_registers_nothing(self, manager: ConnectionManager) -> None:
        with pytest.raises(AuthenticationFailed):
            _connect(manager, password="wrong")
        assert manager.list_connections() == []

    def test_unreachable_host_registers_nothing(self, manager: ConnectionManager) -> None:
        with pytest.raises(HostUnreachable):
            _connect(manager, host="unreachable")
        assert manager.list_connections() == []

    def test_endpoint_is_recorded(self, manager: ConnectionManager) -> None:
        connection_id = _connect(manager)
        connection = manager.get(connection_id)
        assert connection.endpoint == Endpoint("h", 22, "u")
        assert manager.endpoint(connection_id) == connection.endpoint
        assert str(connection.endpoint) == "u@h:22"

    def test_slow_sftp_start_times_out(self, factory: FakeChannelFactory,
                                        server: FakeServer) -> None:
        server.open_delay = 1.0
        manager = ConnectionManager(factory, Settings(connect_timeout=0.1))
        started = time.monotonic()
        with pytest.raises(ConnectionTimeout):
            _connect(manager)
        assert time.monotonic() - started < 0.9
        assert manager.list_connections() == []
        assert not factory.channels[0].active

    def test_unknown_id(self, manager: ConnectionManager) -> None:
        with pytest.raises(ConnectionNotFound):
            manager.state("nope")
        with pytest.raises(ConnectionNotFound):
            manager.with_session("nope", lambda sftp: None)


class TestDisconnect:
    def test_disconnect_closes_session(self, manager: ConnectionManager,
                                       factory: FakeChannelFactory) -> None:
        connection_id = _connect(manager)
        manager.disconnect(connection_id)
        assert manager.state(connection_id) == ConnectionState.CLOSED
        assert not factory.channels[0].active
        assert manager.channel_count(connection_id) == 0

    def test_disconnect_is_idempotent(self, manager: ConnectionManager) -> None:
        connection_id = _connect(manager)
        manager.disconnect(connection_id)
        manager.disconnect(connection_id)
        manager.disconnect("never-existed")
        assert manager.state(connection_id) == ConnectionState.CLOSED

    def test_closed_connection_rejects_operations(self, manager: ConnectionManager) -> None:
        connection_id = _connect(manager)
        manager.disconnect(connection_id)
        with pytest.raises(ConnectionLost):
            manager.with_session(connection_id, lambda sftp: sftp.listdir_attr("/"))

    def test_closed_connections_are_forgotten_beyond_history_limit(
            self, factory: FakeChannelFactory) -> None:
        manager = ConnectionManager(factory, Settings(history_limit=2))
        closed = []
        for _ in range(5):
            connection_id = _connect(manager)
            manager.disconnect(connection_id)
            closed.append(connection_id)
        live = _connect(manager)
        assert {c.id for c in manager.list_connections()} == {closed[-2], closed[-1], live}
        with pytest.raises(ConnectionNotFound):
            manager.state(closed[0])
        manager.disconnect(closed[0])
        assert manager.state(live) == ConnectionState.CONNECTED

    def test_lost_connections_count_towards_history(self, factory: FakeChannelFactory) -> None:
        manager = ConnectionManager(factory, Settings(history_limit=0))
        connection_id = _connect(manager)
        factory.channels[0].drop()
        with pytest.raises(ConnectionLost):
            manager.with_session(connection_id, lambda sftp: sftp.listdir_attr("/"))
        assert manager.list_connections() == []

    def test_listeners_hear_about_disconnect(self, manager: ConnectionManager) -> None:
        heard = []
        manager.add_loss_listener(lambda cid, err: heard.append((cid, err.kind)))
        connection_id = _connect(manager)
        manager.disconnect(connection_id)
        manager.disconnect(connection_id)
        assert heard == [(connection_id, "ConnectionLost")]


class TestWithSession:
    def test_maps_remote_errors(self, manager: ConnectionManager, server: FakeServer) -> None:
        connection_id = _connect(manager)
        with pytest.raises(NotFound):
            manager.with_session(connection_id, lambda sftp: sftp.stat("/missing"))
        server.denied.add("/b")
        with pytest.raises(PermissionDenied):
            manager.with_session(connection_id, lambda sftp: sftp.listdir_attr("/b"))
        assert manager.state(connection_id) == ConnectionState.CONNECTED

    def test_dropped_transport_marks_connection_failed(self, manager: ConnectionManager,
                                                       factory: FakeChannelFactory) -> None:
        heard = []
        manager.add_loss_listener(lambda cid, err: heard.append(cid))
        connection_id = _connect(manager)
        factory.channels[0].drop()
        with pytest.raises(ConnectionLost):
            manager.with_session(connection_id, lambda sftp: sftp.listdir_attr("/"))
        assert manager.state(connection_id) == ConnectionState.FAILED
        assert heard == [connection_id]
        # a later disconnect still tidies up
        manager.disconnect(connection_id)
        assert manager.state(connection_id) == ConnectionState.CLOSED

    def test_operations_on_one_channel_never_overlap(self, manager: ConnectionManager,
                                                     server: FakeServer) -> None:
        connection_id = _connect(manager)
        errors = []

        def _worker() -> None:
            try:
                for _ in range(50):
                    manager.with_session(connection_id, lambda sftp: sftp.listdir_attr("/"))
            except Exception as e:  # pragma: no cover - reported below
                errors.append(e)

        threads = [threading.Thread(target=_worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert errors == []
        assert server.violations == 0


class TestChannels:
    def test_without_multiplexing_everything_shares_primary(self, manager: ConnectionManager) -> None:
        connection_id = _connect(manager)
        assert manager.open_channel(connection_id) == PRIMARY_CHANNEL
        manager.close_channel(connection_id, PRIMARY_CHANNEL)
        assert manager.channel_count(connection_id) == 1

    def test_multiplexed_channels(self, factory: FakeChannelFactory, server: FakeServer) -> None:
        manager = ConnectionManager(factory, Settings(multiplex=True))
        connection_id = _connect(manager)
        key = manager.open_channel(connection_id)
        assert key != PRIMARY_CHANNEL
        assert manager.channel_count(connection_id) == 2
        size = manager.with_session(connection_id, lambda sftp: sftp.stat("/a.txt").st_size,
                                    channel=key)
        assert size == 100
        manager.close_channel(connection_id, key)
        assert manager.channel_count(connection_id) == 1
        assert len(server.clients) == 2
        manager.close_all()


class TestSessionArena:
    def test_slots_keyed_by_connection_and_channel(self) -> None:
        arena = SessionArena()
        arena.add("c1", "primary", object())
        arena.add("c1", "x", object())
        arena.add("c2", "primary", object())
        with pytest.raises(ValueError):
            arena.add("c1", "x", object())
        assert arena.count("c1") == 2
        assert len(arena.pop_all("c1")) == 2
        assert arena.get("c1", "primary") is None
        assert arena.get("c2", "primary") is not None
