"""Error mapping of the paramiko backed channel factory."""

from __future__ import annotations

import socket

import paramiko
import pytest

from sftpbridge import (
    AuthenticationFailed,
    ConnectionTimeout,
    Endpoint,
    HostUnreachable,
    PasswordCredentials,
    Settings,
)
from sftpbridge.channel import ParamikoChannelFactory, SecureChannel, select_host_key_policy


class _Client:
    """Records what the factory does to an SSHClient."""

    error = None
    instances = []

    def __init__(self) -> None:
        self.closed = False
        self.policy = None
        self.kwargs = None
        _Client.instances.append(self)

    def load_system_host_keys(self) -> None:
        pass

    def load_host_keys(self, path) -> None:
        pass

    def set_missing_host_key_policy(self, policy) -> None:
        self.policy = policy

    def connect(self, **kwargs) -> None:
        self.kwargs = kwargs
        if _Client.error is not None:
            raise _Client.error

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def client(monkeypatch):
    _Client.error = None
    _Client.instances = []
    monkeypatch.setattr(paramiko, "SSHClient", _Client)
    return _Client


def _open(settings: Settings = None) -> SecureChannel:
    factory = ParamikoChannelFactory(settings or Settings(connect_timeout=3.0))
    return factory.open(Endpoint("example.com", 2222, "u"), PasswordCredentials("p"))


def test_connect_passes_password_and_timeouts(client) -> None:
    channel = _open()
    assert isinstance(channel, SecureChannel)
    kwargs = client.instances[0].kwargs
    assert kwargs["hostname"] == "example.com"
    assert kwargs["port"] == 2222
    assert kwargs["username"] == "u"
    assert kwargs["password"] == "p"
    assert kwargs["timeout"] == 3.0
    assert kwargs["allow_agent"] is False
    assert kwargs["look_for_keys"] is False
    assert isinstance(client.instances[0].policy, paramiko.AutoAddPolicy)


@pytest.mark.parametrize("error, expected", [
    (paramiko.AuthenticationException("denied"), AuthenticationFailed),
    (socket.timeout("timed out"), ConnectionTimeout),
    (paramiko.SSHException("Error reading SSH protocol banner"), ConnectionTimeout),
    (paramiko.SSHException("Incompatible ssh peer"), HostUnreachable),
    (ConnectionRefusedError(111, "Connection refused"), HostUnreachable),
    (socket.gaierror(-2, "Name or service not known"), HostUnreachable),
])
def test_connect_errors_are_mapped(client, error, expected) -> None:
    client.error = error
    with pytest.raises(expected) as info:
        _open()
    assert info.value.cause is error
    assert client.instances[0].closed


def test_timeout_is_transient() -> None:
    assert ConnectionTimeout("x").transient
    assert isinstance(ConnectionTimeout("x"), HostUnreachable)
    assert not AuthenticationFailed("x").transient


def test_host_key_policies() -> None:
    assert isinstance(select_host_key_policy("reject"), paramiko.RejectPolicy)
    assert isinstance(select_host_key_policy("warn"), paramiko.WarningPolicy)
    assert isinstance(select_host_key_policy("auto-add"), paramiko.AutoAddPolicy)


def test_endpoint_str() -> None:
    assert str(Endpoint("h", 22, "me")) == "me@h:22"


class _Chan:
    def __init__(self, fail: bool = False) -> None:
        self.timeouts = []
        self.subsystem = None
        self.closed = False
        self._fail = fail

    def settimeout(self, timeout) -> None:
        self.timeouts.append(timeout)

    def invoke_subsystem(self, name: str) -> None:
        if self._fail:
            raise socket.timeout("timed out")
        self.subsystem = name

    def close(self) -> None:
        self.closed = True


class _Transport:
    def __init__(self, chan: _Chan) -> None:
        self.chan = chan
        self.open_timeout = "unset"

    def is_active(self) -> bool:
        return True

    def open_session(self, timeout=None) -> _Chan:
        self.open_timeout = timeout
        return self.chan


class _ConnectedClient:
    def __init__(self, transport) -> None:
        self._transport = transport

    def get_transport(self):
        return self._transport


class TestSecureChannel:
    def test_sftp_start_is_bounded_by_open_timeout(self, monkeypatch) -> None:
        monkeypatch.setattr(paramiko, "SFTPClient", lambda chan: ("sftp", chan))
        chan = _Chan()
        transport = _Transport(chan)
        channel = SecureChannel(_ConnectedClient(transport), operation_timeout=120.0,
                                open_timeout=5.0)
        assert channel.open_sftp() == ("sftp", chan)
        assert transport.open_timeout == 5.0
        assert chan.subsystem == "sftp"
        assert chan.timeouts == [5.0, 120.0]

    def test_failed_start_closes_the_channel(self) -> None:
        chan = _Chan(fail=True)
        channel = SecureChannel(_ConnectedClient(_Transport(chan)), open_timeout=1.0)
        with pytest.raises(socket.timeout):
            channel.open_sftp()
        assert chan.closed

    def test_inactive_transport(self) -> None:
        channel = SecureChannel(_ConnectedClient(None))
        assert not channel.is_active()
        with pytest.raises(paramiko.SSHException):
            channel.open_sftp()
