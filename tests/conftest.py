from __future__ import annotations

import pytest

from sftpbridge import SFTPBridge, Settings

from fakes import EventRecorder, FakeChannelFactory, FakeServer


@pytest.fixture
def server() -> FakeServer:
    server = FakeServer()
    server.add_file("/a.txt", b"x" * 100)
    server.add_dir("/b")
    return server


@pytest.fixture
def factory(server: FakeServer) -> FakeChannelFactory:
    return FakeChannelFactory(server)


@pytest.fixture
def settings() -> Settings:
    return Settings(chunk_size=16, progress_interval=0.0, stall_timeout=30.0)


@pytest.fixture
def bridge(factory: FakeChannelFactory, settings: Settings):
    bridge = SFTPBridge(settings, channel_factory=factory)
    yield bridge
    bridge.close()


@pytest.fixture
def recorder(bridge: SFTPBridge) -> EventRecorder:
    recorder = EventRecorder()
    bridge.subscribe(recorder)
    return recorder


@pytest.fixture
def connection_id(bridge: SFTPBridge) -> str:
    return bridge.connect("h", 22, "u", password="p")
