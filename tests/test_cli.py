from __future__ import annotations

import pytest

from sftpbridge import SFTPBridge, Settings
from sftpbridge import cli

from fakes import FakeChannelFactory, FakeServer


def _args(*argv):
    return cli.build_parser().parse_args(["-u", "u", "--password", "p", "h", *argv])


def test_parser_defaults() -> None:
    args = _args("ls")
    assert args.path == "~"
    assert args.port == 22
    assert args.private_key_path is None


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["h"])


def test_ls(bridge: SFTPBridge, connection_id: str, capsys) -> None:
    assert cli._run_command(bridge, connection_id, _args("ls", "/")) == 0
    out = capsys.readouterr().out.splitlines()
    assert any(line.startswith("drwxr-xr-x") and line.endswith(" b") for line in out)
    assert any(line.startswith("-rw-r--r--") and line.endswith(" a.txt") for line in out)


def test_get_and_put(bridge: SFTPBridge, connection_id: str, server: FakeServer,
                     tmp_path) -> None:
    local = tmp_path / "a.txt"
    assert cli._run_command(bridge, connection_id, _args("get", "/a.txt", str(local))) == 0
    assert local.read_bytes() == b"x" * 100
    assert cli._run_command(bridge, connection_id, _args("put", str(local), "/b/copy.txt")) == 0
    assert bytes(server.files["/b/copy.txt"]) == b"x" * 100
    assert bridge.emitter.observer_count == 0


def test_failed_get_returns_nonzero(bridge: SFTPBridge, connection_id: str, tmp_path,
                                    capsys) -> None:
    assert cli._run_command(bridge, connection_id, _args("get", "/missing", str(tmp_path / "m"))) == 1
    assert "Failed" in capsys.readouterr().err


def test_mkdir_mv_rm(bridge: SFTPBridge, connection_id: str, server: FakeServer) -> None:
    cli._run_command(bridge, connection_id, _args("mkdir", "/b/c"))
    cli._run_command(bridge, connection_id, _args("mv", "/b/c", "/b/d"))
    assert "/b/d" in server.dirs
    cli._run_command(bridge, connection_id, _args("rm", "/b/d"))
    assert "/b/d" not in server.dirs


def test_main_reports_errors(monkeypatch, factory: FakeChannelFactory, capsys) -> None:
    monkeypatch.setattr(
        cli, "SFTPBridge", lambda settings: SFTPBridge(Settings(), channel_factory=factory)
    )
    assert cli.main(["-u", "u", "--password", "wrong", "h", "ls", "/"]) == 2
    assert "AuthenticationFailed" in capsys.readouterr().err
    assert cli.main(["-u", "u", "--password", "p", "h", "ls", "/nope"]) == 2
    assert "NotFound" in capsys.readouterr().err
    assert cli.main(["-u", "u", "--password", "p", "h", "ls", "/"]) == 0
