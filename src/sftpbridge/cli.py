"""Small command line client for trying the engine against a real server.

Examples::

    python -m sftpbridge -u foo -P 2222 localhost ls /upload
    python -m sftpbridge -u foo -i ~/.ssh/id_ed25519 example.com get /a.txt ./a.txt
"""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
from typing import List, Optional

from .bridge import SFTPBridge
from .config import Settings
from .errors import SFTPBridgeError
from .fileops import human_size, human_time
from .transfer_types import FinishedEvent, ProgressEvent, TransferState

logger = logging.getLogger(__name__)


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> None:
    """Setup logging configuration for sftpbridge.

    Args:
        level: Logging level (default: INFO)
        log_file: Optional file that receives a copy of every record
    """
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


class _ProgressPrinter:
    def __init__(self, stream=None) -> None:
        self._stream = stream or sys.stderr

    def on_progress(self, event: ProgressEvent) -> None:
        if event.total:
            percent = event.transferred * 100 // event.total
            text = f"{human_size(event.transferred)} of {human_size(event.total)} ({percent}%)"
        else:
            text = human_size(event.transferred)
        self._stream.write(f"\r{event.kind.value.capitalize()}ed {text}   ")
        self._stream.flush()

    def on_finished(self, event: FinishedEvent) -> None:
        self._stream.write("\n")
        if event.state != TransferState.COMPLETED:
            self._stream.write(f"{event.state.value}: {event.error or ''}\n")
        self._stream.flush()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sftpbridge", description="SFTP browse and transfer client")
    parser.add_argument("host")
    parser.add_argument("-P", "--port", type=int, default=22)
    parser.add_argument("-u", "--user", default=getpass.getuser())
    parser.add_argument("-i", "--identity", dest="private_key_path",
                        help="private key file (password authentication otherwise)")
    parser.add_argument("--passphrase", help="passphrase of the private key")
    parser.add_argument("--password", help="password; prompted for when omitted")
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--log-file")

    commands = parser.add_subparsers(dest="command", required=True)
    ls = commands.add_parser("ls", help="list a remote directory")
    ls.add_argument("path", nargs="?", default="~")
    get = commands.add_parser("get", help="download a file")
    get.add_argument("remote")
    get.add_argument("local")
    put = commands.add_parser("put", help="upload a file")
    put.add_argument("local")
    put.add_argument("remote")
    mkdir = commands.add_parser("mkdir", help="create a remote directory")
    mkdir.add_argument("path")
    rm = commands.add_parser("rm", help="delete a remote file or empty directory")
    rm.add_argument("path")
    mv = commands.add_parser("mv", help="rename a remote path")
    mv.add_argument("source")
    mv.add_argument("target")
    return parser


def _run_command(bridge: SFTPBridge, connection_id: str, args: argparse.Namespace) -> int:
    if args.command == "ls":
        for entry in bridge.list_directory(connection_id, args.path):
            kind = "d" if entry.is_dir else "-"
            print(f"{kind}{entry.permissions or '---------'} {human_size(entry.size):>8} "
                  f"{human_time(entry.modified):>16} {entry.name}")
        return 0

    if args.command in ("get", "put"):
        handle = bridge.subscribe(_ProgressPrinter())
        try:
            if args.command == "get":
                transfer_id = bridge.download_file(connection_id, args.remote, args.local)
            else:
                transfer_id = bridge.upload_file(connection_id, args.local, args.remote)
            try:
                info = bridge.wait_for_transfer(transfer_id)
            except KeyboardInterrupt:
                bridge.cancel_transfer(transfer_id)
                info = bridge.wait_for_transfer(transfer_id)
        finally:
            bridge.unsubscribe(handle)
        return 0 if info.state == TransferState.COMPLETED else 1

    if args.command == "mkdir":
        bridge.create_directory(connection_id, args.path)
    elif args.command == "rm":
        bridge.delete(connection_id, args.path)
    elif args.command == "mv":
        bridge.rename(connection_id, args.source, args.target)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.WARNING, args.log_file)

    password = args.password
    if not args.private_key_path and password is None:
        password = getpass.getpass(f"{args.user}@{args.host}'s password: ")

    with SFTPBridge(Settings.load()) as bridge:
        try:
            connection_id = bridge.connect(
                args.host, args.port, args.user,
                password=password,
                passphrase=args.passphrase,
                private_key_path=args.private_key_path,
            )
            return _run_command(bridge, connection_id, args)
        except SFTPBridgeError as e:
            print(f"sftpbridge: {e.kind}: {e}", file=sys.stderr)
            return 2


if __name__ == "__main__":
    sys.exit(main())
