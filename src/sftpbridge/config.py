"""
Engine settings.

Stored in ~/.config/sftpbridge/settings.json; every field can also be
overridden with an SFTPBRIDGE_<FIELD> environment variable.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

CONFIG_DIR  = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config")) / "sftpbridge"
CONFIG_FILE = CONFIG_DIR / "settings.json"
ENV_PREFIX  = "SFTPBRIDGE_"

HOST_KEY_POLICIES = ("auto-add", "warn", "reject")


@dataclass
class Settings:
    # Transfers
    chunk_size:        int   = 32 * 1024
    progress_interval: float = 0.1     # seconds between throttled progress events
    stall_timeout:     float = 60.0    # no chunk activity for this long -> StalledTransfer
    max_workers:       int   = 4
    multiplex:         bool  = False   # one SFTP sub-channel per transfer

    # Connection
    connect_timeout:   float = 15.0
    auth_timeout:      float = 30.0
    operation_timeout: float = 120.0   # per SFTP request on an open channel
    host_key_policy:   str   = "auto-add"
    known_hosts:       str   = ""      # extra known_hosts file, "" = system only

    # Listing
    show_hidden:       bool  = True

    # Bookkeeping
    history_limit:     int   = 256     # finished transfers / closed connections kept for queries

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if self.max_workers <= 0:
            raise ValueError("max_workers must be positive")
        for name in ("stall_timeout", "connect_timeout", "auth_timeout", "operation_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.progress_interval < 0:
            raise ValueError("progress_interval cannot be negative")
        if self.history_limit < 0:
            raise ValueError("history_limit cannot be negative")
        if self.host_key_policy not in HOST_KEY_POLICIES:
            raise ValueError(
                f"host_key_policy must be one of {', '.join(HOST_KEY_POLICIES)}"
            )

    def save(self, path: Optional[Path] = None) -> None:
        path = Path(path) if path else CONFIG_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w") as f:
            json.dump(asdict(self), f, indent=4)

    @classmethod
    def load(cls, path: Optional[Path] = None,
             environ: Optional[Mapping[str, str]] = None) -> "Settings":
        path = Path(path) if path else CONFIG_FILE
        values = {}
        if path.exists():
            try:
                with path.open() as f:
                    data = json.load(f)
                values = {k: v for k, v in data.items()
                          if k in cls.__dataclass_fields__}
            except (OSError, ValueError) as e:
                logger.warning(f"Ignoring unreadable settings file {path}: {e}")
        values.update(_from_environ(os.environ if environ is None else environ))
        return cls(**values)


def _from_environ(environ: Mapping[str, str]) -> dict:
    values = {}
    for f in fields(Settings):
        raw = environ.get(ENV_PREFIX + f.name.upper())
        if raw is None:
            continue
        try:
            values[f.name] = _coerce(raw, f.default)
        except ValueError:
            logger.warning(f"Ignoring invalid {ENV_PREFIX}{f.name.upper()}={raw!r}")
    return values


def _coerce(raw: str, default):
    if isinstance(default, bool):
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError(raw)
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw
