"""Authentication modes accepted by :meth:`ConnectionManager.connect`.

A connect request carries exactly one of three modes: a password, a private
key file, or a private key file protected by a passphrase.  The modes are
separate types so that impossible combinations (a password *and* a key) are
rejected before any network traffic happens.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional, Union

import paramiko

from .errors import AuthenticationFailed, InvalidCredentials, LocalIOError

logger = logging.getLogger(__name__)

# Tried in order when loading a key file of unknown type.
_KEY_TYPES = (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey)


@dataclass(frozen=True)
class PasswordCredentials:
    password: str = field(repr=False)

    @property
    def method(self) -> str:
        return "password"

    def connect_kwargs(self) -> dict:
        return {"password": self.password}


@dataclass(frozen=True)
class KeyCredentials:
    """Private key file, optionally encrypted with ``passphrase``."""

    private_key_path: str
    passphrase: Optional[str] = field(default=None, repr=False)

    @property
    def method(self) -> str:
        return "key+passphrase" if self.passphrase else "key"

    def load_key(self) -> paramiko.PKey:
        path = os.path.expanduser(self.private_key_path)
        if not os.path.isfile(path):
            raise LocalIOError(f"Private key file not found: {path}")

        last_error: Optional[Exception] = None
        for key_type in _KEY_TYPES:
            try:
                key = key_type.from_private_key_file(path, password=self.passphrase or None)
                logger.debug(f"Loaded private key {path} as {key_type.__name__}")
                return key
            except paramiko.PasswordRequiredException as e:
                raise AuthenticationFailed(
                    f"Private key '{path}' is encrypted and needs a passphrase", cause=e
                )
            except (paramiko.SSHException, ValueError) as e:
                last_error = e
                continue
            except OSError as e:
                raise LocalIOError(f"Cannot read private key '{path}': {e}", cause=e)

        raise AuthenticationFailed(
            f"Unsupported or undecryptable private key '{path}': {last_error}",
            cause=last_error,
        )

    def connect_kwargs(self) -> dict:
        return {"pkey": self.load_key()}


Credentials = Union[PasswordCredentials, KeyCredentials]


def credentials_from_options(
    password: Optional[str] = None,
    passphrase: Optional[str] = None,
    private_key_path: Optional[str] = None,
) -> Credentials:
    """Build the credential variant described by the loose command fields."""
    if private_key_path:
        if password:
            raise InvalidCredentials("Give either a password or a private key, not both")
        return KeyCredentials(private_key_path, passphrase or None)
    if passphrase:
        raise InvalidCredentials("A passphrase needs a private key path")
    if password is None:
        raise InvalidCredentials("No authentication method provided")
    return PasswordCredentials(password)
