from __future__ import annotations

import paramiko
import pytest

from sftpbridge import (
    AuthenticationFailed,
    InvalidCredentials,
    KeyCredentials,
    LocalIOError,
    PasswordCredentials,
    credentials_from_options,
)


@pytest.fixture(scope="module")
def rsa_key():
    return paramiko.RSAKey.generate(2048)


class TestCredentialsFromOptions:
    def test_password(self) -> None:
        credentials = credentials_from_options(password="secret")
        assert credentials == PasswordCredentials("secret")
        assert credentials.method == "password"
        assert "secret" not in repr(credentials)

    def test_empty_password_is_still_a_password(self) -> None:
        assert credentials_from_options(password="") == PasswordCredentials("")

    def test_key(self) -> None:
        credentials = credentials_from_options(private_key_path="~/.ssh/id_ed25519")
        assert credentials == KeyCredentials("~/.ssh/id_ed25519")
        assert credentials.method == "key"

    def test_key_with_passphrase(self) -> None:
        credentials = credentials_from_options(passphrase="pp", private_key_path="/k")
        assert credentials == KeyCredentials("/k", "pp")
        assert credentials.method == "key+passphrase"

    @pytest.mark.parametrize("options", [
        {},
        {"passphrase": "pp"},
        {"password": "p", "private_key_path": "/k"},
    ])
    def test_invalid_combinations(self, options) -> None:
        with pytest.raises(InvalidCredentials):
            credentials_from_options(**options)


class TestKeyLoading:
    def test_missing_key_file(self, tmp_path) -> None:
        with pytest.raises(LocalIOError):
            KeyCredentials(str(tmp_path / "missing")).load_key()

    def test_plain_key(self, tmp_path, rsa_key) -> None:
        path = tmp_path / "id_rsa"
        rsa_key.write_private_key_file(str(path))
        key = KeyCredentials(str(path)).load_key()
        assert key.get_fingerprint() == rsa_key.get_fingerprint()
        pkey = KeyCredentials(str(path)).connect_kwargs()["pkey"]
        assert pkey.get_fingerprint() == key.get_fingerprint()

    def test_encrypted_key(self, tmp_path, rsa_key) -> None:
        path = tmp_path / "id_rsa"
        rsa_key.write_private_key_file(str(path), password="pp")
        key = KeyCredentials(str(path), "pp").load_key()
        assert key.get_fingerprint() == rsa_key.get_fingerprint()

    def test_encrypted_key_without_passphrase(self, tmp_path, rsa_key) -> None:
        path = tmp_path / "id_rsa"
        rsa_key.write_private_key_file(str(path), password="pp")
        with pytest.raises(AuthenticationFailed):
            KeyCredentials(str(path)).load_key()

    def test_garbage_key(self, tmp_path) -> None:
        path = tmp_path / "id_rsa"
        path.write_text("not a key\n")
        with pytest.raises(AuthenticationFailed):
            KeyCredentials(str(path)).load_key()
