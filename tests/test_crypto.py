import base64
import os

import pytest

from auction_scraper.core.crypto import (
    DecryptionError,
    decrypt_credentials,
    encrypt_credentials,
    is_encrypted_format,
    load_key,
    read_stored_credentials,
)
from auction_scraper.schemas.credentials import Credentials


def _key() -> str:
    return base64.b64encode(os.urandom(32)).decode("ascii")


def test_encrypted_blob_decrypts_with_same_key() -> None:
    key = _key()
    credentials = Credentials(username="agent", password="s3cret", target_url="https://auction.example/list")

    blob = encrypt_credentials(credentials, key)

    assert is_encrypted_format(blob)
    assert "s3cret" not in str(blob)
    assert decrypt_credentials(blob, key) == credentials


def test_wrong_key_is_rejected() -> None:
    blob = encrypt_credentials(Credentials(username="agent", password="pw"), _key())
    with pytest.raises(DecryptionError):
        decrypt_credentials(blob, _key())


def test_tampered_ciphertext_is_rejected() -> None:
    key = _key()
    blob = encrypt_credentials(Credentials(username="agent", password="pw"), key)
    data = bytearray(base64.b64decode(blob["data"]))
    data[0] ^= 0xFF
    blob["data"] = base64.b64encode(bytes(data)).decode("ascii")

    with pytest.raises(DecryptionError):
        decrypt_credentials(blob, key)


def test_load_key_requires_32_bytes() -> None:
    with pytest.raises(DecryptionError):
        load_key(None)
    with pytest.raises(DecryptionError):
        load_key(base64.b64encode(b"short").decode("ascii"))
    with pytest.raises(DecryptionError):
        load_key("not base64!!")


def test_plain_json_credentials_are_read_as_is() -> None:
    stored = {"username": "agent", "password": "pw", "targetUrl": "https://auction.example/list"}

    for encrypted in (False, True):
        credentials = read_stored_credentials(stored, encrypted=encrypted, raw_key=None)
        assert credentials.username == "agent"
        assert credentials.target_url == "https://auction.example/list"


def test_password_is_hidden_from_repr() -> None:
    assert "pw" not in repr(Credentials(username="agent", password="pw"))
