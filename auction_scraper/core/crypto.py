"""Credentials encryption boundary.

Blobs are written by the settings UI as ``{"iv", "authTag", "data"}`` with
base64 fields (AES-256-GCM, 96-bit IV). The worker only ever needs
``decrypt_credentials``; ``encrypt_credentials`` exists for the submitter side
and for fixtures.
"""

from __future__ import annotations

import base64
import binascii
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import ValidationError

from auction_scraper.schemas.credentials import Credentials

IV_LENGTH = 12
KEY_LENGTH = 32
TAG_LENGTH = 16


class DecryptionError(Exception):
    """Raised when an encrypted credentials blob cannot be turned back into credentials."""


def load_key(raw_key: str | None) -> bytes:
    if not raw_key:
        raise DecryptionError("SCRAPER_CREDENTIALS_ENCRYPTION_KEY is not set")
    try:
        key = base64.b64decode(raw_key, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError("credentials encryption key is not valid base64") from exc
    if len(key) != KEY_LENGTH:
        raise DecryptionError("credentials encryption key must be 32 bytes encoded as base64")
    return key


def is_encrypted_format(data: Any) -> bool:
    return isinstance(data, dict) and all(isinstance(data.get(field), str) for field in ("iv", "authTag", "data"))


def encrypt_credentials(credentials: Credentials, raw_key: str | None) -> dict[str, str]:
    key = load_key(raw_key)
    iv = os.urandom(IV_LENGTH)
    plaintext = credentials.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")
    sealed = AESGCM(key).encrypt(iv, plaintext, None)
    ciphertext, auth_tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return {
        "iv": base64.b64encode(iv).decode("ascii"),
        "authTag": base64.b64encode(auth_tag).decode("ascii"),
        "data": base64.b64encode(ciphertext).decode("ascii"),
    }


def decrypt_credentials(blob: Any, raw_key: str | None) -> Credentials:
    if not is_encrypted_format(blob):
        raise DecryptionError("credentials blob is not in encrypted format")
    key = load_key(raw_key)
    try:
        iv = base64.b64decode(blob["iv"], validate=True)
        auth_tag = base64.b64decode(blob["authTag"], validate=True)
        ciphertext = base64.b64decode(blob["data"], validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError("credentials blob contains invalid base64") from exc

    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + auth_tag, None)
    except (InvalidTag, ValueError) as exc:
        raise DecryptionError("credentials blob failed authentication") from exc

    try:
        return Credentials.model_validate(json.loads(plaintext.decode("utf-8")))
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
        raise DecryptionError("decrypted credentials are not valid JSON credentials") from exc


def read_stored_credentials(blob: Any, *, encrypted: bool, raw_key: str | None) -> Credentials:
    """Rows flagged as encrypted hold a cipher blob; older rows hold plain JSON credentials."""
    if encrypted and is_encrypted_format(blob):
        return decrypt_credentials(blob, raw_key)
    try:
        return Credentials.model_validate(blob)
    except ValidationError as exc:
        raise DecryptionError("stored credentials are malformed") from exc
