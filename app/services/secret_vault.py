"""Seal/open stored secrets (git credentials, webhook secrets, secret env vars)."""

from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

_PREFIX = "enc:"

_FERNET: Fernet | None = None
_FERNET_LOCK = threading.Lock()


def _key() -> bytes:
    key = os.getenv("SECRET_VAULT_KEY") or os.getenv("SETTINGS_ENCRYPTION_KEY")
    if not key:
        raise RuntimeError("Secret vault key not configured")
    return key.encode()


def _fernet() -> Fernet:
    # Loaded once per process; the key is never swapped while running.
    global _FERNET
    if _FERNET is not None:
        return _FERNET
    with _FERNET_LOCK:
        if _FERNET is None:
            try:
                _FERNET = Fernet(_key())
            except ValueError as exc:
                raise RuntimeError("Invalid secret vault key") from exc
    return _FERNET


class VaultError(Exception):
    pass


class SecretVault:
    """Opaque seal/open over Fernet. Sealed values carry an ``enc:`` prefix."""

    def seal(self, plaintext: str) -> str:
        token = _fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")
        return f"{_PREFIX}{token}"

    def open(self, ciphertext: str) -> str:
        if not ciphertext.startswith(_PREFIX):
            raise VaultError("Value is not sealed")
        token = ciphertext[len(_PREFIX) :]
        try:
            return _fernet().decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise VaultError("Sealed value could not be opened") from exc

    def seal_json(self, value: dict[str, Any]) -> str:
        return self.seal(json.dumps(value, sort_keys=True))

    def open_json(self, ciphertext: str | None) -> dict[str, Any]:
        if not ciphertext:
            return {}
        data = json.loads(self.open(ciphertext))
        if not isinstance(data, dict):
            raise VaultError("Sealed credentials are not an object")
        return data

    @staticmethod
    def is_sealed(value: str | None) -> bool:
        return bool(value) and value.startswith(_PREFIX)


vault = SecretVault()
