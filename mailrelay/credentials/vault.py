from __future__ import annotations

import base64
import binascii
import hashlib
import os
from typing import TYPE_CHECKING, Any, Literal, Mapping

import keyring
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from keyring.errors import KeyringError

from mailrelay.common.config import APP_NAME
from mailrelay.logging import get_logger

if TYPE_CHECKING:
    from mailrelay.credentials.store import KeyValueStore

logger = get_logger(__name__)

MigrationDirection = Literal["to_encrypted", "to_unencrypted"]

# Host secret material, concatenated in this order to derive the key.
KEY_MATERIAL_NAMES = (
    "AUTH_KEY",
    "SECURE_AUTH_KEY",
    "LOGGED_IN_KEY",
    "NONCE_KEY",
    "AUTH_SALT",
    "SECURE_AUTH_SALT",
    "LOGGED_IN_SALT",
    "NONCE_SALT",
)
ENV_PREFIX = "MAILRELAY_"
KEYRING_SERVICE = APP_NAME
KEY_SUFFIX = b"mailrelay_encryption"
IV_LENGTH = 16

CONFIG_RECORD = "transport_config"
TOKEN_RECORD = "oauth_tokens"

# (record key, path inside the record) for every value stored encrypted.
SENSITIVE_FIELDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (CONFIG_RECORD, ("smtp", "password")),
    (CONFIG_RECORD, ("cloud_api", "client_secret")),
    (TOKEN_RECORD, ("access_token",)),
    (TOKEN_RECORD, ("refresh_token",)),
)


def load_host_secrets(
    explicit: Mapping[str, str] | None = None,
    *,
    use_keyring: bool = True,
) -> dict[str, str]:
    """
    Collect the host secret material used to derive the vault key.

    Lookup order per name: the explicit mapping, ``MAILRELAY_<NAME>`` in the
    environment, then the OS keyring (service ``mailrelay``) when a
    recommended backend is installed. Names that resolve nowhere are skipped.
    """
    explicit = explicit or {}
    keyring_ok = use_keyring and _keyring_available()
    secrets: dict[str, str] = {}
    for name in KEY_MATERIAL_NAMES:
        value = explicit.get(name) or os.environ.get(f"{ENV_PREFIX}{name}")
        if not value and keyring_ok:
            value = _keyring_lookup(name)
        if value:
            secrets[name] = value
    return secrets


def _keyring_available() -> bool:
    try:
        backend = keyring.get_keyring()
    except KeyringError:
        return False
    priority = getattr(backend, "priority", None)
    if priority is not None and priority <= 0:
        logger.debug("No recommended keyring backend; skipping keyring secrets.")
        return False
    return True


def _keyring_lookup(name: str) -> str | None:
    try:
        return keyring.get_password(KEYRING_SERVICE, name)
    except KeyringError:
        logger.debug("Keyring lookup failed for %s", name)
        return None


class CredentialVault:
    """
    At-rest encryption for the sensitive configuration fields.

    Failures never reach the caller: when encryption is disabled, when no
    key material is available, or when a value cannot be decrypted, the
    input comes back unchanged. Mixed plaintext/ciphertext data stays
    readable during a migration window at the cost of silently storing
    plaintext when the host secrets are missing.
    """

    def __init__(self, secrets: Mapping[str, str] | None = None, *, enabled: bool = False) -> None:
        self.enabled = enabled
        self._key = self._derive_key(secrets or {})

    @staticmethod
    def _derive_key(secrets: Mapping[str, str]) -> bytes | None:
        material = "".join(secrets.get(name, "") for name in KEY_MATERIAL_NAMES)
        if not material:
            return None
        return hashlib.sha256(material.encode("utf-8") + KEY_SUFFIX).digest()

    def is_available(self) -> bool:
        return self._key is not None

    def _active(self) -> bool:
        return self.enabled and self._key is not None

    def encrypt(self, plaintext: str) -> str:
        if not plaintext or not isinstance(plaintext, str) or not self._active():
            return plaintext

        iv = os.urandom(IV_LENGTH)
        try:
            padder = padding.PKCS7(algorithms.AES.block_size).padder()
            padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
            encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
            ciphertext = encryptor.update(padded) + encryptor.finalize()
        except (ValueError, TypeError) as exc:
            logger.debug("Encryption failed, keeping plaintext: %s", exc)
            return plaintext
        return base64.b64encode(iv + ciphertext).decode("ascii")

    def decrypt(self, value: Any) -> Any:
        if not value or not isinstance(value, str) or not self._active():
            return value

        try:
            raw = base64.b64decode(value.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError):
            return value
        if len(raw) <= IV_LENGTH:
            return value

        iv, ciphertext = raw[:IV_LENGTH], raw[IV_LENGTH:]
        try:
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plain = unpadder.update(padded) + unpadder.finalize()
            return plain.decode("utf-8")
        except (ValueError, TypeError):
            # Not ours: treat as plaintext.
            return value

    def migrate(self, store: "KeyValueStore", direction: MigrationDirection) -> bool:
        """
        Rewrite every stored sensitive field into the target state.

        A field whose decryption is a no-op is plaintext; one whose decryption
        changes it is ciphertext. Fields already in the target state are left
        alone, so running the same migration twice is harmless.

        Returns True if at least one field was rewritten.
        """
        if direction not in ("to_encrypted", "to_unencrypted"):
            raise ValueError(f"Unknown migration direction: {direction}")
        if direction == "to_encrypted" and not self._active():
            return False

        migrated = False
        for record_key, path in SENSITIVE_FIELDS:
            record = store.get(record_key)
            if not isinstance(record, dict):
                continue
            current = _get_path(record, path)
            if not current or not isinstance(current, str):
                continue

            decrypted = self.decrypt(current)
            if direction == "to_encrypted" and decrypted == current:
                encrypted = self.encrypt(current)
                if encrypted == current:
                    continue
                _set_path(record, path, encrypted)
            elif direction == "to_unencrypted" and decrypted != current:
                _set_path(record, path, decrypted)
            else:
                continue

            store.set(record_key, record)
            migrated = True
            logger.info("Migrated %s.%s %s", record_key, ".".join(path), direction)

        return migrated

    def encrypt_fields(self, record_key: str, record: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of ``record`` with its sensitive fields encrypted."""
        return self._map_fields(record_key, record, self.encrypt)

    def decrypt_fields(self, record_key: str, record: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of ``record`` with its sensitive fields decrypted."""
        return self._map_fields(record_key, record, self.decrypt)

    @staticmethod
    def _map_fields(record_key: str, record: dict[str, Any], func) -> dict[str, Any]:
        result = _deep_copy(record)
        for key, path in SENSITIVE_FIELDS:
            if key != record_key:
                continue
            value = _get_path(result, path)
            if value:
                _set_path(result, path, func(value))
        return result


def _get_path(record: dict[str, Any], path: tuple[str, ...]) -> Any:
    node: Any = record
    for part in path:
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def _set_path(record: dict[str, Any], path: tuple[str, ...], value: Any) -> None:
    node = record
    for part in path[:-1]:
        node = node.setdefault(part, {})
    node[path[-1]] = value


def _deep_copy(record: dict[str, Any]) -> dict[str, Any]:
    return {k: _deep_copy(v) if isinstance(v, dict) else v for k, v in record.items()}
