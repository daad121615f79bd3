from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from querybridge.core.config import get_settings
from querybridge.core.errors import DecryptionError, ProviderConfigError
from querybridge.services.crypto.utils import decode_key_material


logger = logging.getLogger(__name__)

KEY_BYTES = 32
IV_BYTES = 16

_DECRYPT_GUIDANCE = (
    "Stored credentials for this connection cannot be decrypted with the configured keys. "
    "Delete and recreate the connection, or restore the previous key."
)


@dataclass(frozen=True)
class EncryptedSecret:
    ciphertext: str
    iv: str
    key_id: str


class CredentialCipher:
    """AES-256-CBC for connection secrets.

    Every write uses a fresh random IV and records the key id, so ciphertexts
    written before a rotation stay readable while the old key is still listed.
    """

    def __init__(self, keys: dict[str, bytes], current_key_id: str) -> None:
        if current_key_id not in keys:
            raise ProviderConfigError(f"credential key id {current_key_id!r} has no key material")
        for key_id, key in keys.items():
            if len(key) != KEY_BYTES:
                raise ProviderConfigError(
                    f"credential key {key_id!r} must be {KEY_BYTES} bytes, got {len(key)}"
                )
        self._keys = dict(keys)
        self._current_key_id = current_key_id

    @property
    def current_key_id(self) -> str:
        return self._current_key_id

    def encrypt(self, payload: dict[str, Any]) -> EncryptedSecret:
        iv = os.urandom(IV_BYTES)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        plaintext = padder.update(json.dumps(payload).encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._keys[self._current_key_id]), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(plaintext) + encryptor.finalize()
        return EncryptedSecret(ciphertext=ciphertext.hex(), iv=iv.hex(), key_id=self._current_key_id)

    def decrypt(self, secret: EncryptedSecret) -> dict[str, Any]:
        key = self._keys.get(secret.key_id)
        if key is None:
            logger.warning("credential_decrypt_unknown_key key_id=%s", secret.key_id)
            raise DecryptionError(_DECRYPT_GUIDANCE, key_id=secret.key_id)
        try:
            decryptor = Cipher(algorithms.AES(key), modes.CBC(bytes.fromhex(secret.iv))).decryptor()
            padded = decryptor.update(bytes.fromhex(secret.ciphertext)) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            payload = json.loads(plaintext.decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as exc:
            # Wrong key or corrupted ciphertext: padding or JSON fails.
            logger.warning("credential_decrypt_failed key_id=%s", secret.key_id)
            raise DecryptionError(_DECRYPT_GUIDANCE, key_id=secret.key_id) from exc
        if not isinstance(payload, dict):
            raise DecryptionError(_DECRYPT_GUIDANCE, key_id=secret.key_id)
        return payload


def _load_previous_keys(raw: str | None) -> dict[str, bytes]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProviderConfigError("CREDENTIAL_PREVIOUS_KEYS must be a JSON object") from exc
    if not isinstance(parsed, dict):
        raise ProviderConfigError("CREDENTIAL_PREVIOUS_KEYS must be a JSON object")
    keys: dict[str, bytes] = {}
    for key_id, material in parsed.items():
        try:
            keys[str(key_id)] = decode_key_material(str(material))
        except ValueError as exc:
            raise ProviderConfigError(f"previous credential key {key_id!r} is not hex or base64") from exc
    return keys


def get_credential_cipher() -> CredentialCipher:
    # Fail fast on missing or malformed key material; nothing can be stored without it.
    settings = get_settings()
    if not settings.credential_secret_key:
        raise ProviderConfigError("CREDENTIAL_SECRET_KEY is required (32 bytes, hex or base64)")
    try:
        current = decode_key_material(settings.credential_secret_key)
    except ValueError as exc:
        raise ProviderConfigError("CREDENTIAL_SECRET_KEY is not hex or base64") from exc
    keys = _load_previous_keys(settings.credential_previous_keys)
    keys[settings.credential_key_id] = current
    return CredentialCipher(keys, settings.credential_key_id)
