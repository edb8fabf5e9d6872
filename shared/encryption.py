"""Encryption utilities for captured records and stored credentials."""

import base64
import binascii
import json
import os
import secrets
import struct
from pathlib import Path
from typing import Optional, Union

from cryptography.fernet import Fernet

from shared.exceptions import DecryptError, InvalidSaltError
from shared.models import DecryptedImage, DecryptionContext

MIN_SALT_LENGTH = 48
IV_LENGTH = 16
IV_SEPARATOR = ":"
DEFAULT_IMAGE_EXTENSION = "jpg"
_URL_SAFE_ALPHABET = str.maketrans("-_", "+/")


def derive_context(salt: Optional[str]) -> DecryptionContext:
    """
    Slice the IV and key material out of the shared salt.

    Args:
        salt: Shared secret string, at least 48 characters

    Returns:
        DecryptionContext with iv = salt[0:16] and key_material = salt[16:48]

    Raises:
        InvalidSaltError: If the salt is missing or too short
    """
    if not salt:
        raise InvalidSaltError("No salt configured")
    if len(salt) < MIN_SALT_LENGTH:
        raise InvalidSaltError(
            f"Salt must be at least {MIN_SALT_LENGTH} characters, got {len(salt)}"
        )
    return DecryptionContext(
        iv=salt[:IV_LENGTH],
        key_material=salt[IV_LENGTH:MIN_SALT_LENGTH],
    )


def generate_salt(length: int = MIN_SALT_LENGTH) -> str:
    """Generate a random hexadecimal salt suitable for sharing with the capture client."""
    if length < MIN_SALT_LENGTH:
        raise ValueError(f"Salt length must be at least {MIN_SALT_LENGTH}")
    return secrets.token_hex((length + 1) // 2)[:length]


def _xor_text(text: str, key: str) -> str:
    # Operates on UTF-16 code units so astral characters match the JavaScript producer.
    raw = text.encode("utf-16-le", errors="surrogatepass")
    units = struct.unpack(f"<{len(raw) // 2}H", raw)
    mixed = [unit ^ ord(key[i % len(key)]) & 0xFFFF for i, unit in enumerate(units)]
    return struct.pack(f"<{len(mixed)}H", *mixed).decode("utf-16-le", errors="surrogatepass")


def _xor_bytes(data: bytes, key: bytes) -> bytes:
    if not data:
        return b""
    stream = (key * (len(data) // len(key) + 1))[:len(data)]
    mixed = int.from_bytes(data, "big") ^ int.from_bytes(stream, "big")
    return mixed.to_bytes(len(data), "big")


def _b64decode(value: Union[str, bytes]) -> bytes:
    """Decode standard or URL-safe Base64, with or without padding."""
    try:
        if isinstance(value, bytes):
            value = value.decode("ascii")
        text = "".join(value.split()).translate(_URL_SAFE_ALPHABET).rstrip("=")
        text += "=" * (-len(text) % 4)
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptError(f"Payload is not valid Base64: {e}") from e


class XorRecordCipher:
    """
    Repeating-key XOR scheme used by the capture client.

    Text payloads are Base64(UTF-8(iv + ":" + xor(plaintext))). The IV is
    carried for format compatibility only and is not mixed into the stream.
    Image payloads are Base64(xor(JSON {"data": <base64 image>, "extension": <ext>})).
    """

    def encrypt_text(self, plaintext: str, context: DecryptionContext) -> str:
        framed = context.iv + IV_SEPARATOR + _xor_text(plaintext, context.key_material)
        return base64.b64encode(framed.encode("utf-8", errors="surrogatepass")).decode("ascii")

    def decrypt_text(self, ciphertext: str, context: DecryptionContext) -> str:
        """
        Decrypt a text payload.

        Raises:
            DecryptError: If the payload is malformed or was produced with another salt
        """
        if not ciphertext or not ciphertext.strip():
            raise DecryptError("Ciphertext is empty")

        raw = _b64decode(ciphertext.strip())
        try:
            decoded = raw.decode("utf-8", errors="surrogatepass")
        except UnicodeDecodeError as e:
            raise DecryptError(f"Decoded payload is not UTF-8: {e}") from e

        separator_index = decoded.find(IV_SEPARATOR)
        if separator_index == -1:
            raise DecryptError("IV separator not found in payload")

        # A wrong salt only shows up as a mismatching IV prefix
        if decoded[:separator_index] != context.iv:
            raise DecryptError("IV prefix does not match the configured salt")

        return _xor_text(decoded[separator_index + 1:], context.key_material)

    def encrypt_image(self, data: bytes, extension: str, context: DecryptionContext) -> str:
        envelope = json.dumps({
            "data": base64.b64encode(data).decode("ascii"),
            "extension": extension,
        })
        mixed = _xor_bytes(envelope.encode("utf-8"), self._key_bytes(context))
        return base64.b64encode(mixed).decode("ascii")

    def decrypt_image(self, payload: Union[str, bytes], context: DecryptionContext) -> DecryptedImage:
        """
        Decrypt an image payload into raw image bytes.

        The payload may itself be wrapped in a JSON object whose "data" field
        holds the encrypted string.

        Raises:
            DecryptError: If the payload cannot be decoded into an image envelope
        """
        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError as e:
                raise DecryptError(f"Encrypted image is not text: {e}") from e

        payload = payload.strip()
        if not payload:
            raise DecryptError("Encrypted image is empty")

        if payload.startswith("{"):
            try:
                wrapper = json.loads(payload)
            except ValueError as e:
                raise DecryptError(f"Encrypted image wrapper is not valid JSON: {e}") from e
            if not isinstance(wrapper, dict) or not isinstance(wrapper.get("data"), str):
                raise DecryptError("Encrypted image wrapper has no data field")
            payload = wrapper["data"]

        plain = _xor_bytes(_b64decode(payload), self._key_bytes(context))
        try:
            envelope = json.loads(plain.decode("utf-8"))
        except ValueError as e:
            raise DecryptError(f"Decrypted image envelope is not valid JSON: {e}") from e

        if not isinstance(envelope, dict) or not isinstance(envelope.get("data"), str):
            raise DecryptError("Decrypted image envelope has no data field")

        extension = str(envelope.get("extension") or DEFAULT_IMAGE_EXTENSION).lstrip(".")
        return DecryptedImage(data=_b64decode(envelope["data"]), extension=extension)

    @staticmethod
    def _key_bytes(context: DecryptionContext) -> bytes:
        return bytes(ord(char) & 0xFF for char in context.key_material)


class EncryptionService:
    """Handles Fernet encryption of the token and salt stored at rest."""

    def __init__(self, encryption_key: Optional[str] = None):
        """
        Initialize encryption service.

        Args:
            encryption_key: Fernet key. If not provided, SYNC_ENCRYPTION_KEY is
                          used, and failing that a throwaway key is generated
                          (values stored with it cannot be read after a restart)
        """
        key = encryption_key or os.getenv('SYNC_ENCRYPTION_KEY')
        self.key = key.encode() if key else Fernet.generate_key()
        self.cipher = Fernet(self.key)

    @classmethod
    def from_key_file(cls, path: Path) -> "EncryptionService":
        """Load the key from a file, creating the file with a new key when absent."""
        if path.exists():
            return cls(path.read_text().strip())

        path.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key().decode()
        path.write_text(key)
        path.chmod(0o600)
        return cls(key)

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ""
        return self.cipher.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a value produced by encrypt().

        Raises:
            cryptography.fernet.InvalidToken: If the value was encrypted with another key
        """
        if not ciphertext:
            return ""
        return self.cipher.decrypt(ciphertext.encode()).decode()

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()
