# provenance/crypto/aead.py
"""
AES-256-GCM helpers shared by the tag codec and the key envelope.

Sizes are fixed: 256-bit keys, 96-bit random IV per call, 128-bit tag.
"""

import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from provenance.core.encoding import b64_decode, b64_encode
from provenance.errors import KeyUnwrapError

KEY_LENGTH = 32
IV_LENGTH = 12
AUTH_TAG_LENGTH = 16


@dataclass(frozen=True)
class Sealed:
    ciphertext: bytes
    iv: bytes
    auth_tag: bytes


def generate_key() -> bytes:
    return os.urandom(KEY_LENGTH)


def _check_key(key: bytes) -> None:
    if len(key) != KEY_LENGTH:
        raise ValueError(f"AES-256-GCM key must be {KEY_LENGTH} bytes, got {len(key)}")


def encrypt(data: bytes, key: bytes) -> Sealed:
    _check_key(key)
    iv = os.urandom(IV_LENGTH)
    # AESGCM appends the tag to the ciphertext
    out = AESGCM(key).encrypt(iv, data, None)
    return Sealed(ciphertext=out[:-AUTH_TAG_LENGTH], iv=iv, auth_tag=out[-AUTH_TAG_LENGTH:])


def decrypt(sealed: Sealed, key: bytes) -> bytes:
    """Raises cryptography's InvalidTag on any authentication failure."""
    _check_key(key)
    if len(sealed.iv) != IV_LENGTH or len(sealed.auth_tag) != AUTH_TAG_LENGTH:
        raise ValueError("bad IV or tag length")
    return AESGCM(key).decrypt(sealed.iv, sealed.ciphertext + sealed.auth_tag, None)


def wrap_key(raw_key: bytes, master_key: bytes) -> str:
    """Envelope-encrypt an item key: base64(iv || ciphertext || tag)."""
    _check_key(raw_key)
    sealed = encrypt(raw_key, master_key)
    return b64_encode(sealed.iv + sealed.ciphertext + sealed.auth_tag)


def unwrap_key(wrapped: str, master_key: bytes) -> bytes:
    try:
        blob = b64_decode(wrapped)
    except ValueError as e:
        raise KeyUnwrapError(f"Wrapped key is not valid base64: {e}") from e

    if len(blob) != IV_LENGTH + KEY_LENGTH + AUTH_TAG_LENGTH:
        raise KeyUnwrapError(f"Wrapped key has unexpected length {len(blob)}")

    sealed = Sealed(
        iv=blob[:IV_LENGTH],
        ciphertext=blob[IV_LENGTH:-AUTH_TAG_LENGTH],
        auth_tag=blob[-AUTH_TAG_LENGTH:],
    )
    try:
        return decrypt(sealed, master_key)
    except InvalidTag as e:
        raise KeyUnwrapError("Wrapped key failed authentication under the master key") from e
    except ValueError as e:
        raise KeyUnwrapError(str(e)) from e
