# provenance/core/encoding.py
import base64
import binascii
import re

_B64URL_RE = re.compile(r"^[A-Za-z0-9_-]*$")


def b64url_encode(data: bytes) -> str:
    """Encode bytes to base64url (no padding, URL-safe)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(s: str, strict: bool = False) -> bytes:
    """
    Decode base64url string back to bytes.

    With strict=True only the canonical unpadded encoding is accepted: foreign
    characters, impossible lengths and non-zero trailing bits raise ValueError.
    """
    if strict and not _B64URL_RE.match(s):
        raise ValueError("non base64url characters in input")
    # Restore padding
    padding = len(s) % 4
    if padding == 1:
        raise ValueError("invalid base64url length")
    if padding:
        s += "=" * (4 - padding)
    try:
        decoded = base64.urlsafe_b64decode(s)
    except binascii.Error as e:
        raise ValueError(f"invalid base64url: {e}") from e
    if strict and b64url_encode(decoded) != s.rstrip("="):
        raise ValueError("non-canonical base64url encoding")
    return decoded


def b64_encode(data: bytes) -> str:
    """Standard padded base64, used for wrapped key envelopes."""
    return base64.b64encode(data).decode("ascii")


def b64_decode(s: str) -> bytes:
    try:
        return base64.b64decode(s, validate=True)
    except binascii.Error as e:
        raise ValueError(f"invalid base64: {e}") from e
