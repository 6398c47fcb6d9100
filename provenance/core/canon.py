# provenance/core/canon.py
import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

try:
    import jcs
except ImportError:
    raise ImportError("Please install jcs: pip install jcs")

GENESIS_PREVIOUS_HASH = "0" * 64


def normalize_timestamp(value: Union[str, datetime]) -> str:
    """
    Render a timestamp as UTC ISO 8601 truncated to whole milliseconds,
    e.g. "2026-01-31T14:00:00.123Z". Naive datetimes are taken as UTC.
    """
    dt = parse_timestamp(value) if isinstance(value, str) else value
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    dt = dt.replace(microsecond=(dt.microsecond // 1000) * 1000)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 string (trailing Z allowed) into an aware UTC datetime."""
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _prepare(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {str(k): _prepare(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_prepare(v) for v in obj]
    if isinstance(obj, datetime):
        return normalize_timestamp(obj)
    if isinstance(obj, Enum):
        return obj.value
    return obj


def canonical_json(obj: Any) -> bytes:
    """
    Produce deterministic UTF-8 bytes according to RFC 8785 (JSON Canonicalization Scheme).
    Returns bytes ready for hashing or encryption.
    """
    return jcs.canonicalize(_prepare(obj))


def canonical_json_str(obj: Any) -> str:
    """Same as above, but returns string (mostly for debugging and storage)."""
    return canonical_json(obj).decode("utf-8")


def canonical_hash(obj: Any) -> str:
    """Lower-case hex SHA-256 over the canonical JSON encoding of obj."""
    return hashlib.sha256(canonical_json(obj)).hexdigest()
