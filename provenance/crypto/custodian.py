# provenance/crypto/custodian.py
"""
Key custodian — lifecycle of the rotating item keys behind tag tokens.

Each key epoch holds a random 256-bit key wrapped under the deployment's
master key and is current for one activation window (a calendar month by
default). Exactly one epoch is handed out for new tags; older epochs keep
opening the tags they issued until their window closes.

The "create an epoch if none is active" step is delegated to the storage
backend, which runs it inside one write transaction: concurrent callers all
end up with the first writer's epoch.
"""

import calendar
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from provenance.core.canon import normalize_timestamp
from provenance.core.types import KeyEpoch
from provenance.crypto.aead import KEY_LENGTH, generate_key, unwrap_key, wrap_key
from provenance.errors import KeyEpochExpiredError, KeyEpochNotFoundError, MasterKeyError

logger = logging.getLogger(__name__)

VERSION_BYTES = 3
_VERSION_RE = re.compile(r"^[0-9a-f]{6}$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def add_months(dt: datetime, months: int) -> datetime:
    """Same day-of-month n months later, clamped to the last day of the target month."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def load_master_key(value: Optional[str]) -> bytes:
    """
    Parse the hex master key from configuration. Non-hex characters (dashes,
    whitespace) are ignored; the result must be exactly 32 bytes.
    """
    if not value:
        raise MasterKeyError("Master key is not configured")
    hex_only = re.sub(r"[^0-9a-fA-F]", "", value)
    if len(hex_only) % 2:
        raise MasterKeyError("Master key must be a 32-byte hex string")
    key = bytes.fromhex(hex_only)
    if len(key) != KEY_LENGTH:
        raise MasterKeyError("Master key must be a 32-byte hex string")
    return key


@dataclass(frozen=True)
class ActiveKey:
    version: str
    raw_key: bytes
    active_to: str = ""

    def __repr__(self) -> str:
        return f"ActiveKey(version={self.version!r}, raw_key=<redacted>)"


class KeyCustodian:
    """
    Usage:
        custodian = KeyCustodian(storage, load_master_key(os.environ["PROVENANCE_MASTER_KEY"]))
        active = custodian.current_key()          # rotates if needed
        raw = custodian.key_for_version("a1b2c3")  # for opening older tags
    """

    def __init__(
        self,
        storage,
        master_key: bytes,
        clock: Callable[[], datetime] = utc_now,
        rotation_months: int = 1,
    ):
        if not isinstance(master_key, (bytes, bytearray)) or len(master_key) != KEY_LENGTH:
            raise MasterKeyError("Master key must be exactly 256 bits")
        if rotation_months < 1:
            raise ValueError("rotation_months must be at least 1")
        self.storage = storage
        self._master_key = bytes(master_key)
        self._clock = clock
        self.rotation_months = rotation_months

    def now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now

    def _mint_epoch(self, now: datetime) -> KeyEpoch:
        raw = generate_key()
        return KeyEpoch(
            version=secrets.token_hex(VERSION_BYTES),
            wrapped_key=wrap_key(raw, self._master_key),
            active_from=normalize_timestamp(now),
            active_to=normalize_timestamp(add_months(now, self.rotation_months)),
        )

    def current_key(self) -> ActiveKey:
        """Key for new tags. Creates a fresh epoch if there is none or the latest expired."""
        now = self.now()
        epoch, created = self.storage.ensure_key_epoch(now, lambda: self._mint_epoch(now))
        if created:
            logger.info("Rotated item key: new epoch %s active until %s", epoch.version, epoch.active_to)
        # Unwrap failures are fatal for the caller, never retried
        return ActiveKey(epoch.version, unwrap_key(epoch.wrapped_key, self._master_key), epoch.active_to)

    def key_for_version(self, version: str) -> bytes:
        if not isinstance(version, str) or not _VERSION_RE.match(version):
            logger.warning("Key lookup rejected: malformed version %r", version)
            raise KeyEpochNotFoundError(str(version))

        epoch = self.storage.get_key_epoch(version)
        if epoch is None:
            logger.warning("Key lookup failed: version %s never existed", version)
            raise KeyEpochNotFoundError(version)
        if epoch.is_expired(self.now()):
            logger.warning("Key lookup failed: version %s expired at %s", version, epoch.active_to)
            raise KeyEpochExpiredError(version, epoch.active_to)

        return unwrap_key(epoch.wrapped_key, self._master_key)

