# provenance/config.py
"""
Runtime settings, read from the environment.

    PROVENANCE_DB_PATH              SQLite file (default ~/.provenance/provenance.db for the CLI)
    PROVENANCE_MASTER_KEY           64 hex chars, wraps every item key epoch
    PROVENANCE_VERIFY_URL           base URL embedded in tag links
    PROVENANCE_KEY_ROTATION_MONTHS  activation window of a key epoch (default 1)
    PROVENANCE_LOG_LEVEL            DEBUG / INFO / WARNING / ERROR (default WARNING)
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from provenance.crypto.custodian import load_master_key
from provenance.errors import ConfigurationError

DEFAULT_VERIFY_URL = "https://verify.example.com"
DEFAULT_DB_PATH = Path.home() / ".provenance" / "provenance.db"


@dataclass(frozen=True)
class Settings:
    db_path: Path = DEFAULT_DB_PATH
    master_key_hex: Optional[str] = None
    verify_base_url: str = DEFAULT_VERIFY_URL
    key_rotation_months: int = 1
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        months_raw = env.get("PROVENANCE_KEY_ROTATION_MONTHS", "1")
        try:
            months = int(months_raw)
        except ValueError:
            raise ConfigurationError(f"PROVENANCE_KEY_ROTATION_MONTHS must be an integer, got {months_raw!r}")
        if months < 1:
            raise ConfigurationError("PROVENANCE_KEY_ROTATION_MONTHS must be positive")

        db_path = env.get("PROVENANCE_DB_PATH")
        return cls(
            db_path=Path(db_path).resolve() if db_path else DEFAULT_DB_PATH,
            master_key_hex=env.get("PROVENANCE_MASTER_KEY") or None,
            verify_base_url=env.get("PROVENANCE_VERIFY_URL", DEFAULT_VERIFY_URL),
            key_rotation_months=months,
            log_level=env.get("PROVENANCE_LOG_LEVEL", "WARNING").upper(),
        )

    def master_key(self) -> bytes:
        """Decoded master key; raises MasterKeyError when missing or not 256 bits."""
        return load_master_key(self.master_key_hex)
