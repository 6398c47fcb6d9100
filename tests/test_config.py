# tests/test_config.py
import json
import logging
from pathlib import Path

import pytest

from provenance.config import DEFAULT_DB_PATH, DEFAULT_VERIFY_URL, Settings
from provenance.errors import ConfigurationError, MasterKeyError
from provenance.logging_config import StructuredFormatter, configure_logging


def test_defaults():
    settings = Settings.from_env({})
    assert settings.db_path == DEFAULT_DB_PATH
    assert settings.verify_base_url == DEFAULT_VERIFY_URL
    assert settings.key_rotation_months == 1
    assert settings.log_level == "WARNING"
    with pytest.raises(MasterKeyError):
        settings.master_key()


def test_values_from_env(tmp_path: Path):
    settings = Settings.from_env({
        "PROVENANCE_DB_PATH": str(tmp_path / "x.db"),
        "PROVENANCE_MASTER_KEY": "ab" * 32,
        "PROVENANCE_VERIFY_URL": "https://scan.example.org",
        "PROVENANCE_KEY_ROTATION_MONTHS": "3",
        "PROVENANCE_LOG_LEVEL": "debug",
    })
    assert settings.db_path == (tmp_path / "x.db").resolve()
    assert settings.master_key() == bytes.fromhex("ab" * 32)
    assert settings.verify_base_url == "https://scan.example.org"
    assert settings.key_rotation_months == 3
    assert settings.log_level == "DEBUG"


@pytest.mark.parametrize("months", ["0", "-1", "monthly"])
def test_bad_rotation_months(months):
    with pytest.raises(ConfigurationError):
        Settings.from_env({"PROVENANCE_KEY_ROTATION_MONTHS": months})


def test_structured_formatter_emits_json():
    record = logging.LogRecord("provenance.test", logging.WARNING, __file__, 10, "Tag rejected: %s", ("too short",), None)
    payload = json.loads(StructuredFormatter().format(record))
    assert payload["level"] == "WARNING"
    assert payload["logger"] == "provenance.test"
    assert payload["message"] == "Tag rejected: too short"


def test_configure_logging_replaces_handlers(tmp_path: Path):
    logger = logging.getLogger("provenance")
    try:
        configure_logging("INFO")
        configure_logging("DEBUG", json_format=True, log_file=str(tmp_path / "p.log"))
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 2
        assert all(isinstance(h.formatter, StructuredFormatter) for h in logger.handlers)
    finally:
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)
        logger.setLevel(logging.NOTSET)
