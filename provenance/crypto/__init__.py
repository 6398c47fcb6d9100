# provenance/crypto/__init__.py
"""
AES-256-GCM primitives, the tag token codec and the rotating key custodian.
"""

from .aead import generate_key, unwrap_key, wrap_key
from .custodian import ActiveKey, KeyCustodian, load_master_key
from .tags import TagCodec, mint_tag, open_tag, parse_tag_url

__all__ = [
    "generate_key", "wrap_key", "unwrap_key",
    "ActiveKey", "KeyCustodian", "load_master_key",
    "TagCodec", "mint_tag", "open_tag", "parse_tag_url",
]
