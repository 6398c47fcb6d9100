# provenance/crypto/tags.py
"""
Tag tokens: the opaque value written into an item's NFC link.

token = base64url(ciphertext || iv || authTag), where the plaintext is the
canonical JSON of {itemId, serialNumber, nfcSerialNumber}. Opening fails
closed with a single generic error; the precise cause only goes to the log.
"""

import json
import logging
from typing import Tuple
from urllib.parse import parse_qs, urlencode, urlsplit

from cryptography.exceptions import InvalidTag

from provenance.core.canon import canonical_json
from provenance.core.encoding import b64url_decode, b64url_encode
from provenance.core.types import TagIdentity
from provenance.crypto.aead import AUTH_TAG_LENGTH, IV_LENGTH, Sealed, decrypt, encrypt
from provenance.errors import InvalidTagError

logger = logging.getLogger(__name__)

_FIELDS = {"itemId", "serialNumber", "nfcSerialNumber"}


class TagCodec:
    """Seal and open item identities with one epoch's item key."""

    def mint(self, item_id: str, serial_number: str, nfc_serial_number: str, item_key: bytes) -> str:
        identity = TagIdentity(item_id, serial_number, nfc_serial_number)
        sealed = encrypt(canonical_json(identity.to_dict()), item_key)
        return b64url_encode(sealed.ciphertext + sealed.iv + sealed.auth_tag)

    def open(self, token: str, item_key: bytes) -> TagIdentity:
        try:
            blob = b64url_decode(token, strict=True)
        except ValueError as e:
            logger.warning("Tag rejected: malformed encoding (%s)", e)
            raise InvalidTagError() from None

        if len(blob) <= IV_LENGTH + AUTH_TAG_LENGTH:
            logger.warning("Tag rejected: token too short (%d bytes)", len(blob))
            raise InvalidTagError()

        sealed = Sealed(
            ciphertext=blob[: -(IV_LENGTH + AUTH_TAG_LENGTH)],
            iv=blob[-(IV_LENGTH + AUTH_TAG_LENGTH):-AUTH_TAG_LENGTH],
            auth_tag=blob[-AUTH_TAG_LENGTH:],
        )
        try:
            plaintext = decrypt(sealed, item_key)
        except InvalidTag:
            logger.warning("Tag rejected: authentication tag mismatch")
            raise InvalidTagError() from None
        except ValueError as e:
            logger.warning("Tag rejected: %s", e)
            raise InvalidTagError() from None

        try:
            fields = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            logger.warning("Tag rejected: authenticated payload is not JSON")
            raise InvalidTagError() from None

        if not isinstance(fields, dict) or set(fields) != _FIELDS:
            logger.warning("Tag rejected: unexpected payload fields")
            raise InvalidTagError()

        return TagIdentity(
            item_id=fields["itemId"],
            serial_number=fields["serialNumber"],
            nfc_serial_number=fields["nfcSerialNumber"],
        )


def mint_tag(
    item_id: str,
    serial_number: str,
    nfc_serial_number: str,
    item_key: bytes,
    key_version: str,
    base_url: str,
) -> str:
    """Build the link written to the physical tag: <base_url>/?key=<token>&version=<version>."""
    token = TagCodec().mint(item_id, serial_number, nfc_serial_number, item_key)
    return f"{base_url.rstrip('/')}/?{urlencode({'key': token, 'version': key_version})}"


def parse_tag_url(url: str) -> Tuple[str, str]:
    """Extract (token, version) from a scanned tag link."""
    query = parse_qs(urlsplit(url).query)
    try:
        return query["key"][0], query["version"][0]
    except (KeyError, IndexError):
        logger.warning("Tag rejected: link lacks key or version parameter")
        raise InvalidTagError() from None


def open_tag(token: str, version: str, custodian) -> TagIdentity:
    """
    Resolve the epoch key for version through the custodian, then open the token.
    KeyEpochNotFoundError / KeyEpochExpiredError propagate so callers can ask for a newer tag.
    """
    item_key = custodian.key_for_version(version)
    return TagCodec().open(token, item_key)
