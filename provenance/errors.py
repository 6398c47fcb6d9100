# provenance/errors.py
"""
Exception hierarchy for the provenance core.

Chain integrity problems are reported as VerificationResult values by the
verifier; the exceptions here cover configuration, cryptography and
allocation failures, plus TamperedChainError for callers that refuse an
action because a chain did not verify.
"""


class ProvenanceError(Exception):
    """Base class for all provenance errors."""


class ConfigurationError(ProvenanceError):
    """Raised when required settings are missing or malformed."""


class MasterKeyError(ConfigurationError):
    """Raised when the master key is absent or not exactly 256 bits."""


class TagError(ProvenanceError):
    """Base class for failures opening a tag token."""


class InvalidTagError(TagError):
    """Raised for any authentication, encoding or length failure of a tag token."""

    def __init__(self, message: str = "invalid or tampered tag"):
        super().__init__(message)


class KeyEpochNotFoundError(TagError):
    """Raised when a key version never existed."""

    def __init__(self, version: str):
        super().__init__("Unknown key version. Please use the most recent tag link.")
        self.version = version


class KeyEpochExpiredError(TagError):
    """Raised when a key version existed but is past its activation window."""

    def __init__(self, version: str, active_to: str):
        super().__init__("Expired key version. Please scan the item again to get a new link.")
        self.version = version
        self.active_to = active_to


class KeyUnwrapError(ProvenanceError):
    """Raised when a wrapped key envelope cannot be opened with the master key."""


class AllocationConflictError(ProvenanceError):
    """Raised when a block number, hash or chain tip was claimed by a concurrent writer."""


class DuplicateNonceError(AllocationConflictError):
    """Raised when a transaction nonce has already been recorded."""


class SeriesExhaustedError(ProvenanceError):
    """Raised when a product line has no mint numbers left."""


class CorruptRecordError(ProvenanceError):
    """Raised by storage when a persisted transaction row no longer parses."""

    def __init__(self, item_id: str, index: int, block_number, cause: Exception):
        super().__init__(f"Transaction {index} of item {item_id} is unreadable: {cause}")
        self.item_id = item_id
        self.index = index
        self.block_number = block_number


class TamperedChainError(ProvenanceError):
    """Raised by the item ledger when a sensitive action meets a chain that fails verification."""

    def __init__(self, item_id: str, result):
        super().__init__(f"Chain for item {item_id} failed verification: {result.error}")
        self.item_id = item_id
        self.result = result
