# provenance/verify/verifier.py
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from provenance.chain.block import Block
from provenance.core.types import BlockRecord, Transaction
from provenance.errors import CorruptRecordError

logger = logging.getLogger(__name__)

HistoryEntry = Tuple[Transaction, Optional[BlockRecord]]


@dataclass
class VerificationFailure:
    index: int
    message: str
    category: str = "general"  # e.g. "empty", "missing_block", "hash", "merkle", "link", "storage"


@dataclass
class VerificationResult:
    is_valid: bool
    message: str = ""
    failures: List[VerificationFailure] = None

    def __post_init__(self):
        if self.failures is None:
            self.failures = []

    @classmethod
    def invalid(cls, index: int, message: str, category: str) -> "VerificationResult":
        return cls(False, message, [VerificationFailure(index, message, category)])

    @property
    def first_failure(self) -> Optional[VerificationFailure]:
        return self.failures[0] if self.failures else None

    @property
    def error(self) -> Optional[str]:
        failure = self.first_failure
        return failure.message if failure else None

    def to_dict(self) -> dict:
        if self.is_valid:
            return {"isValid": True}
        return {"isValid": False, "error": self.error}

    def __bool__(self):
        return self.is_valid

    def __str__(self):
        if self.is_valid:
            return "Chain is valid ✓"
        lines = [f"Verification FAILED ({len(self.failures)} issues):"]
        for f in self.failures:
            lines.append(f"  • [{f.index}] {f.category}: {f.message}")
        return "\n".join(lines)


class ChainVerifier:
    """
    Read-side integrity check over an item's ordered (transaction, block) history.
    Stops at the first violation; never mutates its input or the store.
    """

    def verify(self, history: Sequence[HistoryEntry]) -> VerificationResult:
        if not history:
            return VerificationResult.invalid(-1, "no transactions", "empty")

        previous: Optional[BlockRecord] = None
        for i, (tx, record) in enumerate(history):
            if record is None:
                return VerificationResult.invalid(i, f"missing block for transaction {i}", "missing_block")

            # 1. Block hash over the persisted header fields + recomputed Merkle root
            try:
                rebuilt = Block(
                    record.block_number,
                    record.previous_hash,
                    [tx],
                    timestamp=record.timestamp,
                    nonce=record.nonce,
                )
            except ValueError as e:
                logger.warning("Block %s could not be rebuilt: %s", record.block_number, e)
                return VerificationResult.invalid(i, f"hash mismatch at block {record.block_number}", "hash")
            computed = rebuilt.hash()
            if computed != record.hash:
                logger.warning(
                    "Block %s hash mismatch (stored %s, computed %s)",
                    record.block_number, record.hash, computed,
                )
                return VerificationResult.invalid(i, f"hash mismatch at block {record.block_number}", "hash")

            # 2. Merkle root
            if rebuilt.merkle_root() != record.merkle_root:
                return VerificationResult.invalid(i, f"merkle mismatch at block {record.block_number}", "merkle")

            # 3. Link to the previous entry of this history
            if previous is not None and record.previous_hash != previous.hash:
                return VerificationResult.invalid(i, f"broken chain link at block {record.block_number}", "link")

            previous = record

        return VerificationResult(True, f"Valid chain ({len(history)} blocks)")

    @staticmethod
    def corrupt_record_result(error: CorruptRecordError) -> VerificationResult:
        """Integrity verdict for a stored transaction that no longer parses."""
        if error.block_number is None:
            return VerificationResult.invalid(
                error.index, f"missing block for transaction {error.index}", "missing_block"
            )
        # the stored block hash can no longer be reproduced from this row
        return VerificationResult.invalid(error.index, f"hash mismatch at block {error.block_number}", "hash")

    def verify_from_storage(self, item_id: str, storage) -> VerificationResult:
        """
        Load an item's history from persistent storage and verify the chain.
        Unparseable transaction rows are integrity failures; any other load
        failure is an invalid result with category "storage".
        """
        try:
            history = storage.load_item_history(item_id)
        except CorruptRecordError as e:
            return self.corrupt_record_result(e)
        except Exception as e:
            logger.error("Failed to load history for item %s: %s", item_id, e)
            return VerificationResult.invalid(-1, f"Failed to load item '{item_id}' from storage: {e}", "storage")

        return self.verify(history)


def verify_chain(history: Sequence[HistoryEntry]) -> VerificationResult:
    return ChainVerifier().verify(history)
