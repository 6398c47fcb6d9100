# provenance/verify/__init__.py
from .verifier import ChainVerifier, VerificationFailure, VerificationResult, verify_chain

__all__ = ["ChainVerifier", "VerificationFailure", "VerificationResult", "verify_chain"]
