# =======================================================================================
# chipvault/protocol/__init__.py - Card Protocol Package
# =======================================================================================
from .encoding import CardEncodingProtocol, EncodingResult
from .verification import CardVerificationProtocol, VerificationResult

__all__ = [
    "CardEncodingProtocol", "EncodingResult", "CardVerificationProtocol", "VerificationResult",
]
