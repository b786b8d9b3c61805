# =======================================================================================
# chipvault/utils/exceptions.py - Custom Exceptions
# =======================================================================================
from typing import Any, Dict, Iterable, List, Optional


class ChipVaultError(Exception):
    """Base exception for the chip identity service."""
    status_code = 500

    def payload(self) -> Dict[str, Any]:
        """Extra fields merged into the JSON error response."""
        return {}


class ConfigurationError(ChipVaultError):
    """Raised when a required secret or setting is missing."""
    pass


# ---------------------------------------------------------------------------
# Hardware
# ---------------------------------------------------------------------------
class ChipReadError(ChipVaultError):
    """Raised when a tag cannot be read (absent, moved away, I/O error)."""
    status_code = 503


class NoTagPresented(ChipReadError):
    """Raised when no tag was presented before the wait timed out."""
    status_code = 408


class ChipWriteError(ChipVaultError):
    """Raised when a block write fails before any sector was locked."""
    status_code = 503

    def __init__(self, message: str, completed_steps: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.completed_steps: List[str] = list(completed_steps or [])

    def payload(self) -> Dict[str, Any]:
        return {"completed_steps": self.completed_steps}


class ReaderNotFound(ChipVaultError):
    status_code = 404


class ReaderBusy(ChipVaultError):
    """Raised when a reader is held by another operation past the lock timeout."""
    status_code = 409


# ---------------------------------------------------------------------------
# Anti-clone protocol
# ---------------------------------------------------------------------------
class AuthenticationError(ChipVaultError):
    """Protected sector refused the derived key. Possible clone."""
    status_code = 403


class ChecksumMismatch(ChipVaultError):
    """Checksum block does not match (uid, salt, chip_id). Possible tampering."""
    status_code = 403


class ChipIdMismatch(ChipVaultError):
    """Public, protected and expected chip ids disagree."""
    status_code = 403


class UidMismatch(ChipVaultError):
    """The tag on the reader is not the one registered for the chip record."""
    status_code = 403


class InvalidBlockData(ChipVaultError):
    """Client-submitted block reads are malformed."""
    status_code = 400


class PartialEncodingFailure(ChipVaultError):
    """
    Encoding stopped after at least one sector trailer was rewritten.

    The tag cannot be reset with the factory key any more; the operator
    decides whether to scrap it.
    """
    status_code = 409

    def __init__(self, message: str, completed_steps: Iterable[str], failed_step: str,
                 locked_sectors: Iterable[int]):
        super().__init__(message)
        self.completed_steps: List[str] = list(completed_steps)
        self.failed_step = failed_step
        self.locked_sectors: List[int] = list(locked_sectors)

    def payload(self) -> Dict[str, Any]:
        return {
            "completed_steps": self.completed_steps,
            "failed_step": self.failed_step,
            "locked_sectors": self.locked_sectors,
        }


class EncodingStateError(ChipVaultError):
    """Chip record is not in an encoding state that allows the operation."""
    status_code = 409


# ---------------------------------------------------------------------------
# Lifecycle and stock
# ---------------------------------------------------------------------------
class InvalidTransition(ChipVaultError):
    """Raised when a lifecycle change is not in the adjacency table."""
    status_code = 409

    def __init__(self, from_status: str, to_status: str, rule: str):
        super().__init__(rule)
        self.from_status = from_status
        self.to_status = to_status
        self.rule = rule

    def payload(self) -> Dict[str, Any]:
        return {"from_status": self.from_status, "to_status": self.to_status}


class InsufficientStock(ChipVaultError):
    status_code = 409

    def __init__(self, available: int, requested: int):
        super().__init__(
            f"Insufficient stock: {available} chips available, {requested} requested"
        )
        self.available = available
        self.requested = requested

    def payload(self) -> Dict[str, Any]:
        return {"available": self.available, "requested": self.requested}


class InvalidOrderState(ChipVaultError):
    status_code = 409


class ChipAlreadyRegistered(ChipVaultError):
    status_code = 409


class ChipNotFound(ChipVaultError):
    status_code = 404


class OrderNotFound(ChipVaultError):
    status_code = 404


class ValidationFailed(ChipVaultError):
    """Raised when request data breaks a business rule (reason length, codes)."""
    status_code = 400
