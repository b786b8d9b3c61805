# =======================================================================================
# chipvault/utils/__init__.py - Utils Package
# =======================================================================================
from .exceptions import *
from .validators import *

__all__ = [
    "ChipVaultError", "ConfigurationError", "ChipReadError", "NoTagPresented",
    "ChipWriteError", "AuthenticationError", "ChecksumMismatch", "ChipIdMismatch",
    "UidMismatch", "InvalidBlockData", "PartialEncodingFailure", "EncodingStateError",
    "InvalidTransition", "InsufficientStock", "InvalidOrderState", "ChipAlreadyRegistered", "ChipNotFound",
    "OrderNotFound", "ValidationFailed", "normalize_uid", "validate_chip_id",
    "validate_chip_id_prefix", "parse_block_hex", "validate_archive_reason",
]
