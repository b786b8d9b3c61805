# =======================================================================================
# chipvault/services/checksum.py - Anti-clone checksum binding
# =======================================================================================
import logging
import os
from cryptography.hazmat.primitives import constant_time, hashes, hmac
from ..utils.exceptions import ConfigurationError, ValidationFailed
from ..utils.validators import uid_to_bytes, validate_chip_id

logger = logging.getLogger(__name__)

SALT_LENGTH = 16
CHECKSUM_LENGTH = 16


class ChecksumService:
    """
    Binds a tag's physical UID, a random salt and its chip id.

    checksum = HMAC-SHA256(shared_secret, uid || salt || chip_id)[:16]

    There is no timestamp in the message: a checksum stays valid for the
    life of the chip so phones can validate offline against a cached
    whitelist.
    """

    def __init__(self, shared_secret: str):
        if not shared_secret:
            raise ConfigurationError("RFID checksum secret is not configured")
        self._secret = shared_secret.encode("utf-8")

    @staticmethod
    def generate_salt() -> bytes:
        return os.urandom(SALT_LENGTH)

    def compute_checksum(self, uid: str, salt: bytes, chip_id: str) -> bytes:
        validate_chip_id(chip_id)
        if len(salt) != SALT_LENGTH:
            raise ValueError(f"salt must be {SALT_LENGTH} bytes")
        mac = hmac.HMAC(self._secret, hashes.SHA256())
        mac.update(uid_to_bytes(uid) + salt + chip_id.encode("ascii"))
        return mac.finalize()[:CHECKSUM_LENGTH]

    def validate_checksum(self, uid: str, salt: bytes, chip_id: str, candidate: bytes) -> bool:
        """Constant-time comparison against the recomputed checksum."""
        if not isinstance(candidate, (bytes, bytearray)):
            return False
        try:
            expected = self.compute_checksum(uid, salt, chip_id)
        except (ValueError, ValidationFailed):
            return False
        valid = constant_time.bytes_eq(expected, bytes(candidate))
        if not valid:
            logger.debug("Checksum mismatch for uid=%s chip_id=%s", uid, chip_id)
        return valid
