# =======================================================================================
# chipvault/services/key_derivation.py - Per-chip Mifare key derivation
# =======================================================================================
import logging
from cryptography.hazmat.primitives import hashes
from ..utils.exceptions import ConfigurationError
from ..utils.validators import validate_chip_id

logger = logging.getLogger(__name__)

CHIP_KEY_LENGTH = 6
RECOMMENDED_SECRET_LENGTH = 32


class KeyDerivationService:
    """
    Derives the sector key of a chip from its chip id and the master secret.

    key = SHA-256(chip_id || master_secret)[:6]

    Nothing is stored: whoever holds the master secret and a chip id can
    rebuild the key, so there is no per-tag key table to leak.
    """

    def __init__(self, master_secret: str):
        if not master_secret:
            raise ConfigurationError("RFID master secret is not configured")
        if len(master_secret) < RECOMMENDED_SECRET_LENGTH:
            logger.warning(
                "RFID master secret is shorter than %d characters", RECOMMENDED_SECRET_LENGTH
            )
        self._master_secret = master_secret.encode("utf-8")

    def derive_chip_key(self, chip_id: str) -> bytes:
        validate_chip_id(chip_id)
        digest = hashes.Hash(hashes.SHA256())
        digest.update(chip_id.encode("utf-8") + self._master_secret)
        return digest.finalize()[:CHIP_KEY_LENGTH]
