# =======================================================================================
# chipvault/protocol/verification.py - Proving a tag is genuine
# =======================================================================================
import logging
from dataclasses import dataclass
from typing import Optional
from cryptography.hazmat.primitives import constant_time
from ..readers.base import ChipReader
from ..services.checksum import ChecksumService
from ..services.key_derivation import KeyDerivationService
from ..utils.exceptions import (
    AuthenticationError, ChecksumMismatch, ChipIdMismatch, InvalidBlockData,
)
from ..utils.validators import normalize_uid, parse_block_hex
from .layout import (
    CHECKSUM_BLOCK, DEFAULT_KEY, PROTECTED_ID_BLOCK, PUBLIC_ID_BLOCK, decode_chip_id,
)

logger = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    uid: str
    chip_id: str
    checksum: bytes


class CardVerificationProtocol:
    """
    A tag is genuine when:

    * sector 1 opens with the key derived from the expected chip id,
    * the public and protected chip ids both equal the expected one,
    * block 8 equals the checksum recomputed from (uid, salt, chip id).

    A copy of the public block on a blank tag fails the first check, so a
    clone surfaces as AuthenticationError rather than a data mismatch.
    """

    def __init__(self, keys: KeyDerivationService, checksums: ChecksumService):
        self.keys = keys
        self.checksums = checksums

    def verify(
        self,
        reader: ChipReader,
        expected_chip_id: str,
        salt: bytes,
        stored_checksum: Optional[bytes] = None,
    ) -> VerificationResult:
        uid = normalize_uid(reader.read_uid())
        public_id = decode_chip_id(reader.read_block(PUBLIC_ID_BLOCK, DEFAULT_KEY))

        chip_key = self.keys.derive_chip_key(expected_chip_id)
        if not reader.authenticate(PROTECTED_ID_BLOCK, chip_key):
            logger.warning("Tag %s refused the derived key of %s", uid, expected_chip_id)
            raise AuthenticationError(
                f"Tag {uid} did not accept the key of chip {expected_chip_id}; possible clone"
            )
        protected_id = decode_chip_id(reader.read_block(PROTECTED_ID_BLOCK, chip_key))
        checksum_block = reader.read_block(CHECKSUM_BLOCK, chip_key)

        if not (public_id == protected_id == expected_chip_id):
            raise ChipIdMismatch(
                f"Chip ids disagree on tag {uid}: public={public_id!r}, "
                f"protected={protected_id!r}, expected={expected_chip_id!r}"
            )
        self._check_checksum(uid, salt, expected_chip_id, checksum_block, stored_checksum)
        return VerificationResult(uid=uid, chip_id=expected_chip_id, checksum=checksum_block)

    def verify_submitted_reads(
        self,
        uid: str,
        expected_chip_id: str,
        submitted_chip_id: str,
        block4_hex: str,
        block8_hex: str,
        salt: bytes,
        stored_checksum: Optional[bytes] = None,
    ) -> VerificationResult:
        """
        Same binding check over raw blocks a phone read itself. The phone
        can only have read block 4 with the derived key, so a block 4 that
        does not carry the expected chip id counts as an authentication
        failure.
        """
        uid = normalize_uid(uid)
        block4 = parse_block_hex(block4_hex, "block4")
        block8 = parse_block_hex(block8_hex, "block8")

        if (submitted_chip_id or "").strip() != expected_chip_id:
            raise ChipIdMismatch(
                f"Public chip id {submitted_chip_id!r} does not belong to tag {uid}"
            )
        try:
            protected_id = decode_chip_id(block4)
        except InvalidBlockData:
            protected_id = None
        if protected_id != expected_chip_id:
            raise AuthenticationError(
                f"Protected block of tag {uid} does not hold chip {expected_chip_id}; possible clone"
            )
        self._check_checksum(uid, salt, expected_chip_id, block8, stored_checksum)
        return VerificationResult(uid=uid, chip_id=expected_chip_id, checksum=block8)

    def _check_checksum(self, uid: str, salt: bytes, chip_id: str, block: bytes,
                        stored_checksum: Optional[bytes]) -> None:
        valid = self.checksums.validate_checksum(uid, salt, chip_id, block)
        if valid and stored_checksum is not None:
            valid = constant_time.bytes_eq(bytes(block), bytes(stored_checksum))
        if not valid:
            raise ChecksumMismatch(f"Checksum of tag {uid} does not match; possible tampering")
