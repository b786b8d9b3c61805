# =======================================================================================
# chipvault/protocol/encoding.py - Writing and locking a chip identity
# =======================================================================================
import logging
from dataclasses import dataclass, field
from typing import List, Optional
from ..models.enums import EncodingState, EncodingStep
from ..readers.base import ChipReader
from ..services.checksum import SALT_LENGTH, ChecksumService
from ..services.key_derivation import KeyDerivationService
from ..utils.exceptions import (
    AuthenticationError, ChipReadError, ChipWriteError, EncodingStateError,
    PartialEncodingFailure, UidMismatch,
)
from ..utils.validators import normalize_uid, validate_chip_id
from .layout import (
    CHECKSUM_BLOCK, DEFAULT_KEY, PROTECTED_ID_BLOCK, PUBLIC_ID_BLOCK, build_trailer,
    encode_chip_id, trailer_block,
)

logger = logging.getLogger(__name__)

LOCK_STEPS = (
    (EncodingStep.LOCK_SECTOR_1, 1),
    (EncodingStep.LOCK_SECTOR_2, 2),
)


@dataclass
class EncodingResult:
    uid: str
    chip_id: str
    salt: bytes
    checksum: bytes
    completed_steps: List[EncodingStep] = field(default_factory=list)
    state: EncodingState = EncodingState.PROTECTED


class CardEncodingProtocol:
    """
    Writes the chip id to blocks 1 and 4, the checksum to block 8, then
    replaces the trailers of sectors 1 and 2 with the derived key. The tag
    is ENCODED after the data writes and PROTECTED once both trailers hold
    the derived key.

    Until a trailer is touched the tag is still at the factory key and any
    failure is a plain, retryable ChipWriteError. Once a trailer write has
    been attempted the sector may already answer only to the derived key,
    so a failure from that point on is a PartialEncodingFailure and is not
    retried here.
    """

    def __init__(self, keys: KeyDerivationService, checksums: ChecksumService):
        self.keys = keys
        self.checksums = checksums

    def encode(
        self,
        reader: ChipReader,
        chip_id: str,
        salt: Optional[bytes] = None,
        expected_uid: Optional[str] = None,
    ) -> EncodingResult:
        return self.lock(reader, self.write_identity(reader, chip_id, salt, expected_uid))

    def write_identity(
        self,
        reader: ChipReader,
        chip_id: str,
        salt: Optional[bytes] = None,
        expected_uid: Optional[str] = None,
    ) -> EncodingResult:
        """READ_UID and the three data writes. The tag is left ENCODED, still at the factory key."""
        validate_chip_id(chip_id)
        if salt is not None and len(salt) != SALT_LENGTH:
            raise ValueError(f"salt must be {SALT_LENGTH} bytes")

        completed: List[EncodingStep] = []

        # READ_UID
        uid = normalize_uid(reader.read_uid())
        if expected_uid is not None and uid != normalize_uid(expected_uid):
            raise UidMismatch(f"Tag on reader has uid {uid}, expected {normalize_uid(expected_uid)}")
        completed.append(EncodingStep.READ_UID)

        salt = salt if salt is not None else self.checksums.generate_salt()
        checksum = self.checksums.compute_checksum(uid, salt, chip_id)
        id_block = encode_chip_id(chip_id)

        data_steps = (
            (EncodingStep.WRITE_PUBLIC_ID, PUBLIC_ID_BLOCK, id_block),
            (EncodingStep.WRITE_PROTECTED_ID, PROTECTED_ID_BLOCK, id_block),
            (EncodingStep.WRITE_CHECKSUM, CHECKSUM_BLOCK, checksum),
        )
        for step, block, data in data_steps:
            try:
                reader.write_block(block, data, DEFAULT_KEY)
            except AuthenticationError:
                raise EncodingStateError(
                    f"Block {block} of tag {uid} refused the factory key; the tag is already locked"
                )
            except (ChipReadError, ChipWriteError) as e:
                logger.warning("Encoding %s stopped at %s: %s", chip_id, step.value, e)
                raise ChipWriteError(f"{step.value} failed: {e}", completed_steps=[s.value for s in completed])
            completed.append(step)

        return EncodingResult(
            uid=uid,
            chip_id=chip_id,
            salt=salt,
            checksum=checksum,
            completed_steps=completed,
            state=EncodingState.ENCODED,
        )

    def lock(self, reader: ChipReader, encoded: EncodingResult) -> EncodingResult:
        """Rewrite the trailers of sectors 1 and 2 with the derived key."""
        if encoded.state != EncodingState.ENCODED:
            raise EncodingStateError(f"Chip {encoded.chip_id} is {encoded.state.value}, not ENCODED")
        chip_id, uid = encoded.chip_id, encoded.uid
        chip_key = self.keys.derive_chip_key(chip_id)
        completed = list(encoded.completed_steps)

        locked: List[int] = []
        for step, sector in LOCK_STEPS:
            try:
                reader.write_block(trailer_block(sector), build_trailer(chip_key), DEFAULT_KEY)
            except (AuthenticationError, ChipReadError, ChipWriteError) as e:
                logger.error(
                    "Partial encoding of %s (uid=%s): %s failed, locked sectors=%s: %s",
                    chip_id, uid, step.value, locked, e,
                )
                raise PartialEncodingFailure(
                    f"Tag {uid} is partially locked: {step.value} failed ({e})",
                    completed_steps=[s.value for s in completed],
                    failed_step=step.value,
                    locked_sectors=list(locked),
                )
            locked.append(sector)
            completed.append(step)

        logger.info("Encoded chip %s on tag %s", chip_id, uid)
        return EncodingResult(
            uid=uid,
            chip_id=chip_id,
            salt=encoded.salt,
            checksum=encoded.checksum,
            completed_steps=completed,
        )
