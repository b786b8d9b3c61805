# =======================================================================================
# chipvault/services/station_service.py - Encode / verify on attached readers
# =======================================================================================
import logging
from typing import Any, Dict, List, Optional
from ..database import DatabaseManager
from ..models.enums import EncodingState, SecurityCategory
from ..protocol.encoding import CardEncodingProtocol
from ..protocol.layout import DEFAULT_KEY, PUBLIC_ID_BLOCK, decode_chip_id
from ..protocol.verification import CardVerificationProtocol
from ..readers.base import ChipReader
from ..readers.pool import ReaderPool
from ..utils.exceptions import (
    AuthenticationError, ChecksumMismatch, ChipIdMismatch, ChipNotFound, ChipReadError,
    ChipWriteError, EncodingStateError, InvalidBlockData, NoTagPresented,
    PartialEncodingFailure, UidMismatch,
)
from ..utils.validators import normalize_uid
from .chip_service import ChipService, security_category

logger = logging.getLogger(__name__)


class StationService:
    """
    Workshop station: drives readers attached to this server.

    Hardware I/O never runs inside a database transaction. Each DB step
    (issue, confirm, audit) commits on its own so a pulled tag cannot leave
    a half-written row behind.
    """

    def __init__(self, db: DatabaseManager, pool: ReaderPool, chips: ChipService,
                 wait_timeout: float = 30.0):
        self.db = db
        self.pool = pool
        self.chips = chips
        self.wait_timeout = wait_timeout
        self.encoder = CardEncodingProtocol(chips.keys, chips.checksums)
        self.verifier = CardVerificationProtocol(chips.keys, chips.checksums)

    def list_readers(self) -> List[Dict[str, Any]]:
        return [
            {"name": name, "busy": self.pool.is_busy(name)}
            for name in self.pool.names()
        ]

    def _await_tag(self, reader: ChipReader, timeout: Optional[float]) -> str:
        wait = self.wait_timeout if timeout is None else timeout
        if not reader.wait_for_card(wait):
            raise NoTagPresented(f"No tag presented on {reader.name} within {wait:g}s")
        return normalize_uid(reader.read_uid())

    def wait_for_tag(self, reader_name: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        with self.pool.acquire(reader_name) as reader:
            uid = self._await_tag(reader, timeout)
        with self.db.get_connection() as conn:
            info = self.chips.chip_info(conn, uid)
        return {"reader": reader_name, **info}

    # ------------------------------------------------------------------
    # Encode
    # ------------------------------------------------------------------
    def encode(self, reader_name: str, actor: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        with self.pool.acquire(reader_name) as reader:
            uid = self._await_tag(reader, timeout)
            with self.db.get_connection() as conn:
                params = self.chips.request_encoding(conn, uid)

            try:
                written = self.encoder.write_identity(
                    reader, params["chip_id"], salt=bytes.fromhex(params["salt"]), expected_uid=uid,
                )
            except (ChipReadError, ChipWriteError) as e:
                logger.warning("Encoding of %s on %s failed, tag left resettable: %s",
                               params["chip_id"], reader_name, e)
                raise
            with self.db.get_connection() as conn:
                self.chips.mark_encoded(conn, uid)

            try:
                result = self.encoder.lock(reader, written)
            except PartialEncodingFailure as e:
                with self.db.get_connection() as conn:
                    self.chips.report_encoding_failure(
                        conn, uid, e.failed_step, e.locked_sectors, e.completed_steps, "READER", str(e),
                    )
                raise

        with self.db.get_connection() as conn:
            chip = self.chips.confirm_encoding(
                conn, uid, result.chip_id, result.checksum.hex(), actor,
                notes=f"Encoded on reader {reader_name}",
            )
        return {
            "reader": reader_name,
            "chip": chip,
            "completed_steps": [s.value for s in result.completed_steps],
        }

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------
    def verify(self, reader_name: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        with self.pool.acquire(reader_name) as reader:
            uid = self._await_tag(reader, timeout)
            try:
                public_id = decode_chip_id(reader.read_block(PUBLIC_ID_BLOCK, DEFAULT_KEY))
            except (AuthenticationError, InvalidBlockData):
                public_id = None

            with self.db.get_connection() as conn:
                chip = (self.chips.find_by_chip_id(conn, public_id) if public_id else None) \
                    or self.chips.find_by_uid(conn, uid)
            if chip is None:
                raise ChipNotFound(f"Tag {uid} is not a registered chip")

            if chip["uid"] != uid:
                message = f"Tag {uid} carries chip id {chip['chip_id']} registered to uid {chip['uid']}"
                self.chips.security.record_now(SecurityCategory.UID_MISMATCH, "READER",
                                               chip["chip_id"], uid, message)
                raise UidMismatch(message)
            if chip["encoding_state"] != EncodingState.PROTECTED.value or not chip["salt"]:
                raise EncodingStateError(
                    f"Chip {chip['chip_id']} is not encoded (state: {chip['encoding_state']})"
                )

            try:
                self.verifier.verify(
                    reader, chip["chip_id"], bytes.fromhex(chip["salt"]),
                    stored_checksum=bytes.fromhex(chip["checksum"]),
                )
            except (AuthenticationError, ChecksumMismatch, ChipIdMismatch) as e:
                self.chips.security.record_now(security_category(e), "READER", chip["chip_id"], uid, str(e))
                raise

        self.chips.security.record_now(SecurityCategory.VERIFIED, "READER", chip["chip_id"], uid,
                                       f"verified on reader {reader_name}")
        return {
            "reader": reader_name,
            "verified": True,
            "chip_id": chip["chip_id"],
            "uid": uid,
            "status": chip["status"],
        }
