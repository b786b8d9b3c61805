# =======================================================================================
# chipvault/services/chip_service.py - Chip Registry and Server-side Operations
# =======================================================================================
import logging
import secrets
import string
from typing import Any, Dict, List, Optional
from sqlalchemy import text
from sqlalchemy.engine import Connection
from ..database import utcnow
from ..models.enums import ChipStatus, EncodingState, EncodingStep, OrderStatus, SecurityCategory
from ..protocol.verification import CardVerificationProtocol
from ..utils.exceptions import (
    AuthenticationError, ChecksumMismatch, ChipAlreadyRegistered, ChipIdMismatch,
    ChipNotFound, EncodingStateError, InvalidBlockData, InvalidOrderState, OrderNotFound,
    ValidationFailed,
)
from ..utils.validators import (
    CHIP_ID_SEQUENCE_MAX, normalize_uid, validate_archive_reason, validate_chip_id,
    validate_chip_id_prefix,
)
from .checksum import ChecksumService
from .key_derivation import KeyDerivationService
from .lifecycle import LifecycleStateMachine
from .security_log import SecurityLogService
from .stock_ledger import StockReservationLedger

logger = logging.getLogger(__name__)

# Parameters issued, tag not locked yet
IN_PROGRESS_STATES = (EncodingState.ISSUED.value, EncodingState.ENCODED.value)
LOCK_STEP_NAMES = (EncodingStep.LOCK_SECTOR_1.value, EncodingStep.LOCK_SECTOR_2.value)

PACKAGING_ALPHABET = string.ascii_uppercase + string.digits

CHIP_COLUMNS = """
    id, chip_id, uid, customer_id, order_id, packaging_code, status, encoding_state,
    control_point_id, salt, checksum, activation_date, encoding_date, shipped_date,
    delivered_date, first_scan_date, last_scan_date, sav_reason, replacement_chip_id,
    created_by, created_at, updated_at
"""

# Rejections worth an audit row, by exception type
SECURITY_CATEGORIES = (
    (AuthenticationError, SecurityCategory.AUTHENTICATION_FAILURE),
    (ChecksumMismatch, SecurityCategory.CHECKSUM_MISMATCH),
    (ChipIdMismatch, SecurityCategory.CHIP_ID_MISMATCH),
)


def security_category(error: Exception) -> Optional[SecurityCategory]:
    for exc_type, category in SECURITY_CATEGORIES:
        if isinstance(error, exc_type):
            return category
    return None


def generate_packaging_code(now=None) -> str:
    """PKG-YYYYMMDD-XXXXXXXX"""
    now = now or utcnow()
    suffix = "".join(secrets.choice(PACKAGING_ALPHABET) for _ in range(8))
    return f"PKG-{now:%Y%m%d}-{suffix}"


def public_chip(row) -> Dict[str, Any]:
    """Chip record as returned to clients: salt and checksum stay server-side."""
    chip = dict(row)
    chip.pop("salt", None)
    chip.pop("checksum", None)
    chip["is_encoded"] = chip.get("encoding_state") == EncodingState.PROTECTED.value
    return chip


class ChipService:
    """Everything the workshop, the back office and the phones ask of a chip record."""

    def __init__(
        self,
        keys: KeyDerivationService,
        checksums: ChecksumService,
        lifecycle: LifecycleStateMachine,
        ledger: StockReservationLedger,
        security: SecurityLogService,
        archive_reason_min_words: int = 10,
        chip_id_prefix: str = "LC",
    ):
        self.keys = keys
        self.checksums = checksums
        self.lifecycle = lifecycle
        self.ledger = ledger
        self.security = security
        self.verifier = CardVerificationProtocol(keys, checksums)
        self.archive_reason_min_words = archive_reason_min_words
        self.chip_id_prefix = validate_chip_id_prefix(chip_id_prefix)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    @staticmethod
    def get_chip_row(conn: Connection, chip_pk: int):
        row = conn.execute(
            text(f"SELECT {CHIP_COLUMNS} FROM rfid_chips WHERE id = :id"), {"id": chip_pk}
        ).mappings().first()
        if not row:
            raise ChipNotFound(f"Chip {chip_pk} not found")
        return row

    @staticmethod
    def find_by_uid(conn: Connection, uid: str):
        return conn.execute(
            text(f"SELECT {CHIP_COLUMNS} FROM rfid_chips WHERE uid = :uid"),
            {"uid": normalize_uid(uid)},
        ).mappings().first()

    @staticmethod
    def find_by_chip_id(conn: Connection, chip_id: str):
        return conn.execute(
            text(f"SELECT {CHIP_COLUMNS} FROM rfid_chips WHERE chip_id = :chip_id"),
            {"chip_id": chip_id},
        ).mappings().first()

    def get_by_uid(self, conn: Connection, uid: str):
        row = self.find_by_uid(conn, uid)
        if not row:
            raise ChipNotFound(f"No chip registered for uid {normalize_uid(uid)}")
        return row

    def get_chip(self, conn: Connection, chip_pk: int) -> Dict[str, Any]:
        return public_chip(self.get_chip_row(conn, chip_pk))

    @staticmethod
    def list_chips(conn: Connection, status: Optional[ChipStatus] = None,
                   customer_id: Optional[str] = None, skip: int = 0, limit: int = 100) -> List[Dict[str, Any]]:
        query = f"SELECT {CHIP_COLUMNS} FROM rfid_chips WHERE 1 = 1"
        params: Dict[str, Any] = {"skip": skip, "limit": limit}
        if status is not None:
            query += " AND status = :status"
            params["status"] = ChipStatus(status).value
        if customer_id:
            query += " AND customer_id = :customer_id"
            params["customer_id"] = customer_id
        query += " ORDER BY created_at DESC, id DESC LIMIT :limit OFFSET :skip"
        return [public_chip(r) for r in conn.execute(text(query), params).mappings().all()]

    def count_by_order(self, conn: Connection, order_id: int) -> Dict[str, Any]:
        if not conn.execute(text("SELECT 1 FROM orders WHERE id = :id"), {"id": order_id}).first():
            raise OrderNotFound(f"Order {order_id} not found")
        return {"order_id": order_id, "count": self.ledger.linked_count(conn, order_id)}

    def status_history(self, conn: Connection, chip_pk: int) -> List[Dict[str, Any]]:
        self.get_chip_row(conn, chip_pk)
        return [dict(r) for r in self.lifecycle.history(conn, chip_pk)]

    def chip_info(self, conn: Connection, uid: str) -> Dict[str, Any]:
        """What a workstation shows when a tag is laid on its reader."""
        uid = normalize_uid(uid)
        row = self.find_by_uid(conn, uid)
        if not row:
            return {"uid": uid, "registered": False, "is_encoded": False, "message": "Unknown chip"}
        encoded = row["encoding_state"] == EncodingState.PROTECTED.value
        return {
            "uid": uid,
            "registered": True,
            "is_encoded": encoded,
            "chip_id": row["chip_id"],
            "status": row["status"],
            "encoding_state": row["encoding_state"],
            "customer_id": row["customer_id"],
            "control_point_id": row["control_point_id"],
            "message": "Chip encoded" if encoded else "Chip not encoded",
        }

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def next_chip_id(self, conn: Connection) -> str:
        """LC-YYYY-MM-NNNNN, numbered per month."""
        now = utcnow()
        base = f"{self.chip_id_prefix}-{now:%Y}-{now:%m}-"
        last = conn.execute(
            text("SELECT chip_id FROM rfid_chips WHERE chip_id LIKE :p ORDER BY chip_id DESC LIMIT 1"),
            {"p": base + "%"},
        ).scalar()
        seq = int(last[len(base):]) + 1 if last and last[len(base):].isdigit() else 1
        while True:
            if seq > CHIP_ID_SEQUENCE_MAX:
                raise ValidationFailed(f"No chip ids left for {base}*: {CHIP_ID_SEQUENCE_MAX} issued this month")
            candidate = validate_chip_id(f"{base}{seq:05d}")
            taken = conn.execute(
                text("SELECT 1 FROM rfid_chips WHERE chip_id = :c"), {"c": candidate}
            ).first()
            if not taken:
                return candidate
            seq += 1

    def register_chip(self, conn: Connection, uid: str, actor: str,
                      chip_id: Optional[str] = None) -> Dict[str, Any]:
        """Record a blank tag received from the supplier. It enters stock as EN_STOCK."""
        uid = normalize_uid(uid)
        if self.find_by_uid(conn, uid):
            raise ChipAlreadyRegistered(f"UID {uid} is already registered")
        if chip_id:
            validate_chip_id(chip_id)
            if conn.execute(text("SELECT 1 FROM rfid_chips WHERE chip_id = :c"), {"c": chip_id}).first():
                raise ChipAlreadyRegistered(f"Chip id {chip_id} is already in use")
        else:
            chip_id = self.next_chip_id(conn)

        now = utcnow()
        conn.execute(
            text("""
                INSERT INTO rfid_chips (chip_id, uid, status, encoding_state, created_by, created_at, updated_at)
                VALUES (:chip_id, :uid, :status, :state, :actor, :now, :now)
            """),
            {
                "chip_id": chip_id, "uid": uid, "status": ChipStatus.EN_STOCK.value,
                "state": EncodingState.UNENCODED.value, "actor": actor, "now": now,
            },
        )
        logger.info("Registered chip %s for uid %s", chip_id, uid)
        row = self.find_by_uid(conn, uid)
        return public_chip(row)

    # ------------------------------------------------------------------
    # Workshop encoding
    # ------------------------------------------------------------------
    def request_encoding(self, conn: Connection, uid: str) -> Dict[str, Any]:
        """
        Issue the identity material a workstation writes to a blank tag.

        The salt is committed on first issue; asking again before the tag is
        confirmed returns the same material, so a retried write cannot leave
        tag and record disagreeing.
        """
        chip = self.get_by_uid(conn, uid)
        if chip["status"] != ChipStatus.EN_ATELIER.value:
            raise EncodingStateError(
                f"Chip {chip['chip_id']} must be EN_ATELIER to be encoded (status: {chip['status']})"
            )
        state = chip["encoding_state"]
        if state == EncodingState.PARTIAL.value:
            raise EncodingStateError(
                f"Chip {chip['chip_id']} is partially locked; scrap the tag instead of re-encoding"
            )
        if state == EncodingState.ENCODED.value:
            raise EncodingStateError(
                f"Chip {chip['chip_id']} has its data written and awaits lock confirmation"
            )
        if state == EncodingState.PROTECTED.value:
            raise EncodingStateError(f"Chip {chip['chip_id']} is already encoded")

        if state == EncodingState.ISSUED.value and chip["salt"]:
            salt = bytes.fromhex(chip["salt"])
        else:
            salt = self.checksums.generate_salt()
        checksum = self.checksums.compute_checksum(chip["uid"], salt, chip["chip_id"])

        conn.execute(
            text("""
                UPDATE rfid_chips SET salt = :salt, checksum = :checksum, encoding_state = :state,
                    updated_at = :now
                WHERE id = :id
            """),
            {
                "salt": salt.hex().upper(), "checksum": checksum.hex().upper(),
                "state": EncodingState.ISSUED.value, "now": utcnow(), "id": chip["id"],
            },
        )
        logger.info("Issued encoding parameters for chip %s", chip["chip_id"])
        return {
            "uid": chip["uid"],
            "chip_id": chip["chip_id"],
            "salt": salt.hex().upper(),
            "checksum": checksum.hex().upper(),
            "chip_key": self.keys.derive_chip_key(chip["chip_id"]).hex().upper(),
        }

    def issued_material(self, conn: Connection, uid: str):
        """(chip row, salt) for a chip whose parameters have been issued and not yet locked."""
        chip = self.get_by_uid(conn, uid)
        if chip["encoding_state"] not in IN_PROGRESS_STATES or not chip["salt"]:
            raise EncodingStateError(
                f"Chip {chip['chip_id']} has no issued encoding parameters (state: {chip['encoding_state']})"
            )
        return chip, bytes.fromhex(chip["salt"])

    def mark_encoded(self, conn: Connection, uid: str) -> Dict[str, Any]:
        """Data blocks are on the tag, trailers not rewritten yet."""
        chip, _ = self.issued_material(conn, uid)
        conn.execute(
            text("UPDATE rfid_chips SET encoding_state = :state, updated_at = :now WHERE id = :id"),
            {"state": EncodingState.ENCODED.value, "now": utcnow(), "id": chip["id"]},
        )
        return {"chip_id": chip["chip_id"], "encoding_state": EncodingState.ENCODED.value}

    def confirm_encoding(self, conn: Connection, uid: str, chip_id: str, checksum_hex: str,
                         actor: str, notes: Optional[str] = None) -> Dict[str, Any]:
        """Workstation reports a written and locked tag: EN_ATELIER -> INACTIVE."""
        chip, _ = self.issued_material(conn, uid)
        if chip_id != chip["chip_id"]:
            raise ChipIdMismatch(f"Tag {chip['uid']} was issued chip id {chip['chip_id']}, not {chip_id}")
        if (checksum_hex or "").strip().upper() != chip["checksum"]:
            raise ChecksumMismatch(f"Confirmed checksum of {chip['chip_id']} differs from the issued one")
        self.lifecycle.transition(
            conn, chip["id"], ChipStatus.INACTIVE, actor, notes or "Encoded and locked",
            updates={"encoding_state": EncodingState.PROTECTED.value, "encoding_date": utcnow()},
        )
        return self.get_chip(conn, chip["id"])

    def report_encoding_failure(self, conn: Connection, uid: str, failed_step: str,
                                locked_sectors: List[int], completed_steps: List[str],
                                source: str = "READER", message: Optional[str] = None) -> Dict[str, Any]:
        """
        Record a failed write. A failed data write leaves the tag at the
        factory key, so it can be written again with the same parameters.
        Once a trailer write has been attempted the chip is marked PARTIAL
        and can only be scrapped.
        """
        chip, _ = self.issued_material(conn, uid)
        if not locked_sectors and failed_step not in LOCK_STEP_NAMES:
            logger.warning("Encoding of %s failed at %s before locking; retry allowed",
                           chip["chip_id"], failed_step)
            return {"chip_id": chip["chip_id"], "encoding_state": chip["encoding_state"], "retryable": True}

        conn.execute(
            text("UPDATE rfid_chips SET encoding_state = :state, updated_at = :now WHERE id = :id"),
            {"state": EncodingState.PARTIAL.value, "now": utcnow(), "id": chip["id"]},
        )
        detail = message or (
            f"failed at {failed_step}; completed {','.join(completed_steps) or '-'}; "
            f"locked sectors {','.join(str(s) for s in locked_sectors) or '-'}"
        )
        self.security.record(conn, SecurityCategory.ENCODING_PARTIAL, source,
                             chip["chip_id"], chip["uid"], detail)
        return {"chip_id": chip["chip_id"], "encoding_state": EncodingState.PARTIAL.value, "retryable": False}

    # ------------------------------------------------------------------
    # Mobile activation and whitelist
    # ------------------------------------------------------------------
    def activate_chip(self, conn: Connection, uid: str, chip_id: str, block4: str, block8: str,
                      actor: str, customer_id: Optional[str] = None,
                      control_point_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Verify raw block reads sent by a phone, then activate the chip on its
        first genuine scan (LIVREE -> ACTIVE). Later genuine scans only
        refresh last_scan_date.
        """
        chip = self.get_by_uid(conn, uid)
        if not chip["salt"] or not chip["checksum"] or chip["encoding_state"] != EncodingState.PROTECTED.value:
            raise EncodingStateError(f"Chip {chip['chip_id']} was not encoded correctly")
        if customer_id and chip["customer_id"] and chip["customer_id"] != customer_id:
            raise ValidationFailed(f"Chip {chip['chip_id']} does not belong to customer {customer_id}")

        try:
            self.verifier.verify_submitted_reads(
                chip["uid"], chip["chip_id"], chip_id, block4, block8,
                salt=bytes.fromhex(chip["salt"]), stored_checksum=bytes.fromhex(chip["checksum"]),
            )
        except (AuthenticationError, ChecksumMismatch, ChipIdMismatch) as e:
            # own transaction: the request transaction is about to roll back
            self.security.record_now(security_category(e), "MOBILE", chip["chip_id"], chip["uid"], str(e))
            raise
        except InvalidBlockData:
            logger.warning("Malformed block data submitted for chip %s", chip["chip_id"])
            raise

        now = utcnow()
        activated = False
        if chip["status"] == ChipStatus.ACTIVE.value:
            conn.execute(
                text("UPDATE rfid_chips SET last_scan_date = :now, updated_at = :now WHERE id = :id"),
                {"now": now, "id": chip["id"]},
            )
        else:
            updates = {"activation_date": now, "first_scan_date": now, "last_scan_date": now}
            if control_point_id:
                updates["control_point_id"] = control_point_id
            if customer_id and not chip["customer_id"]:
                updates["customer_id"] = customer_id
            self.lifecycle.transition(conn, chip["id"], ChipStatus.ACTIVE, actor,
                                      "Activated by first authenticated scan", updates=updates)
            activated = True

        self.security.record(conn, SecurityCategory.VERIFIED, "MOBILE", chip["chip_id"], chip["uid"],
                             "activation" if activated else "scan")
        row = self.get_chip_row(conn, chip["id"])
        return {
            "chip_id": row["chip_id"],
            "uid": row["uid"],
            "status": row["status"],
            "activated": activated,
            "activation_date": row["activation_date"],
            "control_point_id": row["control_point_id"],
            "customer_id": row["customer_id"],
        }

    @staticmethod
    def whitelist(conn: Connection, customer_id: str) -> Dict[str, Any]:
        rows = conn.execute(
            text("""
                SELECT chip_id, control_point_id, activation_date, status
                FROM rfid_chips
                WHERE customer_id = :customer AND status = :active
                ORDER BY chip_id
            """),
            {"customer": customer_id, "active": ChipStatus.ACTIVE.value},
        ).mappings().all()
        return {
            "customer_id": customer_id,
            "chips": [
                {
                    "chip_id": r["chip_id"],
                    "control_point_id": r["control_point_id"],
                    "activated_at": r["activation_date"],
                    "status": r["status"],
                }
                for r in rows
            ],
            "last_updated": utcnow(),
        }

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    def assign_to_order(self, conn: Connection, chip_pk: int, order_id: int, actor: str) -> Dict[str, Any]:
        """Link a chip to an order and its customer; completes the reservation when full."""
        chip = self.get_chip_row(conn, chip_pk)
        order = conn.execute(
            text("""
                SELECT id, order_number, customer_id, status, chips_quantity, is_stock_reserved
                FROM orders WHERE id = :id
            """),
            {"id": order_id},
        ).mappings().first()
        if not order:
            raise OrderNotFound(f"Order {order_id} not found")
        if order["status"] == OrderStatus.CANCELLED.value:
            raise InvalidOrderState(f"Order {order['order_number']} is cancelled")
        if chip["status"] in (ChipStatus.ARCHIVEE.value, ChipStatus.REMPLACEE.value):
            raise InvalidOrderState(f"Chip {chip['chip_id']} is {chip['status']} and cannot be assigned")
        if chip["order_id"] == order_id:
            return {"chip": public_chip(chip), "reconciliation": self.ledger.reconcile_completion(order_id, conn)}
        if chip["order_id"] is not None or chip["customer_id"] is not None:
            raise InvalidOrderState(f"Chip {chip['chip_id']} is already assigned")

        assigned = self.ledger.linked_count(conn, order_id)
        if assigned >= order["chips_quantity"]:
            raise InvalidOrderState(f"Order {order['order_number']} already has its {assigned} chips")

        link = {"order_id": order_id, "customer": order["customer_id"], "now": utcnow(), "id": chip_pk}
        if chip["status"] == ChipStatus.EN_STOCK.value and not order["is_stock_reserved"]:
            # no reservation to take the chip from: draw it from unreserved stock
            with self.ledger.drawing(conn):
                self._link_to_order(conn, link)
        else:
            self._link_to_order(conn, link)
        logger.info("Chip %s assigned to order %s by %s", chip["chip_id"], order["order_number"], actor)
        reconciliation = self.ledger.reconcile_completion(order_id, conn)
        return {"chip": self.get_chip(conn, chip_pk), "reconciliation": reconciliation}

    @staticmethod
    def _link_to_order(conn: Connection, link: Dict[str, Any]) -> None:
        conn.execute(
            text("""
                UPDATE rfid_chips SET order_id = :order_id, customer_id = :customer, updated_at = :now
                WHERE id = :id
            """),
            link,
        )

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------
    def transition(self, conn: Connection, chip_pk: int, new_status: ChipStatus, actor: str,
                   notes: Optional[str] = None) -> Dict[str, Any]:
        if ChipStatus(new_status) == ChipStatus.ARCHIVEE:
            notes = validate_archive_reason(notes, self.archive_reason_min_words)
        chip = self.get_chip_row(conn, chip_pk)
        if chip["status"] == ChipStatus.EN_STOCK.value and chip["customer_id"] is None:
            # an unassigned chip leaving stock must not be one promised to an order
            self.lifecycle.check(chip["status"], new_status)
            with self.ledger.drawing(conn):
                return self.lifecycle.transition(conn, chip_pk, new_status, actor, notes)
        return self.lifecycle.transition(conn, chip_pk, new_status, actor, notes)

    def ship(self, conn: Connection, chip_pk: int, actor: str, notes: Optional[str] = None) -> Dict[str, Any]:
        """INACTIVE -> EN_LIVRAISON. Chips of one order share the order's packaging code."""
        chip = self.get_chip_row(conn, chip_pk)
        if chip["order_id"] is None:
            raise ValidationFailed(f"Chip {chip['chip_id']} is not linked to an order")
        self.lifecycle.check(chip["status"], ChipStatus.EN_LIVRAISON)

        order = conn.execute(
            text("SELECT id, packaging_code FROM orders WHERE id = :id"), {"id": chip["order_id"]}
        ).mappings().first()
        code = order["packaging_code"] if order and order["packaging_code"] else None
        if not code:
            code = generate_packaging_code()
            conn.execute(
                text("UPDATE orders SET packaging_code = :code, updated_at = :now WHERE id = :id"),
                {"code": code, "now": utcnow(), "id": chip["order_id"]},
            )
        self.lifecycle.transition(
            conn, chip_pk, ChipStatus.EN_LIVRAISON, actor, notes or f"Shipped with {code}",
            updates={"packaging_code": code, "shipped_date": utcnow()},
        )
        return self.get_chip(conn, chip_pk)

    def confirm_delivery(self, conn: Connection, chip_pk: int, packaging_code: str, actor: str) -> Dict[str, Any]:
        """EN_LIVRAISON -> LIVREE once the customer types the code printed on the parcel."""
        chip = self.get_chip_row(conn, chip_pk)
        expected = (chip["packaging_code"] or "").upper()
        if not packaging_code or packaging_code.strip().upper() != expected:
            raise ValidationFailed("Packaging code does not match the shipment")
        now = utcnow()
        self.lifecycle.transition(conn, chip_pk, ChipStatus.LIVREE, actor, "Delivery confirmed",
                                  updates={"delivered_date": now})

        # a delivered replacement retires the chip it replaces
        replaced = conn.execute(
            text("SELECT id FROM rfid_chips WHERE replacement_chip_id = :id AND status = :s"),
            {"id": chip_pk, "s": ChipStatus.REMPLACEE.value},
        ).scalars().all()
        for old_pk in replaced:
            self.lifecycle.transition(conn, old_pk, ChipStatus.ARCHIVEE, actor,
                                      f"Automatically archived: replacement {chip['chip_id']} delivered")
        return self.get_chip(conn, chip_pk)

    def request_sav(self, conn: Connection, chip_pk: int, reason: str, actor: str) -> Dict[str, Any]:
        if not reason or not reason.strip():
            raise ValidationFailed("An after-sales reason is required")
        self.lifecycle.transition(conn, chip_pk, ChipStatus.RETOUR_SAV, actor, reason.strip(),
                                  updates={"sav_reason": reason.strip()})
        return self.get_chip(conn, chip_pk)

    def receive_sav(self, conn: Connection, chip_pk: int, actor: str, notes: Optional[str] = None) -> Dict[str, Any]:
        self.lifecycle.transition(conn, chip_pk, ChipStatus.RECEPTION_SAV, actor,
                                  notes or "Returned chip received")
        return self.get_chip(conn, chip_pk)

    def replace(self, conn: Connection, chip_pk: int, replacement_pk: int, actor: str,
                notes: Optional[str] = None) -> Dict[str, Any]:
        """RECEPTION_SAV -> REMPLACEE; archived at once if the replacement is already delivered."""
        if chip_pk == replacement_pk:
            raise ValidationFailed("A chip cannot replace itself")
        replacement = self.get_chip_row(conn, replacement_pk)
        if replacement["status"] in (ChipStatus.ARCHIVEE.value, ChipStatus.REMPLACEE.value,
                                     ChipStatus.RETOUR_SAV.value, ChipStatus.RECEPTION_SAV.value):
            raise ValidationFailed(
                f"Chip {replacement['chip_id']} ({replacement['status']}) cannot be used as a replacement"
            )
        self.lifecycle.transition(
            conn, chip_pk, ChipStatus.REMPLACEE, actor,
            notes or f"Replaced by {replacement['chip_id']}",
            updates={"replacement_chip_id": replacement_pk},
        )
        if replacement["status"] == ChipStatus.LIVREE.value:
            self.lifecycle.transition(
                conn, chip_pk, ChipStatus.ARCHIVEE, actor,
                f"Automatically archived: replacement {replacement['chip_id']} delivered",
            )
        return self.get_chip(conn, chip_pk)

    def archive(self, conn: Connection, chip_pk: int, reason: str, actor: str) -> Dict[str, Any]:
        reason = validate_archive_reason(reason, self.archive_reason_min_words)
        self.lifecycle.transition(conn, chip_pk, ChipStatus.ARCHIVEE, actor, reason)
        return self.get_chip(conn, chip_pk)

    def scrap(self, conn: Connection, chip_pk: int, reason: str, actor: str) -> Dict[str, Any]:
        """Archive a tag damaged at the workshop (EN_ATELIER -> ARCHIVEE), e.g. a partial lock."""
        chip = self.get_chip_row(conn, chip_pk)
        if chip["status"] != ChipStatus.EN_ATELIER.value:
            raise ValidationFailed(f"Only chips in the workshop can be scrapped (status: {chip['status']})")
        return self.archive(conn, chip_pk, reason, actor)
