# =======================================================================================
# chipvault/services/lifecycle.py - Chip Lifecycle State Machine
# =======================================================================================
import logging
from typing import Any, Dict, FrozenSet, Mapping, Optional
from sqlalchemy import text
from sqlalchemy.engine import Connection
from ..database import for_update, utcnow
from ..models.enums import ChipStatus
from ..utils.exceptions import ChipNotFound, InvalidTransition, ValidationFailed

logger = logging.getLogger(__name__)

S = ChipStatus

ADJACENCY: Dict[ChipStatus, FrozenSet[ChipStatus]] = {
    S.EN_STOCK: frozenset({S.EN_TRANSIT}),
    S.EN_TRANSIT: frozenset({S.EN_ATELIER}),
    S.EN_ATELIER: frozenset({S.INACTIVE, S.ARCHIVEE}),
    S.INACTIVE: frozenset({S.EN_LIVRAISON, S.RETOUR_SAV}),
    S.EN_LIVRAISON: frozenset({S.LIVREE, S.RETOUR_SAV}),
    S.LIVREE: frozenset({S.ACTIVE, S.RETOUR_SAV}),
    S.ACTIVE: frozenset({S.RETOUR_SAV}),
    S.RETOUR_SAV: frozenset({S.RECEPTION_SAV}),
    S.RECEPTION_SAV: frozenset({S.REMPLACEE}),
    S.REMPLACEE: frozenset({S.ARCHIVEE}),
    S.ARCHIVEE: frozenset(),
}

# Columns a transition may set alongside the status, in the same UPDATE
SIDE_COLUMNS = frozenset({
    "customer_id", "order_id", "packaging_code", "control_point_id", "encoding_state",
    "salt", "checksum", "activation_date", "encoding_date", "shipped_date",
    "delivered_date", "first_scan_date", "last_scan_date", "sav_reason",
    "replacement_chip_id",
})


def _rule(current: ChipStatus, target: ChipStatus) -> str:
    if current == target:
        return f"chip is already {current.value}"
    if current == S.ARCHIVEE:
        return "cannot reactivate an archived chip"
    if target == S.ACTIVE:
        return "a chip can only be activated after delivery"
    if target == S.ARCHIVEE and current != S.EN_ATELIER:
        return "only replaced chips or tags scrapped at the workshop can be archived"
    allowed = ", ".join(sorted(s.value for s in ADJACENCY[current])) or "none"
    return f"{current.value} cannot move to {target.value} (allowed: {allowed})"


class LifecycleStateMachine:
    """Sole writer of rfid_chips.status; every change appends one history row."""

    @staticmethod
    def allowed_targets(current: ChipStatus) -> FrozenSet[ChipStatus]:
        return ADJACENCY[ChipStatus(current)]

    @staticmethod
    def check(current: ChipStatus, target: ChipStatus) -> None:
        """Raise InvalidTransition unless current -> target is in the table."""
        current, target = ChipStatus(current), ChipStatus(target)
        if target not in ADJACENCY[current]:
            raise InvalidTransition(current.value, target.value, _rule(current, target))

    def transition(
        self,
        conn: Connection,
        chip_pk: int,
        new_status: ChipStatus,
        actor: str,
        notes: Optional[str] = None,
        updates: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Move a chip to `new_status` inside the caller's transaction.

        The row is locked, the edge validated, then status (guarded by the
        old value) and any side columns are written in one UPDATE followed
        by the history INSERT. Nothing is written when the edge is invalid.
        """
        if not actor or not actor.strip():
            raise ValidationFailed("Transition actor is required")
        new_status = ChipStatus(new_status)
        updates = dict(updates or {})
        unknown = set(updates) - SIDE_COLUMNS
        if unknown:
            raise ValueError(f"Columns not writable through a transition: {sorted(unknown)}")

        row = conn.execute(
            text("SELECT id, chip_id, status FROM rfid_chips WHERE id = :id" + for_update(conn)),
            {"id": chip_pk},
        ).mappings().first()
        if not row:
            raise ChipNotFound(f"Chip {chip_pk} not found")

        current = ChipStatus(row["status"])
        self.check(current, new_status)

        now = utcnow()
        params: Dict[str, Any] = dict(updates)
        assignments = "".join(f", {col} = :{col}" for col in updates)
        params.update({"id": chip_pk, "new": new_status.value, "old": current.value, "now": now})
        result = conn.execute(
            text(
                "UPDATE rfid_chips SET status = :new, updated_at = :now" + assignments +
                " WHERE id = :id AND status = :old"
            ),
            params,
        )
        if result.rowcount != 1:
            # status moved under us between the read and the write
            raise InvalidTransition(current.value, new_status.value, "chip status changed concurrently")

        conn.execute(
            text("""
                INSERT INTO rfid_chip_status_history
                    (rfid_chip_id, from_status, to_status, changed_by, changed_at, notes)
                VALUES (:id, :old, :new, :actor, :now, :notes)
            """),
            {
                "id": chip_pk, "old": current.value, "new": new_status.value,
                "actor": actor.strip(), "now": now, "notes": notes,
            },
        )
        logger.info("Chip %s: %s -> %s by %s", row["chip_id"], current.value, new_status.value, actor)
        return {
            "id": chip_pk,
            "chip_id": row["chip_id"],
            "from_status": current.value,
            "to_status": new_status.value,
            "changed_by": actor.strip(),
            "changed_at": now,
            "notes": notes,
        }

    @staticmethod
    def history(conn: Connection, chip_pk: int):
        return conn.execute(
            text("""
                SELECT from_status, to_status, changed_by, changed_at, notes
                FROM rfid_chip_status_history
                WHERE rfid_chip_id = :id
                ORDER BY changed_at, id
            """),
            {"id": chip_pk},
        ).mappings().all()
