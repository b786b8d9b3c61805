# =======================================================================================
# chipvault/services/security_log.py - Chip Security Audit
# =======================================================================================
import logging
from typing import Optional
from sqlalchemy import text
from sqlalchemy.engine import Connection
from ..database import DatabaseManager, utcnow
from ..models.enums import EventSource, SecurityCategory

logger = logging.getLogger(__name__)


class SecurityLogService:
    """Persists verification outcomes to chip_security_log."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    @staticmethod
    def record(conn: Connection, category: SecurityCategory, source: EventSource,
               chip_id: Optional[str], uid: Optional[str], message: str) -> None:
        """Write an audit row in the caller's transaction."""
        category = SecurityCategory(category)
        conn.execute(
            text("""
                INSERT INTO chip_security_log (chip_id, uid, category, source, message, created_at)
                VALUES (:chip_id, :uid, :category, :source, :message, :now)
            """),
            {
                "chip_id": chip_id, "uid": uid, "category": category.value,
                "source": source, "message": message, "now": utcnow(),
            },
        )
        if category == SecurityCategory.VERIFIED:
            logger.info("[%s] chip %s verified (uid=%s)", source, chip_id, uid)
        else:
            logger.warning("[%s] %s chip=%s uid=%s: %s", source, category.value, chip_id, uid, message)

    def record_now(self, category: SecurityCategory, source: EventSource,
                   chip_id: Optional[str], uid: Optional[str], message: str) -> None:
        """Write an audit row in its own transaction, surviving a rolled-back request."""
        with self.db.get_connection() as conn:
            self.record(conn, category, source, chip_id, uid, message)

    @staticmethod
    def recent(conn: Connection, chip_id: Optional[str] = None, limit: int = 100):
        query = "SELECT chip_id, uid, category, source, message, created_at FROM chip_security_log"
        params = {"limit": limit}
        if chip_id:
            query += " WHERE chip_id = :chip_id"
            params["chip_id"] = chip_id
        query += " ORDER BY created_at DESC, id DESC LIMIT :limit"
        return conn.execute(text(query), params).mappings().all()
