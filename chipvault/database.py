# =======================================================================================
# chipvault/database.py - Database Management
# =======================================================================================
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, MetaData, String, Table, Text,
    create_engine, text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import QueuePool
from .config import config

logger = logging.getLogger(__name__)

metadata = MetaData()

# Schema. Queries go through text(); the table objects only describe the DDL.
stock_pools = Table(
    "stock_pools", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(32), nullable=False, unique=True),
)

orders = Table(
    "orders", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_number", String(64), nullable=False, unique=True),
    Column("customer_id", String(64), nullable=True, index=True),
    Column("status", String(16), nullable=False, default="PENDING"),
    Column("chips_quantity", Integer, nullable=False, default=0),
    Column("is_stock_reserved", Boolean, nullable=False, default=False),
    Column("prepared_at", DateTime, nullable=True),
    Column("delivered_at", DateTime, nullable=True),
    Column("packaging_code", String(64), nullable=True),
    Column("created_at", DateTime, nullable=True),
    Column("updated_at", DateTime, nullable=True),
)

rfid_chips = Table(
    "rfid_chips", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("chip_id", String(16), nullable=False, unique=True),
    Column("uid", String(32), nullable=False, unique=True),
    Column("customer_id", String(64), nullable=True, index=True),
    Column("order_id", Integer, ForeignKey("orders.id"), nullable=True, index=True),
    Column("packaging_code", String(64), nullable=True),
    Column("status", String(16), nullable=False, index=True),
    Column("encoding_state", String(16), nullable=False, default="UNENCODED"),
    Column("control_point_id", String(64), nullable=True),
    Column("salt", String(32), nullable=True),
    Column("checksum", String(32), nullable=True),
    Column("activation_date", DateTime, nullable=True),
    Column("encoding_date", DateTime, nullable=True),
    Column("shipped_date", DateTime, nullable=True),
    Column("delivered_date", DateTime, nullable=True),
    Column("first_scan_date", DateTime, nullable=True),
    Column("last_scan_date", DateTime, nullable=True),
    Column("sav_reason", Text, nullable=True),
    Column("replacement_chip_id", Integer, ForeignKey("rfid_chips.id"), nullable=True),
    Column("created_by", String(64), nullable=True),
    Column("created_at", DateTime, nullable=True),
    Column("updated_at", DateTime, nullable=True),
)

rfid_chip_status_history = Table(
    "rfid_chip_status_history", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("rfid_chip_id", Integer, ForeignKey("rfid_chips.id"), nullable=False, index=True),
    Column("from_status", String(16), nullable=False),
    Column("to_status", String(16), nullable=False),
    Column("changed_by", String(64), nullable=False),
    Column("changed_at", DateTime, nullable=False),
    Column("notes", Text, nullable=True),
)

chip_security_log = Table(
    "chip_security_log", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("chip_id", String(16), nullable=True, index=True),
    Column("uid", String(32), nullable=True),
    Column("category", String(32), nullable=False, index=True),
    Column("source", String(16), nullable=False),
    Column("message", Text, nullable=True),
    Column("created_at", DateTime, nullable=False),
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def for_update(conn: Connection) -> str:
    """Row-lock suffix for SELECTs; SQLite has no FOR UPDATE."""
    return "" if conn.dialect.name == "sqlite" else " FOR UPDATE"


class DatabaseManager:
    """Manages database connections and transactions."""

    def __init__(self, url: Optional[str] = None):
        self.url = url or config.DB_URL
        if self.url.startswith("sqlite"):
            self.engine: Engine = create_engine(
                self.url,
                connect_args={"check_same_thread": False, "timeout": 30},
                future=True,
            )
        else:
            self.engine = create_engine(
                self.url,
                poolclass=QueuePool,
                pool_size=config.DB_POOL_SIZE,
                max_overflow=config.DB_MAX_OVERFLOW,
                pool_pre_ping=True,
                isolation_level="READ COMMITTED",
                future=True,
            )

    def create_schema(self) -> None:
        """Create tables and the default stock pool row if missing."""
        metadata.create_all(self.engine)
        with self.get_connection() as conn:
            exists = conn.execute(
                text("SELECT id FROM stock_pools WHERE name = :name"), {"name": "default"}
            ).first()
            if not exists:
                conn.execute(text("INSERT INTO stock_pools (name) VALUES (:name)"), {"name": "default"})
        logger.info("Database schema ready on %s", self.engine.url.render_as_string(hide_password=True))

    @contextmanager
    def get_connection(self):
        """Get a database connection with automatic commit/rollback."""
        with self.engine.begin() as conn:
            yield conn

    def fetch_one(self, query: str, params: dict = None):
        """Fetch a single result."""
        with self.get_connection() as conn:
            result = conn.execute(text(query), params or {})
            return result.mappings().first()

    def fetch_all(self, query: str, params: dict = None):
        """Fetch all results."""
        with self.get_connection() as conn:
            result = conn.execute(text(query), params or {})
            return result.mappings().all()

# Global database instance
db_manager = DatabaseManager()
