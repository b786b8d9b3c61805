import pytest
from sqlalchemy import text
from fastapi.testclient import TestClient
from chipvault.database import DatabaseManager, utcnow
from chipvault.models.enums import ChipStatus
from chipvault.readers.memory import MemoryReader, MifareClassicCard
from chipvault.readers.pool import ReaderPool
from chipvault.services.checksum import ChecksumService
from chipvault.services.chip_service import ChipService
from chipvault.services.key_derivation import KeyDerivationService
from chipvault.services.lifecycle import LifecycleStateMachine
from chipvault.services.security_log import SecurityLogService
from chipvault.services.station_service import StationService
from chipvault.services.stock_ledger import StockReservationLedger

MASTER_SECRET = "test-master-secret-0123456789abcdef"
SHARED_SECRET = "test-shared-secret-fedcba9876543210"

ARCHIVE_REASON = "tag cracked during encoding at the workshop bench and cannot be reused"


def make_uid(n: int) -> str:
    """7-byte UID, unique per n."""
    return f"04{n:012X}"


@pytest.fixture
def keys():
    return KeyDerivationService(MASTER_SECRET)


@pytest.fixture
def checksums():
    return ChecksumService(SHARED_SECRET)


@pytest.fixture
def db(tmp_path):
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'chipvault.db'}")
    manager.create_schema()
    yield manager
    manager.engine.dispose()


@pytest.fixture
def lifecycle():
    return LifecycleStateMachine()


@pytest.fixture
def ledger(db):
    return StockReservationLedger(db)


@pytest.fixture
def security(db):
    return SecurityLogService(db)


@pytest.fixture
def chip_service(keys, checksums, lifecycle, ledger, security):
    return ChipService(keys, checksums, lifecycle, ledger, security)


@pytest.fixture
def reader():
    return MemoryReader("bench")


@pytest.fixture
def pool(reader):
    pool = ReaderPool(default_timeout=0.2)
    pool.register(reader)
    return pool


@pytest.fixture
def station(db, pool, chip_service):
    return StationService(db, pool, chip_service, wait_timeout=0.1)


# ---------------------------------------------------------------------------
# Data helpers
# ---------------------------------------------------------------------------
def insert_order(db, quantity, status="PAID", customer_id="CUST-1", reserved=False, number=None):
    with db.get_connection() as conn:
        count = conn.execute(text("SELECT COUNT(*) FROM orders")).scalar_one()
        result = conn.execute(
            text("""
                INSERT INTO orders (order_number, customer_id, status, chips_quantity,
                                    is_stock_reserved, created_at)
                VALUES (:number, :customer, :status, :qty, :reserved, :now)
            """),
            {
                "number": number or f"ORD-{count + 1:04d}", "customer": customer_id,
                "status": status, "qty": quantity, "reserved": reserved, "now": utcnow(),
            },
        )
        return result.lastrowid


def register(db, chip_service, n, actor="stock"):
    with db.get_connection() as conn:
        return chip_service.register_chip(conn, make_uid(n), actor)


def register_many(db, chip_service, count, start=1):
    return [register(db, chip_service, start + i) for i in range(count)]


def advance(db, chip_service, chip_pk, *statuses, actor="operator"):
    with db.get_connection() as conn:
        for status in statuses:
            chip_service.lifecycle.transition(conn, chip_pk, status, actor)


def chip_in_workshop(db, chip_service, n):
    chip = register(db, chip_service, n)
    advance(db, chip_service, chip["id"], ChipStatus.EN_TRANSIT, ChipStatus.EN_ATELIER)
    return chip


def fetch_chip(db, chip_pk):
    return db.fetch_one("SELECT * FROM rfid_chips WHERE id = :id", {"id": chip_pk})


def security_rows(db, category=None):
    query = "SELECT * FROM chip_security_log"
    params = {}
    if category:
        query += " WHERE category = :c"
        params["c"] = category
    return db.fetch_all(query + " ORDER BY id", params)


@pytest.fixture
def encoded_chip(db, chip_service, station, reader):
    """A chip encoded on the bench reader, INACTIVE, with its card on the reader."""
    chip = chip_in_workshop(db, chip_service, 900)
    card = MifareClassicCard(chip["uid"])
    reader.present(card)
    result = station.encode("bench", "workshop")
    return result["chip"], card


@pytest.fixture
def client(db, chip_service, ledger, station, pool, monkeypatch):
    from chipvault import main
    from chipvault.api import dependencies

    monkeypatch.setattr(main, "db_manager", db)
    app = main.create_app()
    app.dependency_overrides[dependencies.get_db_manager] = lambda: db
    app.dependency_overrides[dependencies.get_chip_service] = lambda: chip_service
    app.dependency_overrides[dependencies.get_ledger] = lambda: ledger
    app.dependency_overrides[dependencies.get_station_service] = lambda: station
    return TestClient(app)
