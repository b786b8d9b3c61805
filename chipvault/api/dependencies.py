# =======================================================================================
# chipvault/api/dependencies.py - FastAPI Dependencies
# =======================================================================================
from functools import lru_cache
from fastapi import Depends
from sqlalchemy.engine import Connection
from ..config import config
from ..database import DatabaseManager, db_manager
from ..readers.pool import ReaderPool
from ..services.checksum import ChecksumService
from ..services.chip_service import ChipService
from ..services.key_derivation import KeyDerivationService
from ..services.lifecycle import LifecycleStateMachine
from ..services.security_log import SecurityLogService
from ..services.station_service import StationService
from ..services.stock_ledger import StockReservationLedger

reader_pool = ReaderPool(default_timeout=config.READER_LOCK_TIMEOUT)


def get_db_manager() -> DatabaseManager:
    return db_manager


def get_db_connection(db: DatabaseManager = Depends(get_db_manager)) -> Connection:
    """One transaction per request: committed on success, rolled back on any error."""
    with db.get_connection() as conn:
        yield conn


# Services are built on first use so a missing secret fails the request, not the import.
@lru_cache()
def get_chip_service() -> ChipService:
    return ChipService(
        keys=KeyDerivationService(config.RFID_MASTER_KEY),
        checksums=ChecksumService(config.RFID_SECRET_KEY),
        lifecycle=LifecycleStateMachine(),
        ledger=get_ledger(),
        security=SecurityLogService(db_manager),
        archive_reason_min_words=config.ARCHIVE_REASON_MIN_WORDS,
        chip_id_prefix=config.CHIP_ID_PREFIX,
    )


@lru_cache()
def get_ledger() -> StockReservationLedger:
    return StockReservationLedger(db_manager)


@lru_cache()
def get_station_service() -> StationService:
    return StationService(
        db_manager, reader_pool, get_chip_service(), wait_timeout=config.READER_WAIT_TIMEOUT
    )
