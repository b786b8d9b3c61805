# =======================================================================================
# chipvault/services/__init__.py - Services Package
# =======================================================================================
# chip_service and station_service sit on top of chipvault.protocol and are
# imported from their modules directly.
from .checksum import ChecksumService
from .key_derivation import KeyDerivationService
from .lifecycle import LifecycleStateMachine
from .security_log import SecurityLogService
from .stock_ledger import StockReservationLedger

__all__ = [
    "ChecksumService", "KeyDerivationService", "LifecycleStateMachine",
    "SecurityLogService", "StockReservationLedger",
]
