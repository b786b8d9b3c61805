# =======================================================================================
# chipvault/models/__init__.py - Models Package
# =======================================================================================
from .schemas import *
from .enums import *

__all__ = [
    "ChipRecord", "StatusHistoryEntry", "RegisterChipRequest", "ChipInfoResponse",
    "ChipCountResponse", "RequestEncodingRequest", "EncodingParametersResponse", "ConfirmEncodingRequest",
    "EncodingFailureReport", "ActivateChipRequest", "ActivateChipResponse",
    "WhitelistResponse", "TransitionRequest", "StockStatistics", "HealthResponse",
    "ChipStatus", "EncodingState", "EncodingStep", "OrderStatus", "SecurityCategory",
    "SecurityEvent", "EventSource",
]
