# =======================================================================================
# chipvault/models/enums.py - Enums and Constants
# =======================================================================================
from enum import Enum
from typing import Literal

# Type aliases for better type hints
EventSource = Literal["READER", "MOBILE"]

class ChipStatus(str, Enum):
    """Lifecycle states of a physical chip."""
    EN_STOCK = "EN_STOCK"
    EN_TRANSIT = "EN_TRANSIT"
    EN_ATELIER = "EN_ATELIER"
    INACTIVE = "INACTIVE"
    EN_LIVRAISON = "EN_LIVRAISON"
    LIVREE = "LIVREE"
    ACTIVE = "ACTIVE"
    RETOUR_SAV = "RETOUR_SAV"
    RECEPTION_SAV = "RECEPTION_SAV"
    REMPLACEE = "REMPLACEE"
    ARCHIVEE = "ARCHIVEE"

class EncodingState(str, Enum):
    """What has been written to the physical tag for a chip record."""
    UNENCODED = "UNENCODED"
    ISSUED = "ISSUED"        # parameters handed to a workstation, tag not confirmed yet
    ENCODED = "ENCODED"      # data blocks written, trailers untouched
    PROTECTED = "PROTECTED"
    PARTIAL = "PARTIAL"      # at least one trailer rewritten, encoding incomplete

class EncodingStep(str, Enum):
    READ_UID = "READ_UID"
    WRITE_PUBLIC_ID = "WRITE_PUBLIC_ID"
    WRITE_PROTECTED_ID = "WRITE_PROTECTED_ID"
    WRITE_CHECKSUM = "WRITE_CHECKSUM"
    LOCK_SECTOR_1 = "LOCK_SECTOR_1"
    LOCK_SECTOR_2 = "LOCK_SECTOR_2"

class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

class SecurityCategory(str, Enum):
    """Categories written to chip_security_log."""
    VERIFIED = "VERIFIED"
    AUTHENTICATION_FAILURE = "AUTHENTICATION_FAILURE"   # possible clone
    CHECKSUM_MISMATCH = "CHECKSUM_MISMATCH"             # possible corruption / tampering
    CHIP_ID_MISMATCH = "CHIP_ID_MISMATCH"
    UID_MISMATCH = "UID_MISMATCH"
    ENCODING_PARTIAL = "ENCODING_PARTIAL"
