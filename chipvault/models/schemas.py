# =======================================================================================
# chipvault/models/schemas.py - Pydantic Models
# =======================================================================================
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field
from .enums import ChipStatus, EncodingState, EncodingStep, SecurityCategory


# ========== Chip records ==========
class ChipRecord(BaseModel):
    """Chip as exposed over the API (salt and checksum stay server-side)."""
    id: int
    chip_id: str
    uid: str
    status: ChipStatus
    encoding_state: EncodingState
    is_encoded: bool
    customer_id: Optional[str] = None
    order_id: Optional[int] = None
    packaging_code: Optional[str] = None
    control_point_id: Optional[str] = None
    activation_date: Optional[datetime] = None
    encoding_date: Optional[datetime] = None
    shipped_date: Optional[datetime] = None
    delivered_date: Optional[datetime] = None
    first_scan_date: Optional[datetime] = None
    last_scan_date: Optional[datetime] = None
    sav_reason: Optional[str] = None
    replacement_chip_id: Optional[int] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class StatusHistoryEntry(BaseModel):
    from_status: ChipStatus
    to_status: ChipStatus
    changed_by: str
    changed_at: datetime
    notes: Optional[str] = None


class RegisterChipRequest(BaseModel):
    uid: str = Field(..., min_length=8, max_length=32, description="Factory serial (hex)")
    chip_id: Optional[str] = Field(None, max_length=16, description="Leave empty to generate one")
    actor: str = Field(..., min_length=1, max_length=64)


class ChipCountResponse(BaseModel):
    order_id: int
    count: int


class SecurityEvent(BaseModel):
    chip_id: Optional[str] = None
    uid: Optional[str] = None
    category: SecurityCategory
    source: str
    message: Optional[str] = None
    created_at: datetime


class ChipInfoResponse(BaseModel):
    uid: str
    registered: bool
    is_encoded: bool
    message: str
    chip_id: Optional[str] = None
    status: Optional[ChipStatus] = None
    encoding_state: Optional[EncodingState] = None
    customer_id: Optional[str] = None
    control_point_id: Optional[str] = None


# ========== Encoding (workshop) ==========
class RequestEncodingRequest(BaseModel):
    uid: str = Field(..., min_length=8, max_length=32)


class EncodingParametersResponse(BaseModel):
    uid: str
    chip_id: str
    salt: str
    checksum: str
    chip_key: str


class ConfirmEncodingRequest(BaseModel):
    uid: str
    chip_id: str
    checksum: str = Field(..., min_length=32, max_length=32)
    actor: str = Field(..., min_length=1, max_length=64)


class EncodingFailureReport(BaseModel):
    uid: str
    failed_step: EncodingStep
    completed_steps: List[EncodingStep] = Field(default_factory=list)
    locked_sectors: List[int] = Field(default_factory=list)
    message: Optional[str] = None


class EncodingFailureResponse(BaseModel):
    chip_id: str
    encoding_state: EncodingState
    retryable: bool


# ========== Mobile ==========
class ActivateChipRequest(BaseModel):
    uid: str
    chip_id: str = Field(..., description="Chip id read from the public block")
    block4: str = Field(..., description="Block 4 as 32 hex characters")
    block8: str = Field(..., description="Block 8 as 32 hex characters")
    customer_id: Optional[str] = None
    control_point_id: Optional[str] = None
    actor: str = Field("mobile", min_length=1, max_length=64)


class ActivateChipResponse(BaseModel):
    chip_id: str
    uid: str
    status: ChipStatus
    activated: bool
    activation_date: Optional[datetime] = None
    control_point_id: Optional[str] = None
    customer_id: Optional[str] = None


class WhitelistEntry(BaseModel):
    chip_id: str
    control_point_id: Optional[str] = None
    activated_at: Optional[datetime] = None
    status: ChipStatus


class WhitelistResponse(BaseModel):
    customer_id: str
    chips: List[WhitelistEntry]
    last_updated: datetime


# ========== Lifecycle ==========
class TransitionRequest(BaseModel):
    new_status: ChipStatus
    actor: str = Field(..., min_length=1, max_length=64)
    notes: Optional[str] = None


class TransitionResponse(BaseModel):
    id: int
    chip_id: str
    from_status: ChipStatus
    to_status: ChipStatus
    changed_by: str
    changed_at: datetime
    notes: Optional[str] = None


class ActorRequest(BaseModel):
    actor: str = Field(..., min_length=1, max_length=64)
    notes: Optional[str] = None


class ConfirmDeliveryRequest(BaseModel):
    packaging_code: str
    actor: str = Field(..., min_length=1, max_length=64)


class ReasonRequest(BaseModel):
    reason: str
    actor: str = Field(..., min_length=1, max_length=64)


class ReplaceRequest(BaseModel):
    replacement_chip_id: int
    actor: str = Field(..., min_length=1, max_length=64)
    notes: Optional[str] = None


class AssignOrderRequest(BaseModel):
    order_id: int
    actor: str = Field(..., min_length=1, max_length=64)


# ========== Stock ==========
class StockStatistics(BaseModel):
    total_stock: int
    reserved_stock: int
    available_stock: int
    by_status: Dict[str, int]


class ReservationResponse(BaseModel):
    order_id: int
    reserved: bool
    quantity: int
    prepared_at: Optional[datetime] = None
    available_after: int


class ReleaseResponse(BaseModel):
    order_id: int
    released: bool


class ReconcileResponse(BaseModel):
    order_id: int
    assigned: int
    quantity: int
    reservation_cleared: bool


# ========== Readers ==========
class ReaderInfo(BaseModel):
    name: str
    busy: bool


class ReaderWaitRequest(BaseModel):
    timeout: Optional[float] = Field(None, gt=0, le=300)


class StationEncodeRequest(BaseModel):
    actor: str = Field(..., min_length=1, max_length=64)
    timeout: Optional[float] = Field(None, gt=0, le=300)


class StationEncodeResponse(BaseModel):
    reader: str
    chip: ChipRecord
    completed_steps: List[EncodingStep]


class StationVerifyResponse(BaseModel):
    reader: str
    verified: bool
    chip_id: str
    uid: str
    status: ChipStatus


# ========== Health ==========
class HealthResponse(BaseModel):
    status: str
    dataAvailable: bool
    message: Optional[str] = None
