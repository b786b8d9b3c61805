# =======================================================================================
# chipvault/api/routes/encoding.py - Workstation and Mobile Endpoints
# =======================================================================================
from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.engine import Connection
from ...models.schemas import (
    ActivateChipRequest, ActivateChipResponse, ChipRecord, ConfirmEncodingRequest,
    EncodingFailureReport, EncodingFailureResponse, EncodingParametersResponse,
    RequestEncodingRequest, SecurityEvent, WhitelistResponse,
)
from ...services.chip_service import ChipService
from ..dependencies import get_chip_service, get_db_connection

router = APIRouter()


# ---- workshop workstation (writes the tag itself) ----

@router.post("/chips/request-encoding", response_model=EncodingParametersResponse)
def request_encoding(request: RequestEncodingRequest,
                     conn: Connection = Depends(get_db_connection),
                     chips: ChipService = Depends(get_chip_service)):
    return chips.request_encoding(conn, request.uid)


@router.post("/chips/confirm-encoding", response_model=ChipRecord)
def confirm_encoding(request: ConfirmEncodingRequest,
                     conn: Connection = Depends(get_db_connection),
                     chips: ChipService = Depends(get_chip_service)):
    return chips.confirm_encoding(conn, request.uid, request.chip_id, request.checksum, request.actor)


@router.post("/chips/report-encoding-failure", response_model=EncodingFailureResponse)
def report_encoding_failure(request: EncodingFailureReport,
                            conn: Connection = Depends(get_db_connection),
                            chips: ChipService = Depends(get_chip_service)):
    return chips.report_encoding_failure(
        conn,
        request.uid,
        request.failed_step.value,
        request.locked_sectors,
        [s.value for s in request.completed_steps],
        "READER",
        request.message,
    )


# ---- mobile clients ----

@router.post("/chips/activate", response_model=ActivateChipResponse)
def activate_chip(request: ActivateChipRequest,
                  conn: Connection = Depends(get_db_connection),
                  chips: ChipService = Depends(get_chip_service)):
    """Server-side verification of blocks read by a phone, then activation."""
    return chips.activate_chip(
        conn, request.uid, request.chip_id, request.block4, request.block8,
        request.actor, request.customer_id, request.control_point_id,
    )


@router.get("/chips/whitelist/{customer_id}", response_model=WhitelistResponse)
def whitelist(customer_id: str, conn: Connection = Depends(get_db_connection),
              chips: ChipService = Depends(get_chip_service)):
    return chips.whitelist(conn, customer_id)


# ---- security audit ----

@router.get("/security-log", response_model=List[SecurityEvent])
def security_log(chip_id: Optional[str] = Query(None), limit: int = Query(100, ge=1, le=1000),
                 conn: Connection = Depends(get_db_connection),
                 chips: ChipService = Depends(get_chip_service)):
    """Most recent verification and encoding events, newest first."""
    return [dict(r) for r in chips.security.recent(conn, chip_id, limit)]
