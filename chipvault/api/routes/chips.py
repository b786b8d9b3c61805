# =======================================================================================
# chipvault/api/routes/chips.py - Chip Records and Lifecycle Endpoints
# =======================================================================================
from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.engine import Connection
from ...models.enums import ChipStatus
from ...models.schemas import (
    ActorRequest, AssignOrderRequest, ChipCountResponse, ChipInfoResponse, ChipRecord,
    ConfirmDeliveryRequest, ReasonRequest, RegisterChipRequest, ReplaceRequest, StatusHistoryEntry,
    TransitionRequest, TransitionResponse,
)
from ...services.chip_service import ChipService
from ..dependencies import get_chip_service, get_db_connection

router = APIRouter()


@router.post("/chips/register", response_model=ChipRecord, status_code=201)
def register_chip(
    request: RegisterChipRequest,
    conn: Connection = Depends(get_db_connection),
    chips: ChipService = Depends(get_chip_service),
):
    """Register a blank tag received from the supplier."""
    return chips.register_chip(conn, request.uid, request.actor, request.chip_id)


@router.get("/chips", response_model=List[ChipRecord])
def list_chips(
    status: Optional[ChipStatus] = Query(None),
    customer_id: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    conn: Connection = Depends(get_db_connection),
    chips: ChipService = Depends(get_chip_service),
):
    return chips.list_chips(conn, status, customer_id, skip, limit)


@router.get("/chips/count-by-order/{order_id}", response_model=ChipCountResponse)
def count_by_order(order_id: int, conn: Connection = Depends(get_db_connection),
                   chips: ChipService = Depends(get_chip_service)):
    return chips.count_by_order(conn, order_id)


@router.get("/chips/info/{uid}", response_model=ChipInfoResponse)
def chip_info(uid: str, conn: Connection = Depends(get_db_connection),
              chips: ChipService = Depends(get_chip_service)):
    return chips.chip_info(conn, uid)


@router.get("/chips/{chip_pk}", response_model=ChipRecord)
def get_chip(chip_pk: int, conn: Connection = Depends(get_db_connection),
             chips: ChipService = Depends(get_chip_service)):
    return chips.get_chip(conn, chip_pk)


@router.get("/chips/{chip_pk}/status-history", response_model=List[StatusHistoryEntry])
def status_history(chip_pk: int, conn: Connection = Depends(get_db_connection),
                   chips: ChipService = Depends(get_chip_service)):
    return chips.status_history(conn, chip_pk)


@router.post("/chips/{chip_pk}/transition", response_model=TransitionResponse)
def transition(
    chip_pk: int,
    request: TransitionRequest,
    conn: Connection = Depends(get_db_connection),
    chips: ChipService = Depends(get_chip_service),
):
    return chips.transition(conn, chip_pk, request.new_status, request.actor, request.notes)


# ---- lifecycle shortcuts ----

@router.put("/chips/{chip_pk}/assign-order")
def assign_order(chip_pk: int, request: AssignOrderRequest,
                 conn: Connection = Depends(get_db_connection),
                 chips: ChipService = Depends(get_chip_service)):
    return chips.assign_to_order(conn, chip_pk, request.order_id, request.actor)


@router.put("/chips/{chip_pk}/ship", response_model=ChipRecord)
def ship(chip_pk: int, request: ActorRequest,
         conn: Connection = Depends(get_db_connection),
         chips: ChipService = Depends(get_chip_service)):
    return chips.ship(conn, chip_pk, request.actor, request.notes)


@router.put("/chips/{chip_pk}/confirm-delivery", response_model=ChipRecord)
def confirm_delivery(chip_pk: int, request: ConfirmDeliveryRequest,
                     conn: Connection = Depends(get_db_connection),
                     chips: ChipService = Depends(get_chip_service)):
    return chips.confirm_delivery(conn, chip_pk, request.packaging_code, request.actor)


@router.put("/chips/{chip_pk}/request-sav", response_model=ChipRecord)
def request_sav(chip_pk: int, request: ReasonRequest,
                conn: Connection = Depends(get_db_connection),
                chips: ChipService = Depends(get_chip_service)):
    return chips.request_sav(conn, chip_pk, request.reason, request.actor)


@router.put("/chips/{chip_pk}/receive-sav", response_model=ChipRecord)
def receive_sav(chip_pk: int, request: ActorRequest,
                conn: Connection = Depends(get_db_connection),
                chips: ChipService = Depends(get_chip_service)):
    return chips.receive_sav(conn, chip_pk, request.actor, request.notes)


@router.put("/chips/{chip_pk}/replace", response_model=ChipRecord)
def replace(chip_pk: int, request: ReplaceRequest,
            conn: Connection = Depends(get_db_connection),
            chips: ChipService = Depends(get_chip_service)):
    return chips.replace(conn, chip_pk, request.replacement_chip_id, request.actor, request.notes)


@router.put("/chips/{chip_pk}/archive", response_model=ChipRecord)
def archive(chip_pk: int, request: ReasonRequest,
            conn: Connection = Depends(get_db_connection),
            chips: ChipService = Depends(get_chip_service)):
    return chips.archive(conn, chip_pk, request.reason, request.actor)


@router.put("/chips/{chip_pk}/scrap", response_model=ChipRecord)
def scrap(chip_pk: int, request: ReasonRequest,
          conn: Connection = Depends(get_db_connection),
          chips: ChipService = Depends(get_chip_service)):
    return chips.scrap(conn, chip_pk, request.reason, request.actor)
