# =======================================================================================
# chipvault/api/routes/readers.py - Attached Reader Endpoints
# =======================================================================================
from typing import List, Optional
from fastapi import APIRouter, Depends
from ...models.schemas import (
    ChipInfoResponse, ReaderInfo, ReaderWaitRequest, StationEncodeRequest,
    StationEncodeResponse, StationVerifyResponse,
)
from ...services.station_service import StationService
from ..dependencies import get_station_service

router = APIRouter()


class ReaderWaitResponse(ChipInfoResponse):
    reader: str


@router.get("/readers", response_model=List[ReaderInfo])
def list_readers(station: StationService = Depends(get_station_service)):
    return station.list_readers()


@router.post("/readers/{name}/wait", response_model=ReaderWaitResponse)
def wait_for_tag(name: str, request: Optional[ReaderWaitRequest] = None,
                 station: StationService = Depends(get_station_service)):
    return station.wait_for_tag(name, request.timeout if request else None)


@router.post("/readers/{name}/encode", response_model=StationEncodeResponse)
def encode(name: str, request: StationEncodeRequest,
           station: StationService = Depends(get_station_service)):
    """Issue parameters, write and lock the tag on the reader, then confirm it."""
    return station.encode(name, request.actor, request.timeout)


@router.post("/readers/{name}/verify", response_model=StationVerifyResponse)
def verify(name: str, request: Optional[ReaderWaitRequest] = None,
           station: StationService = Depends(get_station_service)):
    return station.verify(name, request.timeout if request else None)
