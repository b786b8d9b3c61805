# =======================================================================================
# chipvault/api/routes/stock.py - Stock and Reservation Endpoints
# =======================================================================================
from fastapi import APIRouter, Depends
from sqlalchemy.engine import Connection
from ...models.schemas import ReconcileResponse, ReleaseResponse, ReservationResponse, StockStatistics
from ...services.stock_ledger import StockReservationLedger
from ..dependencies import get_db_connection, get_ledger

router = APIRouter()


@router.get("/stock", response_model=StockStatistics)
def stock(conn: Connection = Depends(get_db_connection),
          ledger: StockReservationLedger = Depends(get_ledger)):
    return ledger.statistics(conn)


# Reservations open their own transaction: the check and the flag commit together.

@router.post("/orders/{order_id}/reserve", response_model=ReservationResponse)
def reserve(order_id: int, ledger: StockReservationLedger = Depends(get_ledger)):
    return ledger.reserve_stock(order_id)


@router.post("/orders/{order_id}/release", response_model=ReleaseResponse)
def release(order_id: int, ledger: StockReservationLedger = Depends(get_ledger)):
    return ledger.release_reservation(order_id)


@router.post("/orders/{order_id}/reconcile", response_model=ReconcileResponse)
def reconcile(order_id: int, ledger: StockReservationLedger = Depends(get_ledger)):
    return ledger.reconcile_completion(order_id)
