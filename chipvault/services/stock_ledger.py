# =======================================================================================
# chipvault/services/stock_ledger.py - Stock Reservation Ledger
# =======================================================================================
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Optional
from sqlalchemy import text
from sqlalchemy.engine import Connection
from ..database import DatabaseManager, for_update, utcnow
from ..models.enums import ChipStatus, OrderStatus
from ..utils.exceptions import InsufficientStock, InvalidOrderState, OrderNotFound

logger = logging.getLogger(__name__)

DEFAULT_POOL = "default"


class StockReservationLedger:
    """
    Keeps promised chips within physical stock.

    available = unassigned EN_STOCK chips - chips reserved by live orders

    A reservation is a placeholder: every chip linked to the order takes one
    of its places, and once all are taken reconcile_completion clears it.
    Chips leaving stock outside a reservation go through drawing().
    """

    # shared by every ledger in the process; the pool row lock covers other processes
    _reserve_lock = threading.Lock()

    def __init__(self, db: DatabaseManager):
        self.db = db

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------
    @staticmethod
    def total_stock(conn: Connection) -> int:
        return conn.execute(
            text("SELECT COUNT(*) FROM rfid_chips WHERE status = :s AND customer_id IS NULL"),
            {"s": ChipStatus.EN_STOCK.value},
        ).scalar_one()

    @staticmethod
    def reserved_stock(conn: Connection) -> int:
        """Reserved places not yet taken by a linked chip."""
        return conn.execute(
            text("""
                SELECT COALESCE(SUM(CASE WHEN o.chips_quantity > COALESCE(l.n, 0)
                                         THEN o.chips_quantity - COALESCE(l.n, 0) ELSE 0 END), 0)
                FROM orders o
                LEFT JOIN (SELECT order_id, COUNT(*) AS n FROM rfid_chips
                           WHERE order_id IS NOT NULL GROUP BY order_id) l ON l.order_id = o.id
                WHERE o.is_stock_reserved = :yes AND o.status <> :cancelled
            """),
            {"yes": True, "cancelled": OrderStatus.CANCELLED.value},
        ).scalar_one()

    def available_stock(self, conn: Connection) -> int:
        return int(self.total_stock(conn)) - int(self.reserved_stock(conn))

    def statistics(self, conn: Connection) -> Dict[str, Any]:
        rows = conn.execute(
            text("SELECT status, COUNT(*) AS n FROM rfid_chips GROUP BY status")
        ).mappings().all()
        by_status = {s.value: 0 for s in ChipStatus}
        for r in rows:
            by_status[r["status"]] = r["n"]
        total = int(self.total_stock(conn))
        reserved = int(self.reserved_stock(conn))
        return {
            "total_stock": total,
            "reserved_stock": reserved,
            "available_stock": total - reserved,
            "by_status": by_status,
        }

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------
    @staticmethod
    def _lock_pool(conn: Connection) -> None:
        conn.execute(
            text("SELECT id FROM stock_pools WHERE name = :name" + for_update(conn)),
            {"name": DEFAULT_POOL},
        )

    @staticmethod
    def _lock_order(conn: Connection, order_id: int):
        order = conn.execute(
            text("""
                SELECT id, order_number, status, chips_quantity, is_stock_reserved, prepared_at
                FROM orders WHERE id = :id
            """ + for_update(conn)),
            {"id": order_id},
        ).mappings().first()
        if not order:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    @staticmethod
    def linked_count(conn: Connection, order_id: int) -> int:
        return int(conn.execute(
            text("SELECT COUNT(*) FROM rfid_chips WHERE order_id = :id"), {"id": order_id}
        ).scalar_one())

    @contextmanager
    def drawing(self, conn: Connection, quantity: int = 1):
        """
        Take `quantity` unreserved chips out of stock inside the caller's
        transaction. The reservation lock and the pool row lock are held
        while the caller writes; InsufficientStock if the draw would eat
        into another order's reservation.
        """
        with self._reserve_lock:
            self._lock_pool(conn)
            available = self.available_stock(conn)
            if available < quantity:
                logger.warning("Stock draw refused: %d available, %d requested", available, quantity)
                raise InsufficientStock(available=available, requested=quantity)
            yield available

    def reserve_stock(self, order_id: int) -> Dict[str, Any]:
        """Check availability and flag the order reserved as one unit."""
        with self._reserve_lock:
            with self.db.get_connection() as conn:
                self._lock_pool(conn)
                order = self._lock_order(conn, order_id)

                if order["status"] == OrderStatus.CANCELLED.value:
                    raise InvalidOrderState(f"Order {order['order_number']} is cancelled")
                if order["is_stock_reserved"]:
                    return {
                        "order_id": order_id,
                        "reserved": True,
                        "quantity": int(order["chips_quantity"]),
                        "prepared_at": order["prepared_at"],
                        "available_after": self.available_stock(conn),
                    }
                # chips already linked to the order need no place in stock
                requested = int(order["chips_quantity"]) - self.linked_count(conn, order_id)
                if requested <= 0:
                    raise InvalidOrderState(f"Order {order['order_number']} has no chips to reserve")

                available = self.available_stock(conn)
                if available < requested:
                    logger.warning(
                        "Reservation refused for order %s: %d available, %d requested",
                        order["order_number"], available, requested,
                    )
                    raise InsufficientStock(available=available, requested=requested)

                now = utcnow()
                conn.execute(
                    text("""
                        UPDATE orders SET is_stock_reserved = :yes, prepared_at = :now, updated_at = :now
                        WHERE id = :id
                    """),
                    {"yes": True, "now": now, "id": order_id},
                )
        logger.info("Reserved %d chips for order %s", requested, order["order_number"])
        return {
            "order_id": order_id,
            "reserved": True,
            "quantity": requested,
            "prepared_at": now,
            "available_after": available - requested,
        }

    def release_reservation(self, order_id: int) -> Dict[str, Any]:
        """Drop an order's reservation. Releasing twice is a no-op."""
        with self._reserve_lock:
            with self.db.get_connection() as conn:
                order = self._lock_order(conn, order_id)
                if not order["is_stock_reserved"]:
                    return {"order_id": order_id, "released": False}
                conn.execute(
                    text("UPDATE orders SET is_stock_reserved = :no, updated_at = :now WHERE id = :id"),
                    {"no": False, "now": utcnow(), "id": order_id},
                )
        logger.info("Released reservation of order %s", order["order_number"])
        return {"order_id": order_id, "released": True}

    def reconcile_completion(self, order_id: int, conn: Optional[Connection] = None) -> Dict[str, Any]:
        """
        Clear the reservation once the order has all its chips linked.

        Pass the caller's connection when the chip links were written in the
        same, not yet committed, transaction.
        """
        if conn is None:
            with self.db.get_connection() as own:
                return self.reconcile_completion(order_id, own)

        order = self._lock_order(conn, order_id)
        assigned = self.linked_count(conn, order_id)
        quantity = int(order["chips_quantity"])
        cleared = False
        if order["is_stock_reserved"] and assigned >= quantity:
            conn.execute(
                text("UPDATE orders SET is_stock_reserved = :no, updated_at = :now WHERE id = :id"),
                {"no": False, "now": utcnow(), "id": order_id},
            )
            cleared = True
            logger.info("Order %s complete (%d/%d chips); reservation cleared",
                        order["order_number"], assigned, quantity)
        return {
            "order_id": order_id,
            "assigned": assigned,
            "quantity": quantity,
            "reservation_cleared": cleared,
        }
