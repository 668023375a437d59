import logging
import threading
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from pagepay.db.models import Base, Event, OrderRecord, ProcessedNotification
from pagepay.db.session import DEFAULT_DATABASE_URL, make_engine, make_session_factory
from pagepay.errors import (
    DuplicateOrderError,
    OrderNotFoundError,
    PaymentError,
    StoreError,
    StoreInitError,
)
from pagepay.models.order import Order, utcnow
from pagepay.types.order_types import OrderStats, OrderStatus

logger = logging.getLogger("order-store")


def log_event(db, order_id: Optional[str], event_type: str, payload: dict = None, ts=None) -> None:
    db.add(Event(
        order_id=order_id,
        type=event_type,
        payload_json=payload or {},
        ts=ts or utcnow(),
    ))


def _to_order(record: OrderRecord) -> Order:
    amount = None if record.amount_cents is None else Decimal(record.amount_cents) / 100
    return Order(
        id=record.id,
        out_trade_no=record.out_trade_no,
        subject=record.subject,
        body=record.body,
        total_amount=amount,
        status=record.status,
        created_at=record.created_at,
        updated_at=record.updated_at,
        trade_no=record.trade_no,
        buyer_logon_id=record.buyer_logon_id,
        payment_time=record.payment_time,
    )


def _copy_to_record(order: Order, record: OrderRecord) -> None:
    record.out_trade_no = order.out_trade_no
    record.subject = order.subject
    record.body = order.body
    record.amount_cents = order.amount_cents
    record.status = order.status.value
    record.trade_no = order.trade_no
    record.buyer_logon_id = order.buyer_logon_id
    record.payment_time = order.payment_time
    record.created_at = order.created_at
    record.updated_at = order.updated_at


class OrderStore:
    """Orders kept in a SQLAlchemy database with an in-memory index in front.

    The database is the source of truth. The index is rebuilt from it by
    ``initialize()`` and only changes after a mutation has been committed, so a
    failed write never leaves memory ahead of disk. All mutation happens under
    one re-entrant lock; ``locked()`` lets callers extend it over a
    read-check-mutate sequence.
    """

    def __init__(self, database_url: str = DEFAULT_DATABASE_URL, engine=None):
        self.database_url = database_url
        self._engine = engine or make_engine(database_url)
        self._session_factory = make_session_factory(self._engine)
        self._lock = threading.RLock()
        self._orders: Dict[str, Order] = {}
        self._by_out_trade_no: Dict[str, str] = {}
        self._by_trade_no: Dict[str, str] = {}
        self._initialized = False

    def initialize(self) -> None:
        with self._lock:
            if self._initialized:
                return
            try:
                Base.metadata.create_all(self._engine)
                with self._session_factory() as db:
                    records = db.query(OrderRecord).order_by(OrderRecord.created_at).all()
            except SQLAlchemyError as e:
                logger.error(f"[OrderStore] initialize failed: {self.database_url} — {e}")
                raise StoreInitError(f"Failed to initialize order store: {e}") from e

            orders = []
            for record in records:
                try:
                    orders.append(_to_order(record))
                except PaymentError as e:
                    logger.error(f"[OrderStore] corrupt record {record.id}: {e.message}")
                    raise StoreInitError(
                        f"Corrupt order record {record.id}: {e.message}",
                        details={"order_id": record.id},
                    ) from e

            self._reset_index()
            for order in orders:
                self._index(order)
            self._initialized = True
            logger.info(f"[OrderStore] initialized: {len(self._orders)} orders loaded")

    def close(self) -> None:
        self._engine.dispose()

    def locked(self):
        self._ensure_initialized()
        return self._lock

    def create(self, fields: Dict[str, Any]) -> Order:
        self._ensure_initialized()
        with self._lock:
            out_trade_no = fields.get("out_trade_no")
            if out_trade_no in self._by_out_trade_no:
                raise DuplicateOrderError(out_trade_no)

            order = Order(**fields)
            self._write(order, "ORDER_CREATED", {
                "out_trade_no": order.out_trade_no,
                "total_amount": str(order.total_amount),
                "status": order.status.value,
            })
            logger.info(f"[OrderStore] order_created: {order.out_trade_no} ({order.id})")
            return order.copy()

    def get_by_id(self, order_id: str) -> Optional[Order]:
        self._ensure_initialized()
        with self._lock:
            order = self._orders.get(order_id)
            return order.copy() if order else None

    def get_by_out_trade_no(self, out_trade_no: str) -> Optional[Order]:
        self._ensure_initialized()
        with self._lock:
            order_id = self._by_out_trade_no.get(out_trade_no)
            return self._orders[order_id].copy() if order_id else None

    def get_by_trade_no(self, trade_no: str) -> Optional[Order]:
        self._ensure_initialized()
        with self._lock:
            order_id = self._by_trade_no.get(trade_no)
            return self._orders[order_id].copy() if order_id else None

    def list_orders(
        self,
        status: Any = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Order]:
        self._ensure_initialized()
        with self._lock:
            orders = list(self._orders.values())

        if status is not None:
            wanted = OrderStatus.parse(status)
            orders = [o for o in orders if o.status is wanted]

        orders.sort(key=lambda o: o.created_at, reverse=True)
        if offset:
            orders = orders[offset:]
        if limit is not None:
            orders = orders[:limit]
        return [o.copy() for o in orders]

    def update_status(self, order_id: str, new_status: Any) -> Order:
        self._ensure_initialized()
        with self._lock:
            current = self._require(order_id)
            updated = current.copy()
            updated.update_status(new_status)
            self._write(updated, "STATUS_CHANGED", {
                "from": current.status.value,
                "to": updated.status.value,
            })
            logger.info(
                f"[OrderStore] status_changed: {updated.out_trade_no} "
                f"{current.status.value} -> {updated.status.value}"
            )
            return updated.copy()

    def set_gateway_info(self, order_id: str, trade_no: Optional[str], buyer_logon_id: Optional[str]) -> Order:
        self._ensure_initialized()
        with self._lock:
            updated = self._require(order_id).copy()
            updated.set_gateway_info(trade_no, buyer_logon_id)
            self._write(updated, "GATEWAY_INFO_SET", {
                "trade_no": trade_no,
                "buyer_logon_id": buyer_logon_id,
            })
            return updated.copy()

    def delete(self, order_id: str) -> bool:
        self._ensure_initialized()
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                return False
            try:
                with self._session_factory() as db:
                    db.query(OrderRecord).filter(OrderRecord.id == order_id).delete()
                    log_event(db, order_id, "ORDER_DELETED", {"out_trade_no": order.out_trade_no})
                    db.commit()
            except SQLAlchemyError as e:
                raise StoreError(f"Failed to delete order {order_id}: {e}") from e
            self._unindex(order)
            logger.info(f"[OrderStore] order_deleted: {order.out_trade_no}")
            return True

    def clear(self) -> None:
        self._ensure_initialized()
        with self._lock:
            try:
                with self._session_factory() as db:
                    count = db.query(OrderRecord).delete()
                    db.query(ProcessedNotification).delete()
                    log_event(db, None, "ORDERS_CLEARED", {"count": count})
                    db.commit()
            except SQLAlchemyError as e:
                raise StoreError(f"Failed to clear orders: {e}") from e
            self._reset_index()
            logger.warning(f"[OrderStore] cleared {count} orders")

    def stats(self) -> OrderStats:
        self._ensure_initialized()
        stats = OrderStats()
        with self._lock:
            for order in self._orders.values():
                stats.total += 1
                stats.counts[order.status.value] += 1
                stats.total_amount_cents += order.amount_cents
                if order.is_paid():
                    stats.paid_amount_cents += order.amount_cents
        return stats

    def events(self, order_id: Optional[str] = None) -> List[dict]:
        self._ensure_initialized()
        with self._session_factory() as db:
            query = db.query(Event)
            if order_id is not None:
                query = query.filter(Event.order_id == order_id)
            return [
                {"id": e.id, "order_id": e.order_id, "type": e.type, "payload": e.payload_json, "ts": e.ts}
                for e in query.order_by(Event.id).all()
            ]

    def is_notification_processed(self, notify_id: str) -> bool:
        self._ensure_initialized()
        with self._session_factory() as db:
            return db.get(ProcessedNotification, notify_id) is not None

    def mark_notification_processed(self, notify_id: str, out_trade_no: str, order_id: Optional[str] = None) -> bool:
        """Record a gateway notification id; False if it was already recorded."""
        self._ensure_initialized()
        with self._lock:
            try:
                with self._session_factory() as db:
                    db.add(ProcessedNotification(notify_id=notify_id, out_trade_no=out_trade_no))
                    log_event(db, order_id, "NOTIFICATION_PROCESSED", {"notify_id": notify_id})
                    db.commit()
            except IntegrityError:
                return False
            except SQLAlchemyError as e:
                raise StoreError(f"Failed to record notification {notify_id}: {e}") from e
            return True

    def __len__(self) -> int:
        self._ensure_initialized()
        return len(self._orders)

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            self.initialize()

    def _require(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def _write(self, order: Order, event_type: str, payload: dict) -> None:
        try:
            with self._session_factory() as db:
                record = db.get(OrderRecord, order.id)
                if record is None:
                    record = OrderRecord(id=order.id)
                    db.add(record)
                _copy_to_record(order, record)
                log_event(db, order.id, event_type, payload)
                db.commit()
        except IntegrityError as e:
            raise DuplicateOrderError(order.out_trade_no) from e
        except SQLAlchemyError as e:
            logger.error(f"[OrderStore] write failed: {order.out_trade_no} — {e}")
            raise StoreError(f"Failed to persist order {order.id}: {e}") from e
        self._index(order)

    def _index(self, order: Order) -> None:
        previous = self._orders.get(order.id)
        if previous is not None and previous.trade_no and previous.trade_no != order.trade_no:
            self._by_trade_no.pop(previous.trade_no, None)
        self._orders[order.id] = order
        self._by_out_trade_no[order.out_trade_no] = order.id
        if order.trade_no:
            self._by_trade_no[order.trade_no] = order.id

    def _unindex(self, order: Order) -> None:
        self._orders.pop(order.id, None)
        self._by_out_trade_no.pop(order.out_trade_no, None)
        if order.trade_no and self._by_trade_no.get(order.trade_no) == order.id:
            self._by_trade_no.pop(order.trade_no, None)

    def _reset_index(self) -> None:
        self._orders.clear()
        self._by_out_trade_no.clear()
        self._by_trade_no.clear()
