import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import quote, urlencode

from sqlalchemy.exc import SQLAlchemyError

from pagepay.config import GatewayConfig
from pagepay.errors import CallbackAuthError, PaymentError, ValidationError
from pagepay.models.order import Order, format_amount, utcnow, validate_order_fields
from pagepay.services.order_store import OrderStore
from pagepay.services.signature_service import SignatureService
from pagepay.types.order_types import (
    TRADE_STATUS_TARGETS,
    CallbackResult,
    OrderStats,
    OrderStatus,
    PaymentUrlResult,
)

logger = logging.getLogger("payment-service")

PAGE_PAY_METHOD = "alipay.trade.page.pay"
PRODUCT_CODE = "FAST_INSTANT_TRADE_PAY"
CHARSET = "utf-8"
SIGN_TYPE = "RSA2"
API_VERSION = "1.0"
TIMEOUT_EXPRESS = "30m"

NOTIFY_PATH = "/alipay/notify"
RETURN_PATH = "/alipay/return"

_UNKNOWN = object()


def _pick(info: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in info:
            return info[key]
    return None


def _strip(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


class PaymentService:
    """Creates page-pay orders and reconciles them against gateway callbacks.

    Only the asynchronous notify channel, after its signature has been
    verified, ever changes order state. The return channel is read-only.
    ``skip_return_signature`` disables return-path verification for local
    redirect testing and must be passed explicitly; it is never derived from
    the environment.
    """

    def __init__(
        self,
        config: GatewayConfig,
        store: Optional[OrderStore] = None,
        signature_service: Optional[SignatureService] = None,
        on_paid: Optional[Callable[[Order], None]] = None,
        skip_return_signature: bool = False,
    ):
        self.config = config
        self.store = store or OrderStore(config.database_url)
        self.signature_service = signature_service or SignatureService()
        self.on_paid = on_paid
        self.skip_return_signature = skip_return_signature
        if skip_return_signature:
            logger.warning("[PaymentService] return callback signature verification is DISABLED")

    def initialize(self) -> None:
        self.store.initialize()

    # Order creation and redirect URL

    def create_payment(self, order_info: Mapping[str, Any]) -> Order:
        fields = self._order_fields(order_info)
        order = self.store.create(fields)
        logger.info(f"[PaymentService] payment_created: {order.out_trade_no} ({order.id})")
        return order

    def generate_payment_url(self, order_info: Any, callback_base_url: Optional[str] = None) -> str:
        if isinstance(order_info, Order):
            fields = {
                "out_trade_no": order_info.out_trade_no,
                "subject": order_info.subject,
                "total_amount": order_info.total_amount,
                "body": order_info.body,
            }
        else:
            fields = self._order_fields(order_info)

        params = self._build_payment_params(fields, callback_base_url)
        signature = self.signature_service.sign(params, self.config.private_key)
        url = self._build_payment_url(params, signature)
        logger.info(f"[PaymentService] payment_url_generated: {fields['out_trade_no']}")
        return url

    def create_payment_and_generate_url(
        self,
        order_info: Mapping[str, Any],
        callback_base_url: Optional[str] = None,
    ) -> PaymentUrlResult:
        order = self.create_payment(order_info)
        try:
            url = self.generate_payment_url(order, callback_base_url)
        except PaymentError as e:
            # The order stays pending; the URL can be generated again later.
            logger.error(f"[PaymentService] payment_url failed after create: {order.out_trade_no} — {e}")
            raise
        return PaymentUrlResult(order=order, payment_url=url)

    # Gateway callbacks

    def handle_notify_callback(self, payload: Mapping[str, Any]) -> CallbackResult:
        try:
            self._check_callback(payload, require_trade_status=True, verify_signature=True)
            return self._apply_notification(payload)
        except CallbackAuthError as e:
            logger.warning(f"[PaymentService] notify rejected: {e.message}")
            return CallbackResult(False, e.message)
        except (PaymentError, SQLAlchemyError) as e:
            logger.error(f"[PaymentService] notify failed: {_pick(payload, 'out_trade_no')} — {e}")
            return CallbackResult(False, f"notify processing failed: {e}")

    def handle_return_callback(self, payload: Mapping[str, Any]) -> CallbackResult:
        try:
            self._check_callback(
                payload,
                require_trade_status=False,
                verify_signature=not self.skip_return_signature,
            )
            if self.skip_return_signature:
                logger.warning(f"[PaymentService] return signature skipped: {payload.get('out_trade_no')}")

            order = self.store.get_by_out_trade_no(payload["out_trade_no"])
            if order is None:
                return CallbackResult(False, f"order not found: {payload['out_trade_no']}")

            logger.info(f"[PaymentService] return received: {order.out_trade_no} status={order.status.value}")
            return CallbackResult(True, "return processed", order)
        except CallbackAuthError as e:
            logger.warning(f"[PaymentService] return rejected: {e.message}")
            return CallbackResult(False, e.message)
        except (PaymentError, SQLAlchemyError) as e:
            logger.error(f"[PaymentService] return failed: {e}")
            return CallbackResult(False, f"return processing failed: {e}")

    # Queries and administration

    def query_payment_status(self, out_trade_no: str) -> CallbackResult:
        order = self.store.get_by_out_trade_no(out_trade_no)
        if order is None:
            return CallbackResult(False, f"order not found: {out_trade_no}")
        return CallbackResult(True, order.status.value, order)

    def get_order(self, order_id: str) -> Optional[Order]:
        return self.store.get_by_id(order_id)

    def get_order_by_out_trade_no(self, out_trade_no: str) -> Optional[Order]:
        return self.store.get_by_out_trade_no(out_trade_no)

    def list_orders(self, status: Any = None, limit: Optional[int] = None, offset: int = 0) -> List[Order]:
        return self.store.list_orders(status=status, limit=limit, offset=offset)

    def get_stats(self) -> OrderStats:
        return self.store.stats()

    def update_order_status(self, order_id: str, new_status: Any) -> Order:
        order = self.store.update_status(order_id, new_status)
        if order.is_paid():
            self._run_on_paid(order)
        return order

    def get_payment_config(self) -> Dict[str, Any]:
        return self.config.public_view()

    # Internals

    def _order_fields(self, order_info: Mapping[str, Any]) -> Dict[str, Any]:
        if not isinstance(order_info, Mapping):
            raise ValidationError(["order info must be a mapping"])

        subject = _strip(_pick(order_info, "subject"))
        body = _strip(_pick(order_info, "body"))
        fields = {
            "out_trade_no": _strip(_pick(order_info, "out_trade_no", "outTradeNo")),
            "subject": subject,
            "total_amount": _pick(order_info, "total_amount", "totalAmount"),
            "body": body or subject,
        }
        _, violations = validate_order_fields(**fields)
        if violations:
            logger.info(f"[PaymentService] order rejected: {fields['out_trade_no']} — {violations}")
            raise ValidationError(violations)
        return fields

    def _build_payment_params(self, fields: Dict[str, Any], callback_base_url: Optional[str]) -> Dict[str, str]:
        cents, _ = validate_order_fields(**fields)
        biz_content = {
            "out_trade_no": fields["out_trade_no"],
            "product_code": PRODUCT_CODE,
            "total_amount": format_amount(cents),
            "subject": fields["subject"],
            "body": fields["body"] or fields["subject"],
            "timeout_express": TIMEOUT_EXPRESS,
        }
        params = {
            "app_id": self.config.app_id,
            "method": PAGE_PAY_METHOD,
            "charset": CHARSET,
            "sign_type": SIGN_TYPE,
            "timestamp": utcnow().strftime("%Y-%m-%d %H:%M:%S"),
            "version": API_VERSION,
            "biz_content": json.dumps(biz_content, ensure_ascii=False, separators=(",", ":")),
        }

        base = callback_base_url.rstrip("/") if callback_base_url else None
        notify_url = self.config.notify_url or (base + NOTIFY_PATH if base else None)
        return_url = self.config.return_url or (base + RETURN_PATH if base else None)
        if notify_url:
            params["notify_url"] = notify_url
        if return_url:
            params["return_url"] = return_url
        return params

    def _build_payment_url(self, params: Dict[str, str], signature: str) -> str:
        query = urlencode(sorted({**params, "sign": signature}.items()), quote_via=quote)
        return f"{self.config.gateway_url}?{query}"

    def _check_callback(self, payload: Any, require_trade_status: bool, verify_signature: bool) -> None:
        if not isinstance(payload, Mapping) or not payload:
            raise CallbackAuthError("invalid callback payload")

        required = ["out_trade_no", "trade_no"]
        if require_trade_status:
            required.append("trade_status")
        missing = [name for name in required if not payload.get(name)]
        if missing:
            raise CallbackAuthError(f"missing required fields: {', '.join(missing)}")

        optional = [name for name in ("app_id", "buyer_logon_id", "notify_id") if payload.get(name) is not None]
        bad_types = [name for name in required + optional if not isinstance(payload[name], str)]
        if bad_types:
            raise CallbackAuthError(f"invalid field type: {', '.join(bad_types)}")

        app_id = payload.get("app_id")
        if app_id and app_id != self.config.app_id:
            raise CallbackAuthError("app_id mismatch")

        if verify_signature:
            result = self.signature_service.verify_callback(payload, self.config.public_key)
            if not result.valid:
                raise CallbackAuthError(f"signature verification failed: {result.reason}")

    def _apply_notification(self, payload: Mapping[str, Any]) -> CallbackResult:
        out_trade_no = payload["out_trade_no"]
        trade_status = payload["trade_status"]
        notify_id = payload.get("notify_id")
        became_paid = False

        with self.store.locked():
            if notify_id and self.store.is_notification_processed(notify_id):
                logger.info(f"[PaymentService] notify already processed: {out_trade_no} ({notify_id})")
                return CallbackResult(True, "notification already processed",
                                      self.store.get_by_out_trade_no(out_trade_no))

            order = self.store.get_by_out_trade_no(out_trade_no)
            if order is None:
                logger.error(f"[PaymentService] notify for unknown order: {out_trade_no}")
                return CallbackResult(False, f"order not found: {out_trade_no}")

            trade_no = payload["trade_no"]
            if order.trade_no and order.trade_no != trade_no:
                # trade_no is set once; a conflicting attribution never rewrites it.
                logger.warning(
                    f"[PaymentService] conflicting trade_no for {out_trade_no}: "
                    f"recorded={order.trade_no} received={trade_no}"
                )
            else:
                buyer_logon_id = payload.get("buyer_logon_id") or order.buyer_logon_id
                order = self.store.set_gateway_info(order.id, trade_no, buyer_logon_id)

            target = TRADE_STATUS_TARGETS.get(trade_status, _UNKNOWN)
            if target is _UNKNOWN:
                logger.warning(f"[PaymentService] unknown trade_status {trade_status!r}: {out_trade_no}")
            elif target is None:
                logger.info(f"[PaymentService] awaiting buyer payment: {out_trade_no}")
            elif order.can_pay():
                order = self.store.update_status(order.id, target)
                became_paid = target is OrderStatus.PAID
                logger.info(f"[PaymentService] order {target.value}: {out_trade_no}")
            else:
                logger.info(
                    f"[PaymentService] notify ignored, order already {order.status.value}: {out_trade_no}"
                )

            if notify_id:
                self.store.mark_notification_processed(notify_id, out_trade_no, order.id)

        if became_paid:
            self._run_on_paid(order)
        return CallbackResult(True, "notification processed", order)

    def _run_on_paid(self, order: Order) -> None:
        if self.on_paid is None:
            return
        try:
            self.on_paid(order)
        except Exception:
            # A failing hook never turns a settled payment into a gateway retry.
            logger.exception(f"[PaymentService] on_paid hook failed: {order.out_trade_no}")
