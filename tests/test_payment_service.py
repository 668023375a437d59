import json
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from urllib.parse import parse_qsl, urlsplit

import pytest

from pagepay.config import SANDBOX_GATEWAY_URL
from pagepay.errors import DuplicateOrderError, SignatureError, ValidationError
from pagepay.services.payment_service import PaymentService
from pagepay.services.signature_service import SignatureService
from pagepay.types.order_types import OrderStatus

from conftest import APP_ID


def notify_payload(**overrides) -> dict:
    payload = {
        "app_id": APP_ID,
        "out_trade_no": "test_order_123456",
        "trade_no": "2024010122001400001",
        "trade_status": "TRADE_SUCCESS",
        "total_amount": "99.99",
        "buyer_logon_id": "buy***@example.com",
    }
    payload.update(overrides)
    return payload


def url_params(url: str) -> dict:
    return dict(parse_qsl(urlsplit(url).query, keep_blank_values=True))


# Order creation


def test_create_payment(service, order_info):
    order = service.create_payment(order_info)
    assert order.status is OrderStatus.PENDING
    assert order.out_trade_no == "test_order_123456"
    assert order.body == "Test Product"
    assert order.amount_cents == 9999


def test_create_payment_duplicate(service, order_info):
    service.create_payment(order_info)
    with pytest.raises(DuplicateOrderError):
        service.create_payment(order_info)


def test_create_payment_accepts_snake_case_and_trims(service):
    order = service.create_payment({
        "out_trade_no": "  snake_order_1  ",
        "subject": "  Widget  ",
        "total_amount": "12.50",
        "body": "  ",
    })
    assert order.out_trade_no == "snake_order_1"
    assert order.subject == "Widget"
    assert order.body == "Widget"


def test_create_payment_reports_every_violation(service):
    with pytest.raises(ValidationError) as exc_info:
        service.create_payment({"outTradeNo": "x", "subject": "", "totalAmount": 10.123})
    assert len(exc_info.value.violations) == 3
    assert any("max 2 decimal places" in v for v in exc_info.value.violations)
    assert service.list_orders() == []


@pytest.mark.parametrize("amount, fragment", [(10.123, "max 2 decimal places"), (100001, "out of range")])
def test_create_payment_amount_rules(service, amount, fragment):
    with pytest.raises(ValidationError) as exc_info:
        service.create_payment({"outTradeNo": "amount_order_1", "subject": "Thing", "totalAmount": amount})
    assert any(fragment in v for v in exc_info.value.violations)


# Payment URL


def test_generate_payment_url(service, order_info, public_pem):
    url = service.generate_payment_url({**order_info, "totalAmount": 99.9}, "http://shop.example.com/")

    assert url.startswith(SANDBOX_GATEWAY_URL + "?")
    params = url_params(url)
    assert params["app_id"] == APP_ID
    assert params["method"] == "alipay.trade.page.pay"
    assert params["charset"] == "utf-8"
    assert params["sign_type"] == "RSA2"
    assert params["version"] == "1.0"
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}", params["timestamp"])
    assert params["notify_url"] == "http://shop.example.com/alipay/notify"
    assert params["return_url"] == "http://shop.example.com/alipay/return"

    biz = json.loads(params["biz_content"])
    assert biz == {
        "out_trade_no": "test_order_123456",
        "product_code": "FAST_INSTANT_TRADE_PAY",
        "total_amount": "99.90",
        "subject": "Test Product",
        "body": "Test Product",
        "timeout_express": "30m",
    }

    signature = params.pop("sign")
    assert SignatureService().verify(params, signature, public_pem) is True


def test_payment_url_query_is_sorted_and_encoded(service, order_info):
    url = service.generate_payment_url({**order_info, "subject": "Café & Co"}, "http://shop.example.com")
    query = urlsplit(url).query
    keys = [pair.split("=", 1)[0] for pair in query.split("&")]
    assert keys == sorted(keys)
    assert "sign" in keys
    assert " " not in query
    assert "Caf%C3%A9%20%26%20Co" in query


def test_configured_callback_urls_win(config, store, order_info):
    config = config.model_copy(update={
        "notify_url": "https://pay.example.com/alipay/notify",
        "return_url": "https://pay.example.com/done",
    })
    service = PaymentService(config, store=store)
    params = url_params(service.generate_payment_url(order_info, "http://ignored.example.com"))
    assert params["notify_url"] == "https://pay.example.com/alipay/notify"
    assert params["return_url"] == "https://pay.example.com/done"


def test_no_callback_urls_without_config_or_base(service, order_info):
    params = url_params(service.generate_payment_url(order_info))
    assert "notify_url" not in params
    assert "return_url" not in params


def test_generate_payment_url_validates(service):
    with pytest.raises(ValidationError):
        service.generate_payment_url({"outTradeNo": "ok_order_1", "subject": "x", "totalAmount": 0})


def test_create_payment_and_generate_url(service, order_info):
    result = service.create_payment_and_generate_url(order_info, "http://shop.example.com")
    assert result.order.status is OrderStatus.PENDING
    assert url_params(result.payment_url)["sign"]


def test_url_failure_keeps_pending_order(config, store, order_info):
    broken = PaymentService(config.model_copy(update={"private_key": "not a key"}), store=store)
    with pytest.raises(SignatureError):
        broken.create_payment_and_generate_url(order_info)

    order = store.get_by_out_trade_no("test_order_123456")
    assert order.status is OrderStatus.PENDING

    healthy = PaymentService(config, store=store)
    assert healthy.generate_payment_url(order).startswith(SANDBOX_GATEWAY_URL)


# Notify callback


def test_notify_success_marks_order_paid(service, order_info, gateway_sign):
    service.create_payment(order_info)
    result = service.handle_notify_callback(gateway_sign(notify_payload()))

    assert result.success is True
    assert result.order.status is OrderStatus.PAID
    assert result.order.payment_time is not None
    assert result.order.trade_no == "2024010122001400001"
    assert result.order.buyer_logon_id == "buy***@example.com"


def test_duplicate_notify_is_a_no_op(service, order_info, gateway_sign):
    service.create_payment(order_info)
    payload = gateway_sign(notify_payload())
    first = service.handle_notify_callback(payload)
    second = service.handle_notify_callback(payload)

    assert second.success is True
    assert second.order.status is OrderStatus.PAID
    assert second.order.payment_time == first.order.payment_time


def test_notify_invalid_signature_leaves_order_untouched(service, order_info, gateway_sign):
    order = service.create_payment(order_info)
    payload = gateway_sign(notify_payload())
    payload["total_amount"] = "0.01"

    result = service.handle_notify_callback(payload)

    assert result.success is False
    assert "signature" in result.message
    current = service.get_order(order.id)
    assert current.status is OrderStatus.PENDING
    assert current.trade_no is None
    assert current.updated_at == order.updated_at


def test_notify_missing_signature(service, order_info):
    service.create_payment(order_info)
    result = service.handle_notify_callback(notify_payload())
    assert result.success is False
    assert "missing signature" in result.message


def test_notify_wrong_gateway_key(config, store, order_info, gateway_sign, other_public_pem):
    service = PaymentService(config.model_copy(update={"public_key": other_public_pem}), store=store)
    service.create_payment(order_info)
    assert service.handle_notify_callback(gateway_sign(notify_payload())).success is False


@pytest.mark.parametrize("missing", ["out_trade_no", "trade_no", "trade_status"])
def test_notify_missing_required_field(service, order_info, gateway_sign, missing):
    service.create_payment(order_info)
    payload = notify_payload()
    del payload[missing]
    result = service.handle_notify_callback(gateway_sign(payload))
    assert result.success is False
    assert missing in result.message


@pytest.mark.parametrize("payload", [None, {}, "out_trade_no=1", ["a"]])
def test_notify_garbage_payload(service, payload):
    assert service.handle_notify_callback(payload).success is False


@pytest.mark.parametrize("field, value", [
    ("out_trade_no", ["test_order_123456"]),
    ("trade_no", {"id": "2024010122001400001"}),
    ("trade_status", ["TRADE_SUCCESS"]),
    ("app_id", [APP_ID]),
])
def test_notify_rejects_non_string_fields(service, order_info, gateway_sign, field, value):
    service.create_payment(order_info)
    result = service.handle_notify_callback(gateway_sign({**notify_payload(), field: value}))
    assert result.success is False
    assert "invalid field type" in result.message
    assert service.get_order_by_out_trade_no("test_order_123456").status is OrderStatus.PENDING


@pytest.mark.parametrize("field, value", [
    ("out_trade_no", ["test_order_123456"]),
    ("trade_no", 42),
    ("app_id", {"app": APP_ID}),
])
def test_unsigned_return_rejects_non_string_fields(config, store, order_info, field, value):
    service = PaymentService(config, store=store, skip_return_signature=True)
    service.create_payment(order_info)
    result = service.handle_return_callback({**notify_payload(), field: value})
    assert result.success is False
    assert "invalid field type" in result.message


def test_notify_app_id_mismatch(service, order_info, gateway_sign):
    service.create_payment(order_info)
    result = service.handle_notify_callback(gateway_sign(notify_payload(app_id="2021999999999999")))
    assert result.success is False
    assert "app_id" in result.message
    assert service.get_order_by_out_trade_no("test_order_123456").status is OrderStatus.PENDING


def test_notify_unknown_order(service, gateway_sign):
    result = service.handle_notify_callback(gateway_sign(notify_payload(out_trade_no="missing_order_1")))
    assert result.success is False
    assert "not found" in result.message


@pytest.mark.parametrize("trade_status, expected", [
    ("TRADE_SUCCESS", OrderStatus.PAID),
    ("TRADE_FINISHED", OrderStatus.PAID),
    ("TRADE_CLOSED", OrderStatus.FAILED),
    ("WAIT_BUYER_PAY", OrderStatus.PENDING),
    ("SOMETHING_NEW", OrderStatus.PENDING),
])
def test_notify_trade_status_mapping(service, order_info, gateway_sign, trade_status, expected):
    service.create_payment(order_info)
    result = service.handle_notify_callback(gateway_sign(notify_payload(trade_status=trade_status)))
    assert result.success is True
    assert result.order.status is expected
    assert result.order.trade_no == "2024010122001400001"


def test_paid_order_keeps_first_trade_no(service, order_info, gateway_sign):
    service.create_payment(order_info)
    first = service.handle_notify_callback(gateway_sign(notify_payload(
        trade_no="T_FIRST", buyer_logon_id="buyer@example.com",
    )))

    payload = notify_payload(trade_no="T_SECOND", trade_status="TRADE_FINISHED")
    del payload["buyer_logon_id"]
    second = service.handle_notify_callback(gateway_sign(payload))

    assert second.success is True
    assert second.order.status is OrderStatus.PAID
    assert second.order.trade_no == "T_FIRST"
    assert second.order.buyer_logon_id == "buyer@example.com"
    assert second.order.payment_time == first.order.payment_time
    assert service.store.get_by_trade_no("T_FIRST").out_trade_no == "test_order_123456"
    assert service.store.get_by_trade_no("T_SECOND") is None


def test_resent_notify_without_buyer_keeps_buyer(service, order_info, gateway_sign):
    service.create_payment(order_info)
    service.handle_notify_callback(gateway_sign(notify_payload()))

    payload = notify_payload()
    del payload["buyer_logon_id"]
    result = service.handle_notify_callback(gateway_sign(payload))

    assert result.order.trade_no == "2024010122001400001"
    assert result.order.buyer_logon_id == "buy***@example.com"


def test_notify_after_cancellation_does_not_resurrect(service, order_info, gateway_sign):
    order = service.create_payment(order_info)
    service.update_order_status(order.id, OrderStatus.CANCELLED)

    result = service.handle_notify_callback(gateway_sign(notify_payload()))

    assert result.success is True
    assert result.order.status is OrderStatus.CANCELLED
    assert result.order.payment_time is None


def test_notify_id_fast_path(service, order_info, gateway_sign):
    order = service.create_payment(order_info)
    payload = gateway_sign(notify_payload(notify_id="ac05099524730693a8b330c5ecf72da9786"))

    first = service.handle_notify_callback(payload)
    second = service.handle_notify_callback(payload)

    assert first.message == "notification processed"
    assert second.success is True
    assert second.message == "notification already processed"
    assert second.order.status is OrderStatus.PAID
    event_types = [e["type"] for e in service.store.events(order.id)]
    assert event_types.count("GATEWAY_INFO_SET") == 1
    assert event_types.count("NOTIFICATION_PROCESSED") == 1


def test_on_paid_hook_runs_once(config, store, order_info, gateway_sign):
    paid = []
    service = PaymentService(config, store=store, on_paid=paid.append)
    service.create_payment(order_info)
    payload = gateway_sign(notify_payload())

    service.handle_notify_callback(payload)
    service.handle_notify_callback(payload)

    assert [o.out_trade_no for o in paid] == ["test_order_123456"]


def test_failing_on_paid_hook_does_not_fail_notify(config, store, order_info, gateway_sign):
    def explode(order):
        raise RuntimeError("subscription backend down")

    service = PaymentService(config, store=store, on_paid=explode)
    service.create_payment(order_info)
    result = service.handle_notify_callback(gateway_sign(notify_payload()))
    assert result.success is True
    assert result.order.status is OrderStatus.PAID


def test_concurrent_duplicate_notifications(config, store, order_info, gateway_sign):
    calls = []
    lock = threading.Lock()

    def on_paid(order):
        with lock:
            calls.append(order.payment_time)

    service = PaymentService(config, store=store, on_paid=on_paid)
    service.create_payment(order_info)
    payload = gateway_sign(notify_payload())

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: service.handle_notify_callback(payload), range(16)))

    assert all(r.success for r in results)
    assert len(calls) == 1
    assert {r.order.payment_time for r in results} == {calls[0]}


# Return callback and queries


def test_return_callback_is_read_only(service, order_info, gateway_sign):
    service.create_payment(order_info)
    result = service.handle_return_callback(gateway_sign(notify_payload()))

    assert result.success is True
    assert result.order.status is OrderStatus.PENDING
    assert result.order.trade_no is None


def test_return_callback_reports_paid_order(service, order_info, gateway_sign):
    service.create_payment(order_info)
    service.handle_notify_callback(gateway_sign(notify_payload()))
    result = service.handle_return_callback(gateway_sign(notify_payload(trade_status=None)))
    assert result.success is True
    assert result.order.status is OrderStatus.PAID


def test_return_callback_requires_signature_by_default(service, order_info):
    service.create_payment(order_info)
    result = service.handle_return_callback(notify_payload())
    assert result.success is False
    assert "missing signature" in result.message


def test_return_signature_skip_is_explicit_and_still_read_only(config, store, order_info):
    service = PaymentService(config, store=store, skip_return_signature=True)
    service.create_payment(order_info)
    result = service.handle_return_callback(notify_payload())
    assert result.success is True
    assert result.order.status is OrderStatus.PENDING


def test_return_callback_unknown_order(service, gateway_sign):
    result = service.handle_return_callback(gateway_sign(notify_payload(out_trade_no="missing_order_1")))
    assert result.success is False


def test_query_payment_status(service, order_info):
    service.create_payment(order_info)
    found = service.query_payment_status("test_order_123456")
    assert found.success is True
    assert found.order.status is OrderStatus.PENDING
    assert found.to_dict()["order"]["total_amount"] == "99.99"

    missing = service.query_payment_status("missing_order_1")
    assert missing.success is False
    assert missing.order is None


def test_payment_config_hides_keys(service):
    view = service.get_payment_config()
    assert view["app_id"] == APP_ID
    assert view["is_sandbox"] is True
    assert "private_key" not in view
    assert "public_key" not in view
