from typing import Any, List, Optional


class PaymentError(Exception):
    code = "PAYMENT_ERROR"
    http_status = 500

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(PaymentError):
    """Raised with every violated rule, never only the first one."""

    code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(self, violations: List[str]):
        self.violations = list(violations)
        super().__init__(
            f"Order validation failed: {'; '.join(self.violations)}",
            details=self.violations,
        )


class DuplicateOrderError(PaymentError):
    code = "DUPLICATE_ORDER"
    http_status = 409

    def __init__(self, out_trade_no: str):
        self.out_trade_no = out_trade_no
        super().__init__(
            f"Order with outTradeNo {out_trade_no} already exists",
            details={"out_trade_no": out_trade_no},
        )


class OrderNotFoundError(PaymentError):
    code = "ORDER_NOT_FOUND"
    http_status = 404

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order with ID {order_id} not found", details={"order_id": order_id})


class InvalidTransitionError(PaymentError):
    code = "ORDER_STATUS_ERROR"
    http_status = 409

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid status transition from {from_status} to {to_status}",
            details={"from": from_status, "to": to_status},
        )


class UnknownStatusError(PaymentError):
    code = "ORDER_STATUS_ERROR"
    http_status = 400

    def __init__(self, status: Any):
        self.status = status
        super().__init__(f"Invalid status: {status}", details={"status": status})


class SignatureError(PaymentError):
    code = "INVALID_SIGNATURE"
    http_status = 500


class CallbackAuthError(PaymentError):
    # Never leaves the callback handlers; they turn it into CallbackResult.
    code = "CALLBACK_ERROR"
    http_status = 400


class StoreError(PaymentError):
    code = "STORE_ERROR"
    http_status = 500


class StoreInitError(StoreError):
    pass


class ConfigError(PaymentError):
    code = "CONFIG_ERROR"
    http_status = 500

    def __init__(self, problems: List[str], message: Optional[str] = None):
        self.problems = list(problems)
        super().__init__(
            message or f"Invalid payment configuration: {'; '.join(self.problems)}",
            details=self.problems,
        )
