from .order_store import OrderStore
from .payment_service import PaymentService
from .signature_service import SignatureService

__all__ = ["OrderStore", "PaymentService", "SignatureService"]
