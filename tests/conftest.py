import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from pagepay.config import GatewayConfig
from pagepay.services.order_store import OrderStore
from pagepay.services.payment_service import PaymentService
from pagepay.services.signature_service import SignatureService

APP_ID = "2021000122671234"


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def private_pem(rsa_key) -> str:
    return rsa_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


@pytest.fixture(scope="session")
def public_pem(rsa_key) -> str:
    return rsa_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()


@pytest.fixture(scope="session")
def other_public_pem() -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'orders.db'}"


@pytest.fixture
def store(database_url):
    store = OrderStore(database_url)
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def config(private_pem, public_pem, database_url) -> GatewayConfig:
    # The test key pair plays both merchant and gateway.
    return GatewayConfig(
        app_id=APP_ID,
        private_key=private_pem,
        public_key=public_pem,
        database_url=database_url,
    )


@pytest.fixture
def service(config, store) -> PaymentService:
    return PaymentService(config, store=store)


@pytest.fixture
def gateway_sign(private_pem):
    """Sign a callback payload the way the gateway does (sign_type is not signed)."""
    signer = SignatureService()

    def _sign(payload: dict) -> dict:
        signed = dict(payload)
        signed["sign"] = signer.sign(payload, private_pem)
        signed["sign_type"] = "RSA2"
        return signed

    return _sign


@pytest.fixture
def order_info() -> dict:
    return {"outTradeNo": "test_order_123456", "subject": "Test Product", "totalAmount": 99.99}
