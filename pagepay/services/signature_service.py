import base64
import binascii
import logging
from typing import Any, Iterable, Mapping, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from pagepay.errors import SignatureError
from pagepay.types.order_types import VerificationResult

logger = logging.getLogger("signature")

KeyMaterial = Union[str, bytes, rsa.RSAPrivateKey, rsa.RSAPublicKey]

_KEY_ERRORS = (ValueError, TypeError, binascii.Error, UnsupportedAlgorithm)


def _as_bytes(material: Union[str, bytes]) -> bytes:
    return material.encode("utf-8") if isinstance(material, str) else material


def load_private_key(material: KeyMaterial) -> rsa.RSAPrivateKey:
    """Accept a PEM block or the bare base64 DER body handed out by the gateway console."""
    if isinstance(material, rsa.RSAPrivateKey):
        return material
    if not material:
        raise SignatureError("Private key material is empty")
    try:
        data = _as_bytes(material).strip()
        if b"-----BEGIN" in data:
            key = serialization.load_pem_private_key(data, password=None)
        else:
            key = serialization.load_der_private_key(base64.b64decode(data, validate=True), password=None)
    except _KEY_ERRORS as e:
        raise SignatureError(f"Unreadable private key: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise SignatureError("Private key is not an RSA key")
    return key


def load_public_key(material: KeyMaterial) -> rsa.RSAPublicKey:
    if isinstance(material, rsa.RSAPublicKey):
        return material
    if isinstance(material, rsa.RSAPrivateKey):
        return material.public_key()
    if not material:
        raise SignatureError("Public key material is empty")
    try:
        data = _as_bytes(material).strip()
        if b"-----BEGIN" in data:
            key = serialization.load_pem_public_key(data)
        else:
            key = serialization.load_der_public_key(base64.b64decode(data, validate=True))
    except _KEY_ERRORS as e:
        raise SignatureError(f"Unreadable public key: {e}") from e
    if not isinstance(key, rsa.RSAPublicKey):
        raise SignatureError("Public key is not an RSA key")
    return key


class SignatureService:
    """RSA2 (SHA256withRSA, PKCS#1 v1.5) signing over canonical parameter strings."""

    def canonical_string(self, params: Mapping[str, Any], exclude: Iterable[str] = ("sign",)) -> str:
        """Sorted ``key=value`` pairs joined by ``&``.

        Empty and None values and excluded keys are dropped. Values are used
        raw, never URL-encoded.
        """
        excluded = set(exclude)
        pairs = sorted(
            (str(key), str(value))
            for key, value in params.items()
            if key not in excluded and value is not None and value != ""
        )
        return "&".join(f"{key}={value}" for key, value in pairs)

    def sign(self, params: Mapping[str, Any], private_key: KeyMaterial) -> str:
        key = load_private_key(private_key)
        content = self.canonical_string(params)
        try:
            signature = key.sign(content.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
        except (ValueError, TypeError) as e:
            raise SignatureError(f"Signing failed: {e}") from e
        return base64.b64encode(signature).decode("ascii")

    def verify(
        self,
        params: Mapping[str, Any],
        signature: str,
        public_key: KeyMaterial,
        exclude: Iterable[str] = ("sign",),
    ) -> bool:
        # Reachable with attacker-controlled input: any failure means "not valid".
        if not isinstance(params, Mapping) or not signature or not isinstance(signature, str):
            return False
        try:
            key = load_public_key(public_key)
            content = self.canonical_string(params, exclude)
            raw_signature = base64.b64decode(signature, validate=True)
            logger.debug(f"[Signature] verifying: {content}")
            key.verify(raw_signature, content.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
        except InvalidSignature:
            return False
        except (SignatureError, ValueError, TypeError, binascii.Error) as e:
            logger.warning(f"[Signature] verification error: {e}")
            return False
        return True

    def verify_callback(self, params: Mapping[str, Any], public_key: KeyMaterial) -> VerificationResult:
        if not isinstance(params, Mapping):
            return VerificationResult(False, "invalid callback params")
        signature = params.get("sign")
        if not signature:
            return VerificationResult(False, "missing signature")
        if not self.verify(params, signature, public_key, exclude=("sign", "sign_type")):
            logger.warning(f"[Signature] callback rejected: {params.get('out_trade_no')}")
            return VerificationResult(False, "signature mismatch")
        return VerificationResult(True)
