from abc import ABC, abstractmethod
from typing import Optional, Tuple, TypedDict
import base64
import hashlib
import hmac
import json
import uuid

from loguru import logger

from .errors import InvalidInput


FIAT_METHODS = frozenset({"STRIPE", "UPI"})
CRYPTO_METHODS = frozenset({"SOL"})
PAYMENT_METHODS = FIAT_METHODS | CRYPTO_METHODS

SIGNATURE_HEADER = "x-mockpay-signature"


def sign_payload(secret: str, payload: bytes) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


def verify_signature(secret: str, payload: bytes,
                     signature: Optional[str]) -> bool:
    if not signature:
        return False
    expected = sign_payload(secret, payload).encode()
    # header values may carry any latin-1 byte
    return hmac.compare_digest(expected, signature.encode("utf-8", "replace"))


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentIntent(TypedDict):
    payment_session_id: str
    client_secret: str


class PaymentAdapter(ABC):
    @abstractmethod
    def create_intent(
        self, amount: int, currency: str, description: str
    ) -> PaymentIntent: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | "canceled"
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    # (payment_session_id, idempotency_key)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        ...


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    def __init__(self, secret: str) -> None:
        self.secret = secret

    def create_intent(
        self, amount: int, currency: str, description: str
    ) -> PaymentIntent:
        psid = f"mock_{uuid.uuid4().hex}"
        logger.info(f"mock payment intent {psid}: {amount} {currency} "
                    f"({description})")
        return {
            "payment_session_id": psid,
            "client_secret": f"{psid}_secret_{uuid.uuid4().hex[:12]}",
        }

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        if not verify_signature(self.secret, payload,
                                headers.get(SIGNATURE_HEADER)):
            raise InvalidInput("Invalid signature")
        try:
            event = json.loads(payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise InvalidInput("Invalid JSON")
        if not isinstance(event, dict):
            raise InvalidInput("Expected a JSON object")
        return event

    def event_kind(self, event: dict) -> str:
        return str(event.get("type") or "").split(".")[-1]

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        psid = event.get("payment_session_id")
        idem = event.get("idempotency_key")
        return (
            psid if isinstance(psid, str) else "",
            idem if isinstance(idem, str) else None,
        )
