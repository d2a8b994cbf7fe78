from __future__ import annotations
import hashlib
import hmac
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

import orjson
import stripe

from .errors import SignatureInvalid
from .helpers import ct_equal
from .model.donation import (
    ANONYMOUS, PROVIDER_PAYSTACK, PROVIDER_STRIPE, DonationEvent,
)


# ----------------------------
# Provider payloads (tagged union)
# ----------------------------
@dataclass(frozen=True)
class CardGatewayPayload:
    """checkout.session.completed -> data.object"""
    session_id: str
    amount_total: int
    currency: Optional[str]
    customer_email: Optional[str]
    customer_name: Optional[str]
    details_email: Optional[str]
    metadata: Dict[str, Any]


@dataclass(frozen=True)
class RegionalGatewayPayload:
    """charge.success -> data"""
    reference: str
    amount: int
    currency: Optional[str]
    customer_email: Optional[str]
    metadata: Dict[str, Any]


ProviderPayload = Union[CardGatewayPayload, RegionalGatewayPayload]


def _str_or_none(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _as_dict(v: Any) -> Dict[str, Any]:
    # paystack sends metadata as "" when the checkout had none
    return v if isinstance(v, dict) else {}


def _minor_amount(v: Any) -> int:
    # missing means zero; anything else must be a whole, non-negative number
    if v is None:
        return 0
    if isinstance(v, bool):
        raise SignatureInvalid("invalid amount")
    if isinstance(v, float) and v.is_integer():
        v = int(v)
    if not isinstance(v, int) or v < 0:
        raise SignatureInvalid("invalid amount")
    return v


def normalize(payload: ProviderPayload) -> DonationEvent:
    if isinstance(payload, CardGatewayPayload):
        md = payload.metadata
        return DonationEvent(
            provider=PROVIDER_STRIPE,
            amount_minor=int(payload.amount_total or 0),
            currency=(payload.currency or "usd").upper(),
            donor_name=(
                _str_or_none(md.get("donor_name"))
                or payload.customer_name
                or ANONYMOUS
            ),
            donor_email=(
                payload.customer_email
                or _str_or_none(md.get("donor_email"))
                or payload.details_email
            ),
            reference=payload.session_id,
        )
    if isinstance(payload, RegionalGatewayPayload):
        return DonationEvent(
            provider=PROVIDER_PAYSTACK,
            amount_minor=int(payload.amount or 0),
            currency=(payload.currency or "NGN").upper(),
            donor_name=(
                _str_or_none(payload.metadata.get("donor_name")) or ANONYMOUS
            ),
            donor_email=payload.customer_email,
            reference=payload.reference,
        )
    raise TypeError(f"unknown provider payload: {type(payload).__name__}")


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    name: str
    signature_header: str

    @abstractmethod
    def verify_webhook(self, payload: bytes,
                       headers: Mapping[str, str]) -> dict: ...

    @abstractmethod
    def event_kind(self, event: dict) -> str: ...

    # None -> event type we acknowledge but do not record
    @abstractmethod
    def to_payload(self, event: dict) -> Optional[ProviderPayload]: ...

    def parse(self, payload: bytes) -> dict:
        try:
            event = orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise SignatureInvalid("Invalid JSON")
        if not isinstance(event, dict):
            raise SignatureInvalid("Invalid JSON")
        return event

    def donation_event(self, event: dict) -> Optional[DonationEvent]:
        payload = self.to_payload(event)
        if payload is None:
            return None
        donation = normalize(payload)
        if not donation.reference:
            raise SignatureInvalid("missing transaction reference")
        return donation


# ----------------------------
# Card gateway (Stripe)
# ----------------------------
class StripeGateway(PaymentAdapter):
    name = PROVIDER_STRIPE
    signature_header = "stripe-signature"

    def __init__(self, signing_secret: str, tolerance: int = 300) -> None:
        self.signing_secret = signing_secret
        self.tolerance = tolerance

    def verify_webhook(self, payload: bytes,
                       headers: Mapping[str, str]) -> dict:
        sig = headers.get(self.signature_header)
        if not sig:
            raise SignatureInvalid("Missing stripe-signature header")
        try:
            stripe.Webhook.construct_event(
                payload, sig, self.signing_secret, tolerance=self.tolerance
            )
        except Exception as e:
            raise SignatureInvalid(str(e) or type(e).__name__) from e
        # the SDK only vouches for the bytes; we read our own dict from them
        return self.parse(payload)

    def event_kind(self, event: dict) -> str:
        return str(event.get("type", ""))

    def to_payload(self, event: dict) -> Optional[CardGatewayPayload]:
        if self.event_kind(event) != "checkout.session.completed":
            return None
        obj = _as_dict(_as_dict(event.get("data")).get("object"))
        details = _as_dict(obj.get("customer_details"))
        return CardGatewayPayload(
            session_id=str(obj.get("id") or ""),
            amount_total=_minor_amount(obj.get("amount_total")),
            currency=_str_or_none(obj.get("currency")),
            customer_email=_str_or_none(obj.get("customer_email")),
            customer_name=_str_or_none(details.get("name")),
            details_email=_str_or_none(details.get("email")),
            metadata=_as_dict(obj.get("metadata")),
        )


# ----------------------------
# Regional gateway (Paystack)
# ----------------------------
class PaystackGateway(PaymentAdapter):
    name = PROVIDER_PAYSTACK
    signature_header = "x-paystack-signature"

    def __init__(self, secret_key: str) -> None:
        self.secret_key = secret_key

    def sign(self, payload: bytes) -> str:
        return hmac.new(
            self.secret_key.encode(), payload, hashlib.sha512
        ).hexdigest()

    def verify_webhook(self, payload: bytes,
                       headers: Mapping[str, str]) -> dict:
        sig = headers.get(self.signature_header) or ""
        if not sig or not ct_equal(self.sign(payload), sig):
            raise SignatureInvalid("Invalid signature")
        return self.parse(payload)

    def event_kind(self, event: dict) -> str:
        return str(event.get("event", ""))

    def to_payload(self, event: dict) -> Optional[RegionalGatewayPayload]:
        if self.event_kind(event) != "charge.success":
            return None
        data = _as_dict(event.get("data"))
        return RegionalGatewayPayload(
            reference=str(data.get("reference") or ""),
            amount=_minor_amount(data.get("amount")),
            currency=_str_or_none(data.get("currency")),
            customer_email=_str_or_none(
                _as_dict(data.get("customer")).get("email")
            ),
            metadata=_as_dict(data.get("metadata")),
        )
