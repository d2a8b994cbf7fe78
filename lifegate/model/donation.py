from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from ..helpers import to_iso

# providers
PROVIDER_STRIPE = "stripe"      # card gateway
PROVIDER_PAYSTACK = "paystack"  # regional gateway
PROVIDER_MANUAL = "manual"

# donation statuses; webhooks only ever record SUCCESS
STATUS_SUCCESS = "success"

ANONYMOUS = "Anonymous"


@dataclass(frozen=True)
class DonationEvent:
    provider: str
    amount_minor: int
    currency: str
    donor_name: str
    donor_email: Optional[str]
    reference: str


@dataclass
class DonationRecord:
    reference: str
    provider: str
    amount_minor: int
    currency: str
    donor_name: str
    donor_email: Optional[str]
    status: str
    receipt_token: Optional[str]
    created_at: float
    updated_at: Optional[float] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DonationRecord":
        updated = row.get("updated_at")
        return cls(
            reference=row["reference"],
            provider=row["provider"],
            amount_minor=int(row["amount_minor"]),
            currency=row["currency"],
            donor_name=row.get("donor_name") or ANONYMOUS,
            donor_email=row.get("donor_email") or None,
            status=row.get("status") or STATUS_SUCCESS,
            receipt_token=row.get("receipt_token") or None,
            created_at=float(row["created_at"]),
            updated_at=float(updated) if updated not in (None, "") else None,
        )

    def snapshot(self) -> Dict[str, Any]:
        # audit before/after; the token is a bearer secret, keep it out
        d = asdict(self)
        d.pop("receipt_token", None)
        return d

    def to_json(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "provider": self.provider,
            "amountMinor": self.amount_minor,
            "currency": self.currency,
            "name": self.donor_name,
            "email": self.donor_email,
            "status": self.status,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        }


@dataclass
class PublicDonation:
    """Donor-wall projection of a DonationRecord: no email, no token."""
    reference: str
    provider: str
    amount_minor: int
    currency: str
    donor_name: str
    created_at: float

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PublicDonation":
        return cls(
            reference=row["reference"],
            provider=row["provider"],
            amount_minor=int(row["amount_minor"]),
            currency=row["currency"],
            donor_name=row.get("donor_name") or ANONYMOUS,
            created_at=float(row["created_at"]),
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.reference,
            "reference": self.reference,
            "provider": self.provider,
            "amountMinor": self.amount_minor,
            "currency": self.currency,
            "name": self.donor_name,
            "createdAt": to_iso(self.created_at),
        }


@dataclass
class CampaignStats:
    campaign_id: str
    total_minor: int
    donation_count: int
    goal_minor: int
    updated_at: Optional[float]

    def to_json(self) -> Dict[str, Any]:
        return {
            "total": self.total_minor,
            "count": self.donation_count,
            "goal": self.goal_minor,
            "updatedAt": to_iso(self.updated_at),
        }


@dataclass
class ApplyResult:
    applied: bool
    receipt_token: str
    record: DonationRecord


@dataclass
class AuditEntry:
    id: str
    action: str  # edit | delete | manual_add
    donation_id: Optional[str]
    before: Optional[Dict[str, Any]]
    after: Optional[Dict[str, Any]]
    actor_id: str
    created_at: float

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "donationId": self.donation_id,
            "before": self.before,
            "after": self.after,
            "actorId": self.actor_id,
            "createdAt": to_iso(self.created_at),
        }


def editable_fields(updates: Dict[str, Any]) -> Dict[str, Any]:
    """Whitelist of admin-editable fields; anything else is ignored."""
    allowed: Dict[str, Any] = {}
    name = updates.get("donor_name")
    if isinstance(name, str) and name.strip():
        allowed["donor_name"] = name.strip()
    if "donor_email" in updates:
        email = updates["donor_email"]
        if email is None or isinstance(email, str):
            allowed["donor_email"] = (email or "").strip() or None
    currency = updates.get("currency")
    if isinstance(currency, str) and currency.strip():
        allowed["currency"] = currency.strip().upper()
    amount = updates.get("amount_minor")
    if isinstance(amount, int) and not isinstance(amount, bool) \
            and amount >= 0:
        allowed["amount_minor"] = amount
    return allowed
