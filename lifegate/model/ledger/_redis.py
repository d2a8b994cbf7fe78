# model/ledger/_redis.py
from __future__ import annotations
import logging
import uuid
from typing import Any, Dict, List, Optional

import orjson
import redis.asyncio as redis
from redis.exceptions import WatchError

from ...errors import CampaignMissing, NotFound, TransactionConflict
from ...helpers import now_ts, clamp_limit
from ...infra.retry import run_transaction
from ...receipts import issue_token
from ..donation import (
    ANONYMOUS, PROVIDER_MANUAL, STATUS_SUCCESS, ApplyResult, AuditEntry,
    CampaignStats, DonationEvent, DonationRecord, PublicDonation,
    editable_fields,
)

log = logging.getLogger(__name__)


# ---- keys
def k_campaign(cid: str) -> str: return f"campaign:{cid}"
def k_donation(ref: str) -> str: return f"donation:{ref}"
def k_public(ref: str) -> str: return f"public:{ref}"
def k_idx_public(cid: str) -> str: return f"idx:public:{cid}"
def k_idx_donations(cid: str) -> str: return f"idx:donations:{cid}"
def k_audit(cid: str) -> str: return f"audit:{cid}"


def _record_mapping(rec: DonationRecord) -> Dict[str, Any]:
    # hash values must be strings/numbers; "" stands for NULL
    return {
        "reference": rec.reference,
        "provider": rec.provider,
        "amount_minor": rec.amount_minor,
        "currency": rec.currency,
        "donor_name": rec.donor_name,
        "donor_email": rec.donor_email or "",
        "status": rec.status,
        "receipt_token": rec.receipt_token or "",
        "created_at": rec.created_at,
        "updated_at": rec.updated_at or "",
    }


def _public_mapping(rec: DonationRecord) -> Dict[str, Any]:
    return {
        "reference": rec.reference,
        "provider": rec.provider,
        "amount_minor": rec.amount_minor,
        "currency": rec.currency,
        "donor_name": rec.donor_name,
        "created_at": rec.created_at,
    }


class LedgerStore:
    """
    Same contract as the SQL store, on Redis hashes.

    Every mutation is one WATCH/MULTI/EXEC transaction. Only the donation key
    is watched on the webhook path; the aggregate is changed with HINCRBY
    inside MULTI, so deliveries for different references never conflict and
    a second delivery of the same reference aborts on EXEC and is re-run.
    """
    backend = "redis"

    def __init__(
        self, *, r: redis.Redis,
        campaign_id: str = "global",
        goal_minor: int = 0,
        auto_create: bool = True,
        max_attempts: int = 5,
    ) -> None:
        self.r = r
        self.campaign_id = campaign_id
        self.goal_minor = goal_minor
        self.auto_create = auto_create
        self.max_attempts = max_attempts

    @property
    def ckey(self) -> str:
        return k_campaign(self.campaign_id)

    async def _campaign_row(self) -> Dict[str, str]:
        if self.auto_create:
            now = now_ts()
            pipe = self.r.pipeline(transaction=True)
            pipe.hsetnx(self.ckey, "total_minor", 0)
            pipe.hsetnx(self.ckey, "donation_count", 0)
            pipe.hsetnx(self.ckey, "goal_minor", self.goal_minor)
            pipe.hsetnx(self.ckey, "created_at", now)
            pipe.hsetnx(self.ckey, "updated_at", now)
            await pipe.execute()
        h = await self.r.hgetall(self.ckey)
        if not h:
            raise CampaignMissing(
                f"Campaign document '{self.campaign_id}' not found"
            )
        return h

    def _queue_audit(self, pipe, action: str, donation_id: Optional[str],
                     before: Optional[Dict[str, Any]],
                     after: Optional[Dict[str, Any]], actor: str,
                     now: float) -> None:
        entry = {
            "id": uuid.uuid4().hex, "action": action,
            "donation_id": donation_id, "before": before, "after": after,
            "actor_id": actor, "created_at": now,
        }
        pipe.lpush(k_audit(self.campaign_id), orjson.dumps(entry).decode())

    async def _transact(self, body) -> Any:
        async def attempt():
            try:
                return await body()
            except WatchError as e:
                raise TransactionConflict(
                    "concurrent modification, retrying"
                ) from e
        return await run_transaction(attempt, self.max_attempts)

    async def _apply_once(self, ev: DonationEvent,
                          actor: Optional[str] = None) -> ApplyResult:
        await self._campaign_row()
        dkey = k_donation(ev.reference)
        async with self.r.pipeline(transaction=True) as pipe:
            await pipe.watch(dkey)
            existing = await pipe.hgetall(dkey)
            now = now_ts()
            if not existing:
                rec = DonationRecord(
                    reference=ev.reference,
                    provider=ev.provider,
                    amount_minor=ev.amount_minor,
                    currency=ev.currency,
                    donor_name=ev.donor_name or ANONYMOUS,
                    donor_email=ev.donor_email,
                    status=STATUS_SUCCESS,
                    receipt_token=issue_token(),
                    created_at=now,
                    updated_at=now,
                )
                pipe.multi()
                pipe.hset(dkey, mapping=_record_mapping(rec))
                pipe.hincrby(self.ckey, "total_minor", ev.amount_minor)
                pipe.hincrby(self.ckey, "donation_count", 1)
                pipe.hset(self.ckey, "updated_at", now)
                pipe.hset(k_public(ev.reference), mapping=_public_mapping(rec))
                pipe.zadd(k_idx_public(self.campaign_id), {ev.reference: now})
                pipe.zadd(k_idx_donations(self.campaign_id),
                          {ev.reference: now})
                if actor:
                    self._queue_audit(pipe, "manual_add", ev.reference, None,
                                      rec.snapshot(), actor, now)
                await pipe.execute()
                return ApplyResult(True, rec.receipt_token, rec)

            # replay: merge donor details, never amounts; token is set-once
            rec = DonationRecord.from_row(existing)
            if ev.donor_name and ev.donor_name != ANONYMOUS:
                rec.donor_name = ev.donor_name
            if ev.donor_email:
                rec.donor_email = ev.donor_email
            if not rec.receipt_token:
                rec.receipt_token = issue_token()
            rec.updated_at = now
            pipe.multi()
            pipe.hset(dkey, mapping=_record_mapping(rec))
            pipe.hset(k_public(ev.reference), "donor_name", rec.donor_name)
            await pipe.execute()
            return ApplyResult(False, rec.receipt_token, rec)

    # --------------------------------------------------------------------------
    # Public API (parallels the SQL store)
    # --------------------------------------------------------------------------
    async def apply(self, ev: DonationEvent) -> ApplyResult:
        if ev.amount_minor < 0:
            raise ValueError(f"negative amount for {ev.reference}")
        result = await self._transact(lambda: self._apply_once(ev))
        if result.applied:
            log.info("donation applied: %s %s %d", ev.provider, ev.reference,
                     ev.amount_minor)
        else:
            log.info("donation replay ignored: %s %s", ev.provider,
                     ev.reference)
        return result

    async def ensure_campaign(self) -> CampaignStats:
        h = await self._campaign_row()
        return _stats(self.campaign_id, h)

    async def get_stats(self) -> CampaignStats:
        return await self.ensure_campaign()

    async def _hashes(self, keys: List[str]) -> List[Dict[str, str]]:
        pipe = self.r.pipeline()
        for k in keys:
            pipe.hgetall(k)
        return await pipe.execute()

    async def recent_donations(self, limit: int = 10) -> List[PublicDonation]:
        refs = await self.r.zrevrange(
            k_idx_public(self.campaign_id), 0, clamp_limit(limit) - 1
        )
        rows = await self._hashes([k_public(ref) for ref in refs])
        return [PublicDonation.from_row(h) for h in rows if h]

    async def get_donation(self, reference: str) -> Optional[DonationRecord]:
        h = await self.r.hgetall(k_donation(reference))
        return DonationRecord.from_row(h) if h else None

    async def list_donations(self, limit: int = 100) -> List[DonationRecord]:
        refs = await self.r.zrevrange(
            k_idx_donations(self.campaign_id), 0,
            clamp_limit(limit, 100, 500) - 1,
        )
        rows = await self._hashes([k_donation(ref) for ref in refs])
        return [DonationRecord.from_row(h) for h in rows if h]

    # ---- admin contract ----
    async def edit_donation(self, reference: str, updates: Dict[str, Any],
                            actor: str) -> DonationRecord:
        async def body():
            await self._campaign_row()
            dkey = k_donation(reference)
            async with self.r.pipeline(transaction=True) as pipe:
                await pipe.watch(dkey)
                h = await pipe.hgetall(dkey)
                if not h:
                    raise NotFound("Donation not found")
                before = DonationRecord.from_row(h)
                after = DonationRecord.from_row(h)
                allowed = editable_fields(updates)
                for k, v in allowed.items():
                    setattr(after, k, v)
                now = now_ts()
                after.updated_at = now
                delta = after.amount_minor - before.amount_minor
                pipe.multi()
                if delta:
                    pipe.hincrby(self.ckey, "total_minor", delta)
                    pipe.hset(self.ckey, "updated_at", now)
                pipe.hset(dkey, mapping=_record_mapping(after))
                pipe.hset(k_public(reference), mapping=_public_mapping(after))
                self._queue_audit(pipe, "edit", reference, before.snapshot(),
                                  after.snapshot(), actor, now)
                await pipe.execute()
                return after
        return await self._transact(body)

    async def delete_donation(self, reference: str, actor: str) -> None:
        async def body():
            await self._campaign_row()
            dkey = k_donation(reference)
            async with self.r.pipeline(transaction=True) as pipe:
                # the count is floored at 0, so this path reads it
                await pipe.watch(dkey, self.ckey)
                h = await pipe.hgetall(dkey)
                if not h:
                    raise NotFound("Donation not found")
                before = DonationRecord.from_row(h)
                count = int(await pipe.hget(self.ckey, "donation_count") or 0)
                now = now_ts()
                pipe.multi()
                pipe.hincrby(self.ckey, "total_minor", -before.amount_minor)
                pipe.hset(self.ckey, mapping={
                    "donation_count": max(count - 1, 0),
                    "updated_at": now,
                })
                pipe.delete(dkey, k_public(reference))
                pipe.zrem(k_idx_public(self.campaign_id), reference)
                pipe.zrem(k_idx_donations(self.campaign_id), reference)
                self._queue_audit(pipe, "delete", reference, before.snapshot(),
                                  None, actor, now)
                await pipe.execute()
        await self._transact(body)

    async def add_manual_donation(
        self, *, donor_name: Optional[str], donor_email: Optional[str],
        amount_minor: int, currency: str, actor: str,
    ) -> ApplyResult:
        if amount_minor <= 0:
            raise ValueError("Invalid amountMinor")
        ev = DonationEvent(
            provider=PROVIDER_MANUAL,
            amount_minor=int(amount_minor),
            currency=(currency or "NGN").upper(),
            donor_name=donor_name or ANONYMOUS,
            donor_email=donor_email or None,
            reference=f"manual_{uuid.uuid4().hex[:20]}",
        )
        return await self._transact(lambda: self._apply_once(ev, actor))

    async def list_audit(self, limit: int = 50) -> List[AuditEntry]:
        raw = await self.r.lrange(
            k_audit(self.campaign_id), 0, clamp_limit(limit, 50, 500) - 1
        )
        out = []
        for item in raw:
            d = orjson.loads(item)
            out.append(AuditEntry(
                id=d["id"], action=d["action"],
                donation_id=d.get("donation_id"),
                before=d.get("before"), after=d.get("after"),
                actor_id=d["actor_id"], created_at=float(d["created_at"]),
            ))
        return out


def _stats(cid: str, h: Dict[str, str]) -> CampaignStats:
    updated = h.get("updated_at")
    return CampaignStats(
        campaign_id=cid,
        total_minor=int(h.get("total_minor") or 0),
        donation_count=int(h.get("donation_count") or 0),
        goal_minor=int(h.get("goal_minor") or 0),
        updated_at=float(updated) if updated else None,
    )
