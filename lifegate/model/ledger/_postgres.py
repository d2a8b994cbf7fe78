# model/ledger/_postgres.py
"""
SQL ledger backend (PostgreSQL via asyncpg, SQLite via aiosqlite for dev and
tests).

One transaction per ledger operation:
- ensure the campaign row exists (or raise CampaignMissing)
- INSERT the donation with ON CONFLICT DO NOTHING RETURNING; a returned row
  means this reference is new
- only then bump the aggregate with an in-place increment
  (total_minor = total_minor + :amt), never a read-modify-write

A concurrent delivery of the same reference blocks on the primary key until
the first commits, then takes the replay branch. Lock timeouts, deadlocks and
serialization failures become TransactionConflict and the whole transaction
is re-run by run_transaction().
"""
from __future__ import annotations
import logging
import uuid
from typing import Any, Dict, List, Optional

import orjson
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from ...errors import CampaignMissing, NotFound, TransactionConflict
from ...helpers import now_ts, clamp_limit
from ...infra.retry import run_transaction
from ...infra.sql import Gated, is_conflict
from ...receipts import issue_token
from ..donation import (
    ANONYMOUS, PROVIDER_MANUAL, STATUS_SUCCESS, ApplyResult, AuditEntry,
    CampaignStats, DonationEvent, DonationRecord, PublicDonation,
    editable_fields,
)

log = logging.getLogger(__name__)


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_CAMPAIGNS = r"""
-- one aggregate row per campaign; mutated only inside ledger transactions
CREATE TABLE IF NOT EXISTS campaigns (
  id              TEXT PRIMARY KEY,
  total_minor     BIGINT NOT NULL DEFAULT 0 CHECK (total_minor >= 0),
  donation_count  BIGINT NOT NULL DEFAULT 0 CHECK (donation_count >= 0),
  goal_minor      BIGINT NOT NULL DEFAULT 0,
  created_at      DOUBLE PRECISION NOT NULL,
  updated_at      DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_DONATIONS = r"""
-- keyed by the provider-assigned reference
CREATE TABLE IF NOT EXISTS donations (
  reference      TEXT PRIMARY KEY,
  campaign_id    TEXT NOT NULL,
  provider       TEXT NOT NULL,
  amount_minor   BIGINT NOT NULL CHECK (amount_minor >= 0),
  currency       TEXT NOT NULL,
  donor_name     TEXT NOT NULL,
  donor_email    TEXT,
  status         TEXT NOT NULL,
  receipt_token  TEXT,
  created_at     DOUBLE PRECISION NOT NULL,
  updated_at     DOUBLE PRECISION
);
"""

SQL_CREATE_PUBLIC_DONATIONS = r"""
-- donor wall projection: no email, no token
CREATE TABLE IF NOT EXISTS public_donations (
  reference     TEXT PRIMARY KEY,
  campaign_id   TEXT NOT NULL,
  provider      TEXT NOT NULL,
  amount_minor  BIGINT NOT NULL,
  currency      TEXT NOT NULL,
  donor_name    TEXT NOT NULL,
  created_at    DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_AUDIT_LOGS = r"""
CREATE TABLE IF NOT EXISTS audit_logs (
  id           TEXT PRIMARY KEY,
  action       TEXT NOT NULL,
  donation_id  TEXT,
  before_json  TEXT,
  after_json   TEXT,
  actor_id     TEXT NOT NULL,
  created_at   DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_IDX_PUBLIC_CREATED_AT = r"""
CREATE INDEX IF NOT EXISTS idx_public_donations_created_at
  ON public_donations (campaign_id, created_at DESC);
"""

SQL_CREATE_IDX_AUDIT_CREATED_AT = r"""
CREATE INDEX IF NOT EXISTS idx_audit_logs_created_at
  ON audit_logs (created_at DESC);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_CAMPAIGNS))
    await exec_(text(SQL_CREATE_DONATIONS))
    await exec_(text(SQL_CREATE_PUBLIC_DONATIONS))
    await exec_(text(SQL_CREATE_AUDIT_LOGS))
    await exec_(text(SQL_CREATE_IDX_PUBLIC_CREATED_AT))
    await exec_(text(SQL_CREATE_IDX_AUDIT_CREATED_AT))


def _dumps(d: Optional[Dict[str, Any]]) -> Optional[str]:
    return None if d is None else orjson.dumps(d).decode()


def _loads(s: Optional[str]) -> Optional[Dict[str, Any]]:
    return None if not s else orjson.loads(s)


class LedgerStore:
    backend = "pg"

    def __init__(
        self, *, db: AsyncSession, gated: Gated,
        campaign_id: str = "global",
        goal_minor: int = 0,
        auto_create: bool = True,
        max_attempts: int = 5,
    ) -> None:
        self.db = db
        self.gated = gated
        self.campaign_id = campaign_id
        self.goal_minor = goal_minor
        self.auto_create = auto_create
        self.max_attempts = max_attempts

    # --------------------------------------------------------------------------
    # transaction plumbing
    # --------------------------------------------------------------------------
    async def _in_tx(self, body):
        async def attempt():
            async with self.gated():
                try:
                    async with self.db.begin():
                        return await body()
                except DBAPIError as e:
                    if is_conflict(e):
                        raise TransactionConflict(str(e.orig or e)) from e
                    raise
        return await run_transaction(attempt, self.max_attempts)

    # UN-GATED internal helpers: callers hold a transaction
    async def _campaign_row(self) -> Dict[str, Any]:
        if self.auto_create:
            now = now_ts()
            await self.db.execute(text("""
                INSERT INTO campaigns(
                  id, total_minor, donation_count, goal_minor,
                  created_at, updated_at
                ) VALUES (:id, 0, 0, :goal, :now, :now)
                ON CONFLICT (id) DO NOTHING
            """), {"id": self.campaign_id, "goal": self.goal_minor,
                   "now": now})
        row = (await self.db.execute(
            text("SELECT * FROM campaigns WHERE id=:id"),
            {"id": self.campaign_id},
        )).mappings().first()
        if row is None:
            raise CampaignMissing(
                f"Campaign document '{self.campaign_id}' not found"
            )
        return dict(row)

    async def _donation(self, reference: str) -> Optional[DonationRecord]:
        row = (await self.db.execute(
            text("SELECT * FROM donations WHERE reference=:ref"),
            {"ref": reference},
        )).mappings().first()
        return DonationRecord.from_row(dict(row)) if row else None

    async def _bump(self, delta_total: int, delta_count: int,
                    now: float) -> None:
        await self.db.execute(text("""
            UPDATE campaigns SET
              total_minor = total_minor + :dt,
              donation_count = CASE
                WHEN donation_count + :dc < 0 THEN 0
                ELSE donation_count + :dc END,
              updated_at = :now
            WHERE id = :id
        """), {"dt": delta_total, "dc": delta_count, "now": now,
               "id": self.campaign_id})

    async def _audit(self, action: str, donation_id: Optional[str],
                     before: Optional[Dict[str, Any]],
                     after: Optional[Dict[str, Any]], actor: str,
                     now: float) -> None:
        await self.db.execute(text("""
            INSERT INTO audit_logs(
              id, action, donation_id, before_json, after_json, actor_id,
              created_at
            ) VALUES (:id, :action, :did, :before, :after, :actor, :now)
        """), {
            "id": uuid.uuid4().hex, "action": action, "did": donation_id,
            "before": _dumps(before), "after": _dumps(after),
            "actor": actor, "now": now,
        })

    async def _apply(self, ev: DonationEvent) -> ApplyResult:
        await self._campaign_row()
        now = now_ts()
        inserted = (await self.db.execute(text("""
            INSERT INTO donations(
              reference, campaign_id, provider, amount_minor, currency,
              donor_name, donor_email, status, receipt_token, created_at,
              updated_at
            ) VALUES (
              :ref, :cid, :provider, :amount, :currency, :name, :email,
              :status, :token, :now, :now
            )
            ON CONFLICT (reference) DO NOTHING
            RETURNING reference
        """), {
            "ref": ev.reference, "cid": self.campaign_id,
            "provider": ev.provider, "amount": ev.amount_minor,
            "currency": ev.currency, "name": ev.donor_name or ANONYMOUS,
            "email": ev.donor_email, "status": STATUS_SUCCESS,
            "token": issue_token(), "now": now,
        })).first()

        if inserted is not None:
            await self._bump(ev.amount_minor, 1, now)
            await self.db.execute(text("""
                INSERT INTO public_donations(
                  reference, campaign_id, provider, amount_minor, currency,
                  donor_name, created_at
                ) VALUES (:ref, :cid, :provider, :amount, :currency, :name,
                          :now)
                ON CONFLICT (reference) DO NOTHING
            """), {
                "ref": ev.reference, "cid": self.campaign_id,
                "provider": ev.provider, "amount": ev.amount_minor,
                "currency": ev.currency, "name": ev.donor_name or ANONYMOUS,
                "now": now,
            })
            record = await self._donation(ev.reference)
            return ApplyResult(True, record.receipt_token, record)

        # replay: merge donor details, never amounts; token is set-once
        params = {
            "ref": ev.reference,
            "name": (
                ev.donor_name if ev.donor_name and ev.donor_name != ANONYMOUS
                else None
            ),
            "email": ev.donor_email, "token": issue_token(), "now": now,
        }
        await self.db.execute(text("""
            UPDATE donations SET
              donor_name = COALESCE(:name, donor_name),
              donor_email = COALESCE(:email, donor_email),
              receipt_token = COALESCE(receipt_token, :token),
              updated_at = :now
            WHERE reference = :ref
        """), params)
        await self.db.execute(text("""
            UPDATE public_donations SET
              donor_name = COALESCE(:name, donor_name)
            WHERE reference = :ref
        """), {"ref": ev.reference, "name": params["name"]})
        record = await self._donation(ev.reference)
        return ApplyResult(False, record.receipt_token, record)

    # --------------------------------------------------------------------------
    # Public API (parallels the redis store)
    # --------------------------------------------------------------------------
    async def apply(self, ev: DonationEvent) -> ApplyResult:
        if ev.amount_minor < 0:
            raise ValueError(f"negative amount for {ev.reference}")
        result = await self._in_tx(lambda: self._apply(ev))
        if result.applied:
            log.info("donation applied: %s %s %d", ev.provider, ev.reference,
                     ev.amount_minor)
        else:
            log.info("donation replay ignored: %s %s", ev.provider,
                     ev.reference)
        return result

    async def ensure_campaign(self) -> CampaignStats:
        row = await self._in_tx(self._campaign_row)
        return _stats(row)

    async def get_stats(self) -> CampaignStats:
        return await self.ensure_campaign()

    async def recent_donations(self, limit: int = 10) -> List[PublicDonation]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                    SELECT * FROM public_donations
                    WHERE campaign_id = :cid
                    ORDER BY created_at DESC
                    LIMIT :lim
                """), {"cid": self.campaign_id,
                       "lim": clamp_limit(limit)})).mappings().all()
        return [PublicDonation.from_row(dict(r)) for r in rows]

    async def get_donation(self, reference: str) -> Optional[DonationRecord]:
        async with self.gated():
            async with self.db.begin():
                return await self._donation(reference)

    async def list_donations(self, limit: int = 100) -> List[DonationRecord]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                    SELECT * FROM donations
                    WHERE campaign_id = :cid
                    ORDER BY created_at DESC
                    LIMIT :lim
                """), {"cid": self.campaign_id,
                       "lim": clamp_limit(limit, 100, 500)})).mappings().all()
        return [DonationRecord.from_row(dict(r)) for r in rows]

    # ---- admin contract ----
    async def edit_donation(self, reference: str, updates: Dict[str, Any],
                            actor: str) -> DonationRecord:
        async def body():
            await self._campaign_row()
            before = await self._donation(reference)
            if before is None:
                raise NotFound("Donation not found")
            now = now_ts()
            allowed = editable_fields(updates)
            delta = 0
            if "amount_minor" in allowed:
                delta = allowed["amount_minor"] - before.amount_minor
            if delta:
                await self._bump(delta, 0, now)
            sets = ", ".join(f"{k} = :{k}" for k in allowed)
            await self.db.execute(
                text(f"UPDATE donations SET {sets}{', ' if sets else ''}"
                     "updated_at = :now WHERE reference = :ref"),
                {**allowed, "now": now, "ref": reference},
            )
            public = {k: v for k, v in allowed.items() if k != "donor_email"}
            if public:
                psets = ", ".join(f"{k} = :{k}" for k in public)
                await self.db.execute(
                    text(f"UPDATE public_donations SET {psets} "
                         "WHERE reference = :ref"),
                    {**public, "ref": reference},
                )
            after = await self._donation(reference)
            await self._audit("edit", reference, before.snapshot(),
                              after.snapshot(), actor, now)
            return after
        return await self._in_tx(body)

    async def delete_donation(self, reference: str, actor: str) -> None:
        async def body():
            await self._campaign_row()
            before = await self._donation(reference)
            if before is None:
                raise NotFound("Donation not found")
            now = now_ts()
            await self._bump(-before.amount_minor, -1, now)
            await self.db.execute(
                text("DELETE FROM donations WHERE reference = :ref"),
                {"ref": reference},
            )
            await self.db.execute(
                text("DELETE FROM public_donations WHERE reference = :ref"),
                {"ref": reference},
            )
            await self._audit("delete", reference, before.snapshot(), None,
                              actor, now)
        await self._in_tx(body)

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

        async def body():
            result = await self._apply(ev)
            await self._audit("manual_add", ev.reference, None,
                              result.record.snapshot(), actor, now_ts())
            return result
        return await self._in_tx(body)

    async def list_audit(self, limit: int = 50) -> List[AuditEntry]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                    SELECT * FROM audit_logs
                    ORDER BY created_at DESC
                    LIMIT :lim
                """), {"lim": clamp_limit(limit, 50, 500)})).mappings().all()
        return [
            AuditEntry(
                id=r["id"], action=r["action"], donation_id=r["donation_id"],
                before=_loads(r["before_json"]),
                after=_loads(r["after_json"]),
                actor_id=r["actor_id"], created_at=float(r["created_at"]),
            )
            for r in rows
        ]



def _stats(row: Dict[str, Any]) -> CampaignStats:
    return CampaignStats(
        campaign_id=row["id"],
        total_minor=int(row["total_minor"]),
        donation_count=int(row["donation_count"]),
        goal_minor=int(row["goal_minor"]),
        updated_at=float(row["updated_at"]) if row["updated_at"] else None,
    )
