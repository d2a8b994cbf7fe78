import asyncio
import re

import pytest

from lifegate.errors import CampaignMissing, NotFound
from lifegate.model.donation import ANONYMOUS, DonationEvent

TOKEN_RE = re.compile(r"^[0-9a-f]{48}$")


def _event(ref="cs_test_1", amount=500000, name="Jane Doe",
           email="jane@example.com", provider="stripe"):
    return DonationEvent(provider=provider, amount_minor=amount,
                         currency="NGN", donor_name=name, donor_email=email,
                         reference=ref)


async def test_first_apply_records_donation_and_bumps_aggregate(make_ledger):
    ledger = make_ledger()
    result = await ledger.apply(_event())

    assert result.applied is True
    assert TOKEN_RE.match(result.receipt_token)
    assert result.record.reference == "cs_test_1"
    assert result.record.status == "success"

    stats = await ledger.get_stats()
    assert stats.total_minor == 500000
    assert stats.donation_count == 1
    assert stats.goal_minor == 100_000_000
    assert stats.updated_at is not None

    stored = await ledger.get_donation("cs_test_1")
    assert stored.receipt_token == result.receipt_token
    assert stored.donor_email == "jane@example.com"


async def test_replay_is_applied_once(make_ledger):
    ledger = make_ledger()
    first = await ledger.apply(_event())
    second = await ledger.apply(_event())

    assert second.applied is False
    assert second.receipt_token == first.receipt_token

    stats = await ledger.get_stats()
    assert stats.total_minor == 500000
    assert stats.donation_count == 1


async def test_replay_never_rewrites_amount(make_ledger):
    ledger = make_ledger()
    await ledger.apply(_event(amount=500000))
    result = await ledger.apply(_event(amount=1))

    assert result.applied is False
    assert result.record.amount_minor == 500000
    assert (await ledger.get_stats()).total_minor == 500000


async def test_replay_merges_donor_details(make_ledger):
    ledger = make_ledger()
    await ledger.apply(_event(name=ANONYMOUS, email=None))
    result = await ledger.apply(_event(name="Jane Doe",
                                       email="jane@example.com"))
    assert result.record.donor_name == "Jane Doe"
    assert result.record.donor_email == "jane@example.com"

    # an anonymous replay does not wipe a known name
    result = await ledger.apply(_event(name=ANONYMOUS, email=None))
    assert result.record.donor_name == "Jane Doe"
    assert result.record.donor_email == "jane@example.com"

    wall = await ledger.recent_donations()
    assert [d.donor_name for d in wall] == ["Jane Doe"]


async def test_concurrent_distinct_references_all_count(make_ledger):
    refs = [f"ref_{i}" for i in range(8)]
    results = await asyncio.gather(*[
        make_ledger().apply(_event(ref=ref, amount=1000 + i))
        for i, ref in enumerate(refs)
    ])
    assert all(r.applied for r in results)

    stats = await make_ledger().get_stats()
    assert stats.donation_count == 8
    assert stats.total_minor == sum(1000 + i for i in range(8))


async def test_concurrent_same_reference_counts_once(make_ledger):
    results = await asyncio.gather(*[
        make_ledger().apply(_event(ref="dup")) for _ in range(5)
    ])
    assert sum(r.applied for r in results) == 1
    assert len({r.receipt_token for r in results}) == 1

    stats = await make_ledger().get_stats()
    assert stats.donation_count == 1
    assert stats.total_minor == 500000


async def test_zero_amount_is_recorded(make_ledger):
    ledger = make_ledger()
    result = await ledger.apply(_event(ref="zero", amount=0))
    assert result.applied is True
    stats = await ledger.get_stats()
    assert stats.donation_count == 1
    assert stats.total_minor == 0


async def test_missing_campaign_without_auto_create(make_ledger):
    ledger = make_ledger(campaign_auto_create=False, campaign_id="nope")
    with pytest.raises(CampaignMissing):
        await ledger.apply(_event())
    assert await ledger.get_donation("cs_test_1") is None


async def test_recent_donations_are_public_and_newest_first(make_ledger):
    ledger = make_ledger()
    for i in range(3):
        await ledger.apply(_event(ref=f"r{i}", name=f"Donor {i}"))

    wall = await ledger.recent_donations(limit=2)
    assert [d.reference for d in wall] == ["r2", "r1"]
    body = wall[0].to_json()
    assert "email" not in body
    assert "receiptToken" not in body and "receipt_token" not in body
    assert body["name"] == "Donor 2"
    assert body["amountMinor"] == 500000


async def test_unknown_reference_reads_none(make_ledger):
    assert await make_ledger().get_donation("missing") is None


# ----------------------------
# Admin contract
# ----------------------------
async def test_edit_adjusts_aggregate_and_audits(make_ledger):
    ledger = make_ledger()
    first = await ledger.apply(_event(amount=500000))

    after = await ledger.edit_donation(
        "cs_test_1",
        {"amount_minor": 300000, "donor_name": "J. Doe", "status": "bogus"},
        actor="admin",
    )
    assert after.amount_minor == 300000
    assert after.donor_name == "J. Doe"
    assert after.status == "success"
    assert after.receipt_token == first.receipt_token

    stats = await ledger.get_stats()
    assert stats.total_minor == 300000
    assert stats.donation_count == 1

    wall = await ledger.recent_donations()
    assert wall[0].amount_minor == 300000
    assert wall[0].donor_name == "J. Doe"

    audit = await ledger.list_audit()
    assert audit[0].action == "edit"
    assert audit[0].before["amount_minor"] == 500000
    assert audit[0].after["amount_minor"] == 300000
    assert "receipt_token" not in audit[0].after
    assert audit[0].actor_id == "admin"


async def test_delete_reverses_aggregate(make_ledger):
    ledger = make_ledger()
    await ledger.apply(_event(ref="a", amount=1000))
    await ledger.apply(_event(ref="b", amount=2000))

    await ledger.delete_donation("a", actor="admin")

    stats = await ledger.get_stats()
    assert stats.total_minor == 2000
    assert stats.donation_count == 1
    assert await ledger.get_donation("a") is None
    assert [d.reference for d in await ledger.recent_donations()] == ["b"]
    assert (await ledger.list_audit())[0].action == "delete"

    with pytest.raises(NotFound):
        await ledger.delete_donation("a", actor="admin")
    with pytest.raises(NotFound):
        await ledger.edit_donation("a", {"donor_name": "x"}, actor="admin")


async def test_manual_add_goes_through_the_ledger(make_ledger):
    ledger = make_ledger()
    result = await ledger.add_manual_donation(
        donor_name="Cash Donor", donor_email=None, amount_minor=7500,
        currency="ngn", actor="admin",
    )
    assert result.applied is True
    assert result.record.provider == "manual"
    assert result.record.reference.startswith("manual_")
    assert result.record.currency == "NGN"
    assert TOKEN_RE.match(result.receipt_token)

    stats = await ledger.get_stats()
    assert stats.total_minor == 7500
    assert stats.donation_count == 1
    assert (await ledger.list_audit())[0].action == "manual_add"

    with pytest.raises(ValueError):
        await ledger.add_manual_donation(
            donor_name=None, donor_email=None, amount_minor=0,
            currency="NGN", actor="admin",
        )


async def test_list_donations_includes_private_fields(make_ledger):
    ledger = make_ledger()
    await ledger.apply(_event(ref="x1"))
    items = await ledger.list_donations()
    assert [d.reference for d in items] == ["x1"]
    assert items[0].to_json()["email"] == "jane@example.com"


async def test_negative_amount_is_refused_without_side_effects(make_ledger):
    ledger = make_ledger()
    await ledger.apply(_event(ref="a", amount=1000))

    with pytest.raises(ValueError):
        await ledger.apply(_event(ref="b", amount=-5000))

    stats = await ledger.get_stats()
    assert stats.total_minor == 1000
    assert stats.donation_count == 1
    assert await ledger.get_donation("b") is None
