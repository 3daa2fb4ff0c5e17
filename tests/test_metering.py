from decimal import Decimal

import pytest

from captiondesk.metering import (
    FREE_LIMIT,
    WATERMARK_LIMIT,
    admit,
    admit_for,
    usage_payload,
    usage_snapshot,
)
from captiondesk.models import Account, PlanTier


@pytest.mark.parametrize(
    "used, duration, allowed, watermarked",
    [
        ("0", "3", True, False),
        ("2", "3", True, False),
        ("4", "2", True, True),
        ("9.5", "0.5", True, True),
        ("9.5", "1", False, False),
        ("10", "0.01", False, False),
        ("0", "10", True, True),
        ("0", "10.01", False, False),
    ],
)
def test_free_tier_gate(used, duration, allowed, watermarked):
    admission = admit(Decimal(used), Decimal(duration), paid=False)
    assert admission.allowed is allowed
    assert admission.watermarked is watermarked
    assert admission.requires_upgrade is (not allowed)


def test_paid_accounts_are_never_gated_or_watermarked():
    admission = admit(Decimal("250"), Decimal("90"), paid=True)
    assert admission.allowed is True
    assert admission.watermarked is False


def test_limits_bound_running_total_after_the_job():
    # exactly at the free limit is still clean
    assert admit(FREE_LIMIT - 1, 1, paid=False).watermarked is False
    # exactly at the watermark limit is still admitted
    assert admit(WATERMARK_LIMIT - 1, 1, paid=False).allowed is True


def test_admit_for_reads_account_tier():
    paid = Account(id="a1", plan_tier=PlanTier.PAID, total_minutes=Decimal("50.00"))
    free = Account(id="a2", total_minutes=Decimal("4.00"))
    assert admit_for(paid, Decimal("3")).watermarked is False
    assert admit_for(free, Decimal("2")).watermarked is True


def test_usage_snapshot_reports_remaining_allowances():
    account = Account(id="a1", total_minutes=Decimal("6.25"))
    snapshot = usage_snapshot(account)
    assert snapshot == {
        "total_minutes": 6.25,
        "free_remaining": 0.0,
        "watermark_remaining": 3.75,
        "is_paid": False,
        "plan_tier": "free",
        "is_over_limit": False,
    }


def test_usage_snapshot_flags_exhausted_free_account():
    snapshot = usage_snapshot(Account(id="a1", total_minutes=Decimal("10.00")))
    assert snapshot["is_over_limit"] is True
    assert snapshot["watermark_remaining"] == 0.0

    paid = usage_snapshot(Account(id="a2", plan_tier=PlanTier.PAID, total_minutes=Decimal("12.00")))
    assert paid["is_over_limit"] is False


def test_usage_payload_shapes():
    account = Account(id="a1", total_minutes=Decimal("4.00"))
    pending = usage_payload(account, Decimal("2.00"), completed=False)
    assert pending["currentJobMinutes"] == 2.0
    assert pending["newTotalMinutes"] == 6.0
    assert "completedJobMinutes" not in pending

    done = usage_payload(account, Decimal("2.00"), completed=True)
    assert done["completedJobMinutes"] == 2.0
    assert done["freeAllowance"] == 5.0
    assert done["watermarkAllowance"] == 10.0
    assert done["isPaidUser"] is False
