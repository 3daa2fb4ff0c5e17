"""Usage ledger arithmetic and the tier gate applied at submission time."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Union

from .models import Account, PlanTier

Number = Union[int, float, str, Decimal]

FREE_LIMIT = Decimal("5.0")
WATERMARK_LIMIT = Decimal("10.0")


def _as_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class Admission:
    allowed: bool
    watermarked: bool

    @property
    def requires_upgrade(self) -> bool:
        return not self.allowed


def admit(used: Number, duration: Number, paid: bool) -> Admission:
    """Decide whether a job of ``duration`` minutes may run for an account.

    Both limits bound the running total after the new job. A job that pushes
    the total past the free limit is watermarked for its whole length; one that
    pushes it past the watermark limit is rejected.
    """
    if paid:
        return Admission(allowed=True, watermarked=False)
    projected = _as_decimal(used) + _as_decimal(duration)
    if projected > WATERMARK_LIMIT:
        return Admission(allowed=False, watermarked=False)
    return Admission(allowed=True, watermarked=projected > FREE_LIMIT)


def admit_for(account: Account, duration: Number) -> Admission:
    return admit(account.total_minutes, duration, account.is_paid)


def usage_snapshot(account: Account) -> Dict[str, Any]:
    total = account.total_minutes
    free_remaining = max(Decimal("0"), FREE_LIMIT - total)
    watermark_remaining = max(Decimal("0"), WATERMARK_LIMIT - total)
    return {
        "total_minutes": float(total),
        "free_remaining": float(free_remaining),
        "watermark_remaining": float(watermark_remaining),
        "is_paid": account.is_paid,
        "plan_tier": account.plan_tier.value,
        "is_over_limit": total >= WATERMARK_LIMIT and not account.is_paid,
    }


def usage_payload(account: Account, job_minutes: Decimal, *, completed: bool) -> Dict[str, Any]:
    """``minutesUsage`` block sent alongside pipeline notifications."""
    total = account.total_minutes
    payload: Dict[str, Any] = {
        "totalMinutesUsed": float(total),
        "freeAllowance": float(FREE_LIMIT),
        "watermarkAllowance": float(WATERMARK_LIMIT),
        "isPaidUser": account.plan_tier is PlanTier.PAID,
    }
    if completed:
        payload["completedJobMinutes"] = float(job_minutes)
    else:
        payload["currentJobMinutes"] = float(job_minutes)
        payload["newTotalMinutes"] = float(total + job_minutes)
    return payload
