from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

MINUTE_QUANTUM = Decimal("0.01")


class PlanTier(str, Enum):
    FREE = "free"
    PAID = "paid"

    @classmethod
    def parse(cls, value: Any) -> "PlanTier":
        """Normalise a stored tier value; anything but ``paid`` counts as free."""
        if isinstance(value, PlanTier):
            return value
        if isinstance(value, str) and value.strip().lower() == cls.PAID.value:
            return cls.PAID
        return cls.FREE


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETE, JobStatus.FAILED, JobStatus.BLOCKED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})
REPORTABLE_STATUSES = frozenset({JobStatus.PROCESSING}) | TERMINAL_STATUSES


def to_hundredths(value: Any) -> Decimal:
    """Convert a number or numeric string into a Decimal rounded to hundredths."""
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip() or "0")
        except InvalidOperation as exc:
            raise ValueError(f"Invalid decimal value: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid decimal value: {value!r}")
    return amount.quantize(MINUTE_QUANTUM)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    plan_tier: PlanTier = PlanTier.FREE
    total_minutes: Decimal = Decimal("0.00")
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_paid(self) -> bool:
        return self.plan_tier is PlanTier.PAID

    @property
    def display_name(self) -> str:
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return name or self.email or self.id

    def copy(self, **changes: Any) -> "Account":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "plan_tier": self.plan_tier.value,
            "total_minutes": float(self.total_minutes),
            "stripe_customer_id": self.stripe_customer_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class JobDraft:
    """Fields supplied by a submission before the store assigns an id."""

    account_id: str
    filename: str
    duration: Decimal
    watermarked: bool
    video_url: Optional[str] = None
    caption_options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Job:
    id: int
    account_id: str
    filename: str
    duration: Decimal
    watermarked: bool
    status: JobStatus = JobStatus.PENDING
    video_url: Optional[str] = None
    caption_options: Dict[str, Any] = field(default_factory=dict)
    output_caption_file: Optional[str] = None
    output_video_file: Optional[str] = None
    error_log: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def copy(self, **changes: Any) -> "Job":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "filename": self.filename,
            "video_file_url": self.video_url,
            "video_duration": float(self.duration),
            "watermarked": self.watermarked,
            "status": self.status.value,
            "output_caption_file": self.output_caption_file,
            "output_video_file": self.output_video_file,
            "caption_options": dict(self.caption_options),
            "error_log": self.error_log,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class BillingRecord:
    id: int
    account_id: str
    status: str
    plan: Optional[str] = None
    amount: Decimal = Decimal("0.00")
    stripe_payment_id: Optional[str] = None
    payment_date: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "status": self.status,
            "plan": self.plan,
            "amount": float(self.amount),
            "stripe_payment_id": self.stripe_payment_id,
            "payment_date": self.payment_date.isoformat() if self.payment_date else None,
            "created_at": self.created_at.isoformat(),
        }
