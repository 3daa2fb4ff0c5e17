"""Record store for accounts, caption jobs and billing history.

Three backends share the ``RecordStore`` interface and are picked by the
``STORAGE_BACKEND`` setting:

* ``memory``   - process-local tables, used for development and tests
* ``sql``      - SQLAlchemy on ``DATABASE_URL``
* ``airtable`` - the Airtable REST API over httpx

Every backend applies a job status change and the matching ledger credit as a
single unit through :meth:`RecordStore.transition_job`.
"""
from __future__ import annotations

import itertools
import json
import logging
import random
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx
import structlog
from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    create_engine,
    select,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .errors import InvalidTransition, NotFound, UnknownAccount, UpstreamUnavailable
from .models import (
    Account,
    BillingRecord,
    Job,
    JobDraft,
    JobStatus,
    PlanTier,
    to_hundredths,
    utcnow,
)

logger = logging.getLogger(__name__)
struct_logger = structlog.get_logger(__name__)

ACCOUNT_MUTABLE_FIELDS = frozenset({"plan_tier", "stripe_customer_id", "stripe_subscription_id"})
JOB_RESULT_FIELDS = frozenset({"output_caption_file", "output_video_file", "error_log"})


def check_transition(job: Job, allowed_from: Iterable[JobStatus], status: JobStatus) -> None:
    allowed = frozenset(allowed_from)
    if job.status not in allowed:
        raise InvalidTransition(
            f"Job {job.id} is {job.status.value}; cannot move to {status.value}",
            current=job.status.value,
            requested=status.value,
        )


def _check_account_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - ACCOUNT_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Account fields cannot be updated directly: {sorted(unknown)}")


def _check_job_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - JOB_RESULT_FIELDS
    if unknown:
        raise ValueError(f"Job fields cannot be updated directly: {sorted(unknown)}")


class RecordStore(ABC):
    name = "abstract"

    @abstractmethod
    def get_account(self, account_id: str) -> Optional[Account]:
        ...

    @abstractmethod
    def upsert_account(
        self,
        account_id: str,
        *,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Tuple[Account, bool]:
        """Create or update an account profile; returns the account and whether it was created."""

    @abstractmethod
    def update_account(self, account_id: str, **fields: Any) -> Account:
        """Update tier or Stripe identifiers. Minutes are never written here."""

    @abstractmethod
    def find_account_by_customer(self, customer_id: str) -> Optional[Account]:
        ...

    @abstractmethod
    def create_job(self, draft: JobDraft) -> Job:
        ...

    @abstractmethod
    def get_job(self, job_id: int) -> Optional[Job]:
        ...

    @abstractmethod
    def list_jobs(self, account_id: str) -> List[Job]:
        """Jobs owned by ``account_id``, newest first."""

    @abstractmethod
    def transition_job(
        self,
        job_id: int,
        *,
        allowed_from: Iterable[JobStatus],
        status: JobStatus,
        fields: Optional[Dict[str, Any]] = None,
        credit: bool = False,
    ) -> Tuple[Job, Optional[Account]]:
        """Move a job to ``status`` if it is currently in ``allowed_from``.

        With ``credit`` the owning account's minutes grow by the job duration
        in the same unit of work. Raises ``NotFound`` for unknown jobs and
        ``InvalidTransition`` when the guard rejects the move; in both cases
        nothing is written.
        """

    @abstractmethod
    def create_billing(
        self,
        account_id: str,
        *,
        status: str,
        plan: Optional[str] = None,
        amount: Decimal = Decimal("0"),
        stripe_payment_id: Optional[str] = None,
        payment_date: Optional[datetime] = None,
    ) -> BillingRecord:
        ...

    @abstractmethod
    def list_billing(self, account_id: str) -> List[BillingRecord]:
        ...

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None


# ---------------------------------------------------------------- memory


class _MemoryTransaction:
    """Stages job/account replacements and commits them together on clean exit."""

    def __init__(self, store: "MemoryStore") -> None:
        self._store = store
        self.jobs: Dict[int, Job] = {}
        self.accounts: Dict[str, Account] = {}

    def __enter__(self) -> "_MemoryTransaction":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is None:
            self._store._jobs.update(self.jobs)
            self._store._accounts.update(self.accounts)


class MemoryStore(RecordStore):
    name = "memory"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._accounts: Dict[str, Account] = {}
        self._jobs: Dict[int, Job] = {}
        self._billing: List[BillingRecord] = []
        self._job_ids = itertools.count(1)
        self._billing_ids = itertools.count(1)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._lock:
            account = self._accounts.get(account_id)
            return account.copy() if account else None

    def upsert_account(self, account_id, *, email=None, first_name=None, last_name=None):
        now = utcnow()
        with self._lock:
            existing = self._accounts.get(account_id)
            if existing is None:
                account = Account(
                    id=account_id,
                    email=email,
                    first_name=first_name,
                    last_name=last_name,
                    created_at=now,
                    updated_at=now,
                )
                self._accounts[account_id] = account
                return account.copy(), True
            updated = existing.copy(
                email=email if email is not None else existing.email,
                first_name=first_name if first_name is not None else existing.first_name,
                last_name=last_name if last_name is not None else existing.last_name,
                updated_at=now,
            )
            self._accounts[account_id] = updated
            return updated.copy(), False

    def update_account(self, account_id: str, **fields: Any) -> Account:
        _check_account_fields(fields)
        if "plan_tier" in fields:
            fields["plan_tier"] = PlanTier.parse(fields["plan_tier"])
        with self._lock:
            existing = self._accounts.get(account_id)
            if existing is None:
                raise UnknownAccount(account_id)
            updated = existing.copy(updated_at=utcnow(), **fields)
            self._accounts[account_id] = updated
            return updated.copy()

    def find_account_by_customer(self, customer_id: str) -> Optional[Account]:
        with self._lock:
            for account in self._accounts.values():
                if account.stripe_customer_id == customer_id:
                    return account.copy()
        return None

    def create_job(self, draft: JobDraft) -> Job:
        now = utcnow()
        with self._lock:
            if draft.account_id not in self._accounts:
                raise UnknownAccount(draft.account_id)
            job = Job(
                id=next(self._job_ids),
                account_id=draft.account_id,
                filename=draft.filename,
                duration=draft.duration,
                watermarked=draft.watermarked,
                video_url=draft.video_url,
                caption_options=dict(draft.caption_options),
                created_at=now,
                updated_at=now,
            )
            self._jobs[job.id] = job
            return job.copy()

    def get_job(self, job_id: int) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.copy() if job else None

    def list_jobs(self, account_id: str) -> List[Job]:
        with self._lock:
            jobs = [job.copy() for job in self._jobs.values() if job.account_id == account_id]
        return sorted(jobs, key=lambda job: (job.created_at, job.id), reverse=True)

    def transition_job(self, job_id, *, allowed_from, status, fields=None, credit=False):
        fields = dict(fields or {})
        _check_job_fields(fields)
        now = utcnow()
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFound(job_id)
            check_transition(job, allowed_from, status)
            with _MemoryTransaction(self) as tx:
                updated_job = job.copy(status=status, updated_at=now, **fields)
                tx.jobs[job_id] = updated_job
                updated_account = None
                if credit:
                    account = self._accounts.get(job.account_id)
                    if account is None:
                        raise UnknownAccount(job.account_id)
                    updated_account = account.copy(
                        total_minutes=account.total_minutes + job.duration,
                        updated_at=now,
                    )
                    tx.accounts[account.id] = updated_account
            return updated_job.copy(), updated_account.copy() if updated_account else None

    def create_billing(self, account_id, *, status, plan=None, amount=Decimal("0"), stripe_payment_id=None, payment_date=None):
        with self._lock:
            if account_id not in self._accounts:
                raise UnknownAccount(account_id)
            record = BillingRecord(
                id=next(self._billing_ids),
                account_id=account_id,
                status=status,
                plan=plan,
                amount=to_hundredths(amount),
                stripe_payment_id=stripe_payment_id,
                payment_date=payment_date,
            )
            self._billing.append(record)
            return record

    def list_billing(self, account_id: str) -> List[BillingRecord]:
        with self._lock:
            records = [record for record in self._billing if record.account_id == account_id]
        return sorted(records, key=lambda record: record.id, reverse=True)


# ---------------------------------------------------------------- sql


class Base(DeclarativeBase):
    pass


class AccountRow(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    first_name: Mapped[Optional[str]] = mapped_column(String(255))
    last_name: Mapped[Optional[str]] = mapped_column(String(255))
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(String(255))
    plan_tier: Mapped[str] = mapped_column(String(16), default=PlanTier.FREE.value)
    total_minutes: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class JobRow(Base):
    __tablename__ = "caption_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id"), index=True)
    filename: Mapped[str] = mapped_column(String(512))
    video_url: Mapped[Optional[str]] = mapped_column(Text)
    duration: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    watermarked: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(16), default=JobStatus.PENDING.value, index=True)
    output_caption_file: Mapped[Optional[str]] = mapped_column(Text)
    output_video_file: Mapped[Optional[str]] = mapped_column(Text)
    caption_options: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    error_log: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class BillingRow(Base):
    __tablename__ = "billing"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id"), index=True)
    stripe_payment_id: Mapped[Optional[str]] = mapped_column(String(255))
    payment_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    plan: Mapped[Optional[str]] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


def _account_from_row(row: AccountRow) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        plan_tier=PlanTier.parse(row.plan_tier),
        total_minutes=to_hundredths(row.total_minutes or 0),
        stripe_customer_id=row.stripe_customer_id,
        stripe_subscription_id=row.stripe_subscription_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _job_from_row(row: JobRow) -> Job:
    return Job(
        id=row.id,
        account_id=row.account_id,
        filename=row.filename,
        duration=to_hundredths(row.duration),
        watermarked=bool(row.watermarked),
        status=JobStatus(row.status),
        video_url=row.video_url,
        caption_options=dict(row.caption_options or {}),
        output_caption_file=row.output_caption_file,
        output_video_file=row.output_video_file,
        error_log=row.error_log,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _billing_from_row(row: BillingRow) -> BillingRecord:
    return BillingRecord(
        id=row.id,
        account_id=row.account_id,
        status=row.status,
        plan=row.plan,
        amount=to_hundredths(row.amount or 0),
        stripe_payment_id=row.stripe_payment_id,
        payment_date=row.payment_date,
        created_at=row.created_at,
    )


class SqlStore(RecordStore):
    name = "sql"

    def __init__(self, database_url: str, *, echo: bool = False) -> None:
        connect_args: Dict[str, Any] = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self._engine = create_engine(database_url, echo=echo, future=True, connect_args=connect_args)
        self._sessions = sessionmaker(self._engine, expire_on_commit=False)
        Base.metadata.create_all(self._engine)

    def _fail(self, operation: str, exc: SQLAlchemyError) -> UpstreamUnavailable:
        logger.error("Database %s failed: %s", operation, exc)
        return UpstreamUnavailable(f"Database {operation} failed")

    def ping(self) -> bool:
        try:
            with self._sessions() as session:
                session.execute(select(1))
            return True
        except SQLAlchemyError as exc:
            logger.warning("Database ping failed: %s", exc)
            return False

    def get_account(self, account_id: str) -> Optional[Account]:
        try:
            with self._sessions() as session:
                row = session.get(AccountRow, account_id)
                return _account_from_row(row) if row else None
        except SQLAlchemyError as exc:
            raise self._fail("account read", exc) from exc

    def upsert_account(self, account_id, *, email=None, first_name=None, last_name=None):
        now = utcnow()
        try:
            with self._sessions.begin() as session:
                row = session.get(AccountRow, account_id)
                created = row is None
                if created:
                    row = AccountRow(
                        id=account_id,
                        plan_tier=PlanTier.FREE.value,
                        total_minutes=Decimal("0"),
                        created_at=now,
                    )
                    session.add(row)
                if email is not None:
                    row.email = email
                if first_name is not None:
                    row.first_name = first_name
                if last_name is not None:
                    row.last_name = last_name
                row.updated_at = now
                session.flush()
                return _account_from_row(row), created
        except SQLAlchemyError as exc:
            raise self._fail("account upsert", exc) from exc

    def update_account(self, account_id: str, **fields: Any) -> Account:
        _check_account_fields(fields)
        if "plan_tier" in fields:
            fields["plan_tier"] = PlanTier.parse(fields["plan_tier"]).value
        try:
            with self._sessions.begin() as session:
                row = session.get(AccountRow, account_id)
                if row is None:
                    raise UnknownAccount(account_id)
                for key, value in fields.items():
                    setattr(row, key, value)
                row.updated_at = utcnow()
                session.flush()
                return _account_from_row(row)
        except SQLAlchemyError as exc:
            raise self._fail("account update", exc) from exc

    def find_account_by_customer(self, customer_id: str) -> Optional[Account]:
        try:
            with self._sessions() as session:
                row = session.scalars(
                    select(AccountRow).where(AccountRow.stripe_customer_id == customer_id).limit(1)
                ).first()
                return _account_from_row(row) if row else None
        except SQLAlchemyError as exc:
            raise self._fail("account lookup", exc) from exc

    def create_job(self, draft: JobDraft) -> Job:
        now = utcnow()
        try:
            with self._sessions.begin() as session:
                if session.get(AccountRow, draft.account_id) is None:
                    raise UnknownAccount(draft.account_id)
                row = JobRow(
                    account_id=draft.account_id,
                    filename=draft.filename,
                    video_url=draft.video_url,
                    duration=draft.duration,
                    watermarked=draft.watermarked,
                    status=JobStatus.PENDING.value,
                    caption_options=dict(draft.caption_options),
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                session.flush()
                return _job_from_row(row)
        except SQLAlchemyError as exc:
            raise self._fail("job insert", exc) from exc

    def get_job(self, job_id: int) -> Optional[Job]:
        try:
            with self._sessions() as session:
                row = session.get(JobRow, job_id)
                return _job_from_row(row) if row else None
        except SQLAlchemyError as exc:
            raise self._fail("job read", exc) from exc

    def list_jobs(self, account_id: str) -> List[Job]:
        try:
            with self._sessions() as session:
                rows = session.scalars(
                    select(JobRow)
                    .where(JobRow.account_id == account_id)
                    .order_by(JobRow.created_at.desc(), JobRow.id.desc())
                ).all()
                return [_job_from_row(row) for row in rows]
        except SQLAlchemyError as exc:
            raise self._fail("job listing", exc) from exc

    def transition_job(self, job_id, *, allowed_from, status, fields=None, credit=False):
        fields = dict(fields or {})
        _check_job_fields(fields)
        allowed = [item.value for item in allowed_from]
        now = utcnow()
        try:
            with self._sessions.begin() as session:
                # The conditional update is the terminal-state guard: only one
                # writer can match a non-terminal status.
                result = session.execute(
                    update(JobRow)
                    .where(JobRow.id == job_id, JobRow.status.in_(allowed))
                    .values(status=status.value, updated_at=now, **fields)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    current = session.get(JobRow, job_id)
                    if current is None:
                        raise NotFound(job_id)
                    raise InvalidTransition(
                        f"Job {job_id} is {current.status}; cannot move to {status.value}",
                        current=current.status,
                        requested=status.value,
                    )
                row = session.get(JobRow, job_id, populate_existing=True)
                account = None
                if credit:
                    credited = session.execute(
                        update(AccountRow)
                        .where(AccountRow.id == row.account_id)
                        .values(total_minutes=AccountRow.total_minutes + row.duration, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    if credited.rowcount != 1:
                        raise UnknownAccount(row.account_id)
                    account_row = session.get(AccountRow, row.account_id, populate_existing=True)
                    account = _account_from_row(account_row)
                return _job_from_row(row), account
        except SQLAlchemyError as exc:
            raise self._fail("job transition", exc) from exc

    def create_billing(self, account_id, *, status, plan=None, amount=Decimal("0"), stripe_payment_id=None, payment_date=None):
        try:
            with self._sessions.begin() as session:
                if session.get(AccountRow, account_id) is None:
                    raise UnknownAccount(account_id)
                row = BillingRow(
                    account_id=account_id,
                    status=status,
                    plan=plan,
                    amount=to_hundredths(amount),
                    stripe_payment_id=stripe_payment_id,
                    payment_date=payment_date,
                    created_at=utcnow(),
                )
                session.add(row)
                session.flush()
                return _billing_from_row(row)
        except SQLAlchemyError as exc:
            raise self._fail("billing insert", exc) from exc

    def list_billing(self, account_id: str) -> List[BillingRecord]:
        try:
            with self._sessions() as session:
                rows = session.scalars(
                    select(BillingRow).where(BillingRow.account_id == account_id).order_by(BillingRow.id.desc())
                ).all()
                return [_billing_from_row(row) for row in rows]
        except SQLAlchemyError as exc:
            raise self._fail("billing listing", exc) from exc

    def close(self) -> None:
        self._engine.dispose()


# ---------------------------------------------------------------- airtable


USERS_TABLE = "Users"
JOBS_TABLE = "Caption Jobs"
BILLING_TABLE = "Billing"

ACCOUNT_FIELD_MAP = {
    "id": "Account ID",
    "email": "Email",
    "first_name": "First Name",
    "last_name": "Last Name",
    "plan_tier": "Plan Tier",
    "total_minutes": "Total Minutes Captioned",
    "stripe_customer_id": "Stripe Customer ID",
    "stripe_subscription_id": "Stripe Subscription ID",
}

JOB_FIELD_MAP = {
    "id": "Job ID",
    "account_id": "Account ID",
    "filename": "Video File Name",
    "video_url": "Video File URL",
    "duration": "Video Duration",
    "watermarked": "Watermarked",
    "status": "Status",
    "caption_options": "Caption Options",
    "output_caption_file": "Output Caption File",
    "output_video_file": "Output Video File",
    "error_log": "Error Log",
}

BILLING_FIELD_MAP = {
    "id": "Billing ID",
    "account_id": "Account ID",
    "status": "Status",
    "plan": "Plan",
    "amount": "Amount",
    "stripe_payment_id": "Stripe Payment ID",
    "payment_date": "Payment Date",
}

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def _formula_literal(value: Any) -> str:
    text = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{text}'"


def _parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return utcnow()
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return utcnow()


def _generate_record_id() -> int:
    return int(time.time() * 1000) + random.randint(0, 999)


class AirtableStore(RecordStore):
    """Accounts and jobs kept in an Airtable base.

    Airtable has no transactions. Writes are serialised through a process
    lock and the ledger is written as an absolute total, so a retried credit
    never adds twice. If the ledger write cannot be completed the job record
    is restored before the error is raised.
    """

    name = "airtable"
    API_ROOT = "https://api.airtable.com/v0"

    def __init__(
        self,
        api_key: str,
        base_id: str,
        *,
        client: Optional[httpx.Client] = None,
        max_retries: int = 3,
        base_delay: float = 0.5,
    ) -> None:
        if not api_key or not base_id:
            raise ValueError("AIRTABLE_API_KEY and AIRTABLE_BASE_ID are required for the airtable backend")
        self._client = client or httpx.Client(
            base_url=f"{self.API_ROOT}/{base_id}/",
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=10.0,
        )
        self._max_retries = max(1, max_retries)
        self._base_delay = base_delay
        self._lock = threading.RLock()

    # -- transport

    def _request(self, method: str, table: str, *, record_id: Optional[str] = None, **kwargs: Any) -> Dict[str, Any]:
        path = table if record_id is None else f"{table}/{record_id}"
        delay = self._base_delay
        last_error: Optional[Exception] = None
        for attempt in range(1, self._max_retries + 1):
            try:
                response = self._client.request(method, path, **kwargs)
                if response.status_code in RETRYABLE_STATUS_CODES:
                    raise httpx.HTTPStatusError(
                        f"Airtable returned {response.status_code}",
                        request=response.request,
                        response=response,
                    )
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as exc:
                last_error = exc
                if exc.response.status_code not in RETRYABLE_STATUS_CODES:
                    break
            except httpx.TransportError as exc:
                last_error = exc
            logger.warning(
                "Airtable %s %s attempt %s failed: %s", method, path, attempt, last_error
            )
            if attempt < self._max_retries:
                time.sleep(delay)
                delay *= 2
        struct_logger.error("airtable_request_failed", method=method, table=table, error=str(last_error))
        raise UpstreamUnavailable(f"Airtable {method} {table} failed") from last_error

    def _select(self, table: str, formula: str, *, max_records: Optional[int] = None, sort_field: Optional[str] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"filterByFormula": formula}
        if max_records is not None:
            params["maxRecords"] = max_records
        if sort_field is not None:
            params["sort[0][field]"] = sort_field
            params["sort[0][direction]"] = "desc"
        records: List[Dict[str, Any]] = []
        while True:
            payload = self._request("GET", table, params=params)
            records.extend(payload.get("records", []))
            offset = payload.get("offset")
            if not offset or (max_records is not None and len(records) >= max_records):
                return records
            params = {**params, "offset": offset}

    def _first(self, table: str, field_name: str, value: Any) -> Optional[Dict[str, Any]]:
        records = self._select(table, f"{{{field_name}}} = {_formula_literal(value)}", max_records=1)
        return records[0] if records else None

    def _create(self, table: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", table, json={"fields": fields, "typecast": True})

    def _patch(self, table: str, record_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PATCH", table, record_id=record_id, json={"fields": fields, "typecast": True})

    # -- mapping

    @staticmethod
    def _account_from_record(record: Dict[str, Any]) -> Account:
        fields = record.get("fields", {})
        names = ACCOUNT_FIELD_MAP
        return Account(
            id=fields.get(names["id"]) or fields.get(names["email"]) or record["id"],
            email=fields.get(names["email"]) or None,
            first_name=fields.get(names["first_name"]) or None,
            last_name=fields.get(names["last_name"]) or None,
            plan_tier=PlanTier.parse(fields.get(names["plan_tier"])),
            total_minutes=to_hundredths(fields.get(names["total_minutes"]) or 0),
            stripe_customer_id=fields.get(names["stripe_customer_id"]) or None,
            stripe_subscription_id=fields.get(names["stripe_subscription_id"]) or None,
            created_at=_parse_timestamp(record.get("createdTime")),
            updated_at=_parse_timestamp(fields.get("Last Modified") or record.get("createdTime")),
        )

    @staticmethod
    def _job_from_record(record: Dict[str, Any]) -> Job:
        fields = record.get("fields", {})
        names = JOB_FIELD_MAP
        raw_options = fields.get(names["caption_options"])
        try:
            options = json.loads(raw_options) if raw_options else {}
        except ValueError:
            logger.warning("Unparseable caption options on record %s", record.get("id"))
            options = {}
        return Job(
            id=int(fields.get(names["id"]) or 0),
            account_id=fields.get(names["account_id"]) or "",
            filename=fields.get(names["filename"]) or "",
            duration=to_hundredths(fields.get(names["duration"]) or 0),
            watermarked=bool(fields.get(names["watermarked"], False)),
            status=JobStatus(str(fields.get(names["status"]) or JobStatus.PENDING.value).lower()),
            video_url=fields.get(names["video_url"]) or None,
            caption_options=options,
            output_caption_file=fields.get(names["output_caption_file"]) or None,
            output_video_file=fields.get(names["output_video_file"]) or None,
            error_log=fields.get(names["error_log"]) or None,
            created_at=_parse_timestamp(record.get("createdTime")),
            updated_at=_parse_timestamp(fields.get("Last Modified") or record.get("createdTime")),
        )

    @staticmethod
    def _billing_from_record(record: Dict[str, Any]) -> BillingRecord:
        fields = record.get("fields", {})
        names = BILLING_FIELD_MAP
        payment_date = fields.get(names["payment_date"])
        return BillingRecord(
            id=int(fields.get(names["id"]) or 0),
            account_id=fields.get(names["account_id"]) or "",
            status=fields.get(names["status"]) or "pending",
            plan=fields.get(names["plan"]) or None,
            amount=to_hundredths(fields.get(names["amount"]) or 0),
            stripe_payment_id=fields.get(names["stripe_payment_id"]) or None,
            payment_date=_parse_timestamp(payment_date) if payment_date else None,
            created_at=_parse_timestamp(record.get("createdTime")),
        )

    @staticmethod
    def _job_fields(values: Dict[str, Any]) -> Dict[str, Any]:
        return {JOB_FIELD_MAP[key]: value for key, value in values.items()}

    def _account_record(self, account_id: str) -> Optional[Dict[str, Any]]:
        return self._first(USERS_TABLE, ACCOUNT_FIELD_MAP["id"], account_id)

    def _job_record(self, job_id: int) -> Optional[Dict[str, Any]]:
        return self._first(JOBS_TABLE, JOB_FIELD_MAP["id"], job_id)

    # -- accounts

    def get_account(self, account_id: str) -> Optional[Account]:
        record = self._account_record(account_id)
        return self._account_from_record(record) if record else None

    def upsert_account(self, account_id, *, email=None, first_name=None, last_name=None):
        names = ACCOUNT_FIELD_MAP
        profile = {
            names["email"]: email,
            names["first_name"]: first_name,
            names["last_name"]: last_name,
        }
        profile = {key: value for key, value in profile.items() if value is not None}
        with self._lock:
            record = self._account_record(account_id)
            if record is None:
                created = self._create(
                    USERS_TABLE,
                    {
                        names["id"]: account_id,
                        names["plan_tier"]: PlanTier.FREE.value,
                        names["total_minutes"]: 0,
                        **profile,
                    },
                )
                return self._account_from_record(created), True
            if not profile:
                return self._account_from_record(record), False
            updated = self._patch(USERS_TABLE, record["id"], profile)
            return self._account_from_record(updated), False

    def update_account(self, account_id: str, **fields: Any) -> Account:
        _check_account_fields(fields)
        if "plan_tier" in fields:
            fields["plan_tier"] = PlanTier.parse(fields["plan_tier"]).value
        with self._lock:
            record = self._account_record(account_id)
            if record is None:
                raise UnknownAccount(account_id)
            updated = self._patch(
                USERS_TABLE,
                record["id"],
                {ACCOUNT_FIELD_MAP[key]: value for key, value in fields.items()},
            )
            return self._account_from_record(updated)

    def find_account_by_customer(self, customer_id: str) -> Optional[Account]:
        record = self._first(USERS_TABLE, ACCOUNT_FIELD_MAP["stripe_customer_id"], customer_id)
        return self._account_from_record(record) if record else None

    # -- jobs

    def create_job(self, draft: JobDraft) -> Job:
        with self._lock:
            account_record = self._account_record(draft.account_id)
            if account_record is None:
                raise UnknownAccount(draft.account_id)
            values = {
                "id": _generate_record_id(),
                "account_id": draft.account_id,
                "filename": draft.filename,
                "video_url": draft.video_url or "",
                "duration": float(draft.duration),
                "watermarked": draft.watermarked,
                "status": JobStatus.PENDING.value,
                "caption_options": json.dumps(draft.caption_options or {}),
            }
            fields = self._job_fields(values)
            fields["User"] = [account_record["id"]]
            record = self._create(JOBS_TABLE, fields)
            return self._job_from_record(record)

    def get_job(self, job_id: int) -> Optional[Job]:
        record = self._job_record(job_id)
        return self._job_from_record(record) if record else None

    def list_jobs(self, account_id: str) -> List[Job]:
        records = self._select(
            JOBS_TABLE,
            f"{{{JOB_FIELD_MAP['account_id']}}} = {_formula_literal(account_id)}",
            sort_field=JOB_FIELD_MAP["id"],
        )
        return [self._job_from_record(record) for record in records]

    def transition_job(self, job_id, *, allowed_from, status, fields=None, credit=False):
        fields = dict(fields or {})
        _check_job_fields(fields)
        with self._lock:
            record = self._job_record(job_id)
            if record is None:
                raise NotFound(job_id)
            job = self._job_from_record(record)
            check_transition(job, allowed_from, status)

            account_record = None
            if credit:
                account_record = self._account_record(job.account_id)
                if account_record is None:
                    raise UnknownAccount(job.account_id)

            changes = {"status": status.value, **fields}
            updated_record = self._patch(JOBS_TABLE, record["id"], self._job_fields(changes))
            if account_record is None:
                return self._job_from_record(updated_record), None

            before = self._account_from_record(account_record)
            new_total = before.total_minutes + job.duration
            try:
                account_updated = self._patch(
                    USERS_TABLE,
                    account_record["id"],
                    {ACCOUNT_FIELD_MAP["total_minutes"]: float(new_total)},
                )
            except UpstreamUnavailable:
                # The write may have landed with its reply lost.
                landed = self._landed_total(job.account_id, new_total)
                if landed is not None:
                    struct_logger.warning("ledger_write_unacknowledged", job_id=job_id, account_id=job.account_id)
                    return self._job_from_record(updated_record), landed
                previous = {"status": job.status.value}
                for key in fields:
                    previous[key] = getattr(job, key)
                try:
                    self._patch(JOBS_TABLE, record["id"], self._job_fields(previous))
                except UpstreamUnavailable:
                    struct_logger.error(
                        "job_restore_failed",
                        job_id=job_id,
                        status=status.value,
                        account_id=job.account_id,
                    )
                raise
            return self._job_from_record(updated_record), self._account_from_record(account_updated)

    def _landed_total(self, account_id: str, expected: Decimal) -> Optional[Account]:
        """Re-read an account after a failed ledger write; returns it if ``expected`` is stored."""
        try:
            record = self._account_record(account_id)
        except UpstreamUnavailable:
            return None
        if record is None:
            return None
        account = self._account_from_record(record)
        return account if account.total_minutes == expected else None

    # -- billing

    def create_billing(self, account_id, *, status, plan=None, amount=Decimal("0"), stripe_payment_id=None, payment_date=None):
        names = BILLING_FIELD_MAP
        when = payment_date or datetime.now(timezone.utc)
        record = self._create(
            BILLING_TABLE,
            {
                names["id"]: _generate_record_id(),
                names["account_id"]: account_id,
                names["status"]: status,
                names["plan"]: plan or "",
                names["amount"]: float(to_hundredths(amount)),
                names["stripe_payment_id"]: stripe_payment_id or "",
                names["payment_date"]: when.isoformat(),
            },
        )
        return self._billing_from_record(record)

    def list_billing(self, account_id: str) -> List[BillingRecord]:
        records = self._select(
            BILLING_TABLE,
            f"{{{BILLING_FIELD_MAP['account_id']}}} = {_formula_literal(account_id)}",
            sort_field=BILLING_FIELD_MAP["id"],
        )
        return [self._billing_from_record(record) for record in records]

    def close(self) -> None:
        self._client.close()


def build_store(backend: str, *, database_url: str = "", airtable_api_key: str = "", airtable_base_id: str = "") -> RecordStore:
    backend = (backend or "memory").strip().lower()
    if backend == "memory":
        return MemoryStore()
    if backend == "sql":
        return SqlStore(database_url)
    if backend == "airtable":
        return AirtableStore(airtable_api_key, airtable_base_id)
    raise ValueError(f"Unknown STORAGE_BACKEND: {backend!r}")
