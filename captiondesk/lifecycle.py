"""Job lifecycle controller.

Jobs move ``pending -> processing -> complete | failed | blocked``. Terminal
states are final: a second terminal report is rejected with
``InvalidTransition``, which is also what keeps a completed job from crediting
the usage ledger twice.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

import structlog

from .errors import (
    InvalidDuration,
    InvalidTransition,
    NotFound,
    UnknownAccount,
    UpgradeRequired,
    UpstreamUnavailable,
)
from .metering import Admission, admit_for
from .models import (
    ACTIVE_STATUSES,
    REPORTABLE_STATUSES,
    Account,
    Job,
    JobDraft,
    JobStatus,
    to_hundredths,
)
from .storage import RecordStore

logger = logging.getLogger(__name__)
struct_logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class JobOutputs:
    caption_file: Optional[str] = None
    video_file: Optional[str] = None

    def any(self) -> bool:
        return bool(self.caption_file or self.video_file)


@dataclass(frozen=True)
class TransitionResult:
    job: Job
    account: Optional[Account] = None

    @property
    def credited(self) -> bool:
        return self.account is not None


def parse_status(value: Any) -> JobStatus:
    if isinstance(value, JobStatus):
        return value
    try:
        return JobStatus(str(value).strip().lower())
    except ValueError as exc:
        raise InvalidTransition(f"Unknown job status {value!r}", requested=str(value)) from exc


def parse_duration(value: Any) -> Decimal:
    try:
        duration = to_hundredths(value)
    except ValueError as exc:
        raise InvalidDuration(f"Invalid video duration {value!r}") from exc
    if duration <= 0:
        raise InvalidDuration(f"Video duration must be positive, got {value!r}")
    return duration


class JobLifecycle:
    def __init__(
        self,
        store: RecordStore,
        *,
        max_attempts: int = 3,
        base_delay: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self._max_attempts = max(1, max_attempts)
        self._base_delay = base_delay
        self._sleep = sleep

    def submit(
        self,
        account_id: str,
        duration: Any,
        *,
        filename: str,
        video_url: Optional[str] = None,
        caption_options: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Job, Admission]:
        """Gate a submission against the latest ledger and create its job."""
        minutes = parse_duration(duration)
        account = self.store.get_account(account_id)
        if account is None:
            raise UnknownAccount(account_id)
        admission = admit_for(account, minutes)
        if not admission.allowed:
            struct_logger.info(
                "submission_rejected",
                account_id=account_id,
                used=float(account.total_minutes),
                duration=float(minutes),
            )
            raise UpgradeRequired()
        job = self.create(
            account_id,
            minutes,
            admission.watermarked,
            filename=filename,
            video_url=video_url,
            caption_options=caption_options,
        )
        return job, admission

    def create(
        self,
        account_id: str,
        duration: Any,
        watermarked: bool,
        *,
        filename: str = "",
        video_url: Optional[str] = None,
        caption_options: Optional[Dict[str, Any]] = None,
    ) -> Job:
        minutes = parse_duration(duration)
        if self.store.get_account(account_id) is None:
            raise UnknownAccount(account_id)
        job = self.store.create_job(
            JobDraft(
                account_id=account_id,
                filename=filename,
                duration=minutes,
                watermarked=bool(watermarked),
                video_url=video_url,
                caption_options=dict(caption_options or {}),
            )
        )
        struct_logger.info(
            "job_created",
            job_id=job.id,
            account_id=account_id,
            duration=float(minutes),
            watermarked=job.watermarked,
        )
        return job

    def mark_dispatched(self, job_id: int) -> Job:
        result = self._transition(job_id, allowed_from={JobStatus.PENDING}, status=JobStatus.PROCESSING)
        return result.job

    def report_status(
        self,
        job_id: int,
        status: Any,
        outputs: Optional[JobOutputs] = None,
        error_text: Optional[str] = None,
    ) -> TransitionResult:
        target = parse_status(status)
        if target not in REPORTABLE_STATUSES:
            raise InvalidTransition(
                f"Status {target.value} cannot be reported", requested=target.value
            )

        fields: Dict[str, Any] = {}
        outputs = outputs or JobOutputs()
        if target is JobStatus.COMPLETE:
            if not outputs.any():
                if self.store.get_job(job_id) is None:
                    raise NotFound(job_id)
                raise InvalidTransition(
                    "A completed job needs at least one output file", requested=target.value
                )
        if outputs.caption_file is not None:
            fields["output_caption_file"] = outputs.caption_file
        if outputs.video_file is not None:
            fields["output_video_file"] = outputs.video_file
        if target in (JobStatus.FAILED, JobStatus.BLOCKED) and error_text is not None:
            fields["error_log"] = error_text

        return self._transition(
            job_id,
            allowed_from=ACTIVE_STATUSES,
            status=target,
            fields=fields,
            credit=target is JobStatus.COMPLETE,
        )

    def _transition(
        self,
        job_id: int,
        *,
        allowed_from,
        status: JobStatus,
        fields: Optional[Dict[str, Any]] = None,
        credit: bool = False,
    ) -> TransitionResult:
        delay = self._base_delay
        for attempt in range(1, self._max_attempts + 1):
            try:
                job, account = self.store.transition_job(
                    job_id,
                    allowed_from=allowed_from,
                    status=status,
                    fields=fields,
                    credit=credit,
                )
                break
            except UpstreamUnavailable as exc:
                logger.warning(
                    "Transition of job %s to %s failed on attempt %s: %s",
                    job_id,
                    status.value,
                    attempt,
                    exc,
                )
                if attempt == self._max_attempts:
                    raise
                self._sleep(delay)
                delay *= 2
            except InvalidTransition as exc:
                struct_logger.info(
                    "job_transition_rejected",
                    job_id=job_id,
                    current=exc.current,
                    requested=status.value,
                )
                raise

        struct_logger.info("job_transition", job_id=job_id, status=status.value)
        if account is not None:
            struct_logger.info(
                "ledger_credited",
                job_id=job_id,
                account_id=account.id,
                minutes=float(job.duration),
                total_minutes=float(account.total_minutes),
            )
        return TransitionResult(job=job, account=account)
