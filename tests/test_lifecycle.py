import threading
from decimal import Decimal

import pytest

from captiondesk.errors import (
    InvalidDuration,
    InvalidTransition,
    NotFound,
    UnknownAccount,
    UpgradeRequired,
    UpstreamUnavailable,
)
from captiondesk.lifecycle import JobLifecycle, JobOutputs, parse_duration, parse_status
from captiondesk.models import JobStatus, PlanTier
from captiondesk.storage import MemoryStore

OUTPUTS = JobOutputs(caption_file="https://cdn.example.com/job.srt")


@pytest.fixture()
def lifecycle(store):
    store.upsert_account("acct-1", email="ada@example.com", first_name="Ada")
    return JobLifecycle(store, sleep=lambda _: None)


def _total(store, account_id="acct-1"):
    return store.get_account(account_id).total_minutes


def test_submit_creates_pending_job(lifecycle, store):
    job, admission = lifecycle.submit("acct-1", "3", filename="clip.mp4", video_url="/files/clip.mp4")
    assert job.status is JobStatus.PENDING
    assert job.duration == Decimal("3.00")
    assert job.watermarked is False
    assert admission.allowed
    assert store.get_job(job.id).filename == "clip.mp4"
    assert _total(store) == Decimal("0.00")


def test_completion_credits_ledger_once(lifecycle, store):
    job = lifecycle.create("acct-1", Decimal("4"), False)
    lifecycle.mark_dispatched(job.id)

    result = lifecycle.report_status(job.id, "complete", OUTPUTS)
    assert result.credited
    assert result.job.status is JobStatus.COMPLETE
    assert result.job.output_caption_file == OUTPUTS.caption_file
    assert _total(store) == Decimal("4.00")

    with pytest.raises(InvalidTransition) as excinfo:
        lifecycle.report_status(job.id, "complete", OUTPUTS)
    assert excinfo.value.current == "complete"
    assert _total(store) == Decimal("4.00")


def test_pending_job_can_complete_directly(lifecycle, store):
    job = lifecycle.create("acct-1", "2.5", False)
    result = lifecycle.report_status(job.id, JobStatus.COMPLETE, JobOutputs(video_file="out.mp4"))
    assert result.job.output_video_file == "out.mp4"
    assert _total(store) == Decimal("2.50")


def test_watermark_then_limit_walkthrough(lifecycle, store):
    first, admission = lifecycle.submit("acct-1", "4", filename="a.mp4")
    assert admission.watermarked is False
    lifecycle.report_status(first.id, "complete", OUTPUTS)

    second, admission = lifecycle.submit("acct-1", "2", filename="b.mp4")
    assert admission.watermarked is True
    assert second.watermarked is True
    lifecycle.report_status(second.id, "complete", OUTPUTS)
    assert _total(store) == Decimal("6.00")

    third, _ = lifecycle.submit("acct-1", "3.5", filename="c.mp4")
    lifecycle.report_status(third.id, "complete", OUTPUTS)
    assert _total(store) == Decimal("9.50")

    with pytest.raises(UpgradeRequired):
        lifecycle.submit("acct-1", "1", filename="d.mp4")


def test_failed_job_is_terminal_and_not_credited(lifecycle, store):
    job = lifecycle.create("acct-1", "3", False)
    lifecycle.mark_dispatched(job.id)
    result = lifecycle.report_status(job.id, "failed", error_text="ffmpeg exited 1")
    assert not result.credited
    assert result.job.error_log == "ffmpeg exited 1"

    with pytest.raises(InvalidTransition):
        lifecycle.report_status(job.id, "complete", OUTPUTS)
    assert _total(store) == Decimal("0.00")
    assert store.get_job(job.id).status is JobStatus.FAILED


def test_blocked_keeps_error_text(lifecycle, store):
    job = lifecycle.create("acct-1", "1", False)
    result = lifecycle.report_status(job.id, "BLOCKED", error_text="content policy")
    assert result.job.status is JobStatus.BLOCKED
    assert result.job.error_log == "content policy"


def test_processing_report_does_not_credit(lifecycle, store):
    job = lifecycle.create("acct-1", "1", False)
    result = lifecycle.report_status(job.id, "processing")
    assert result.job.status is JobStatus.PROCESSING
    assert not result.credited
    # processing may be reported again while the job is active
    lifecycle.report_status(job.id, "processing")


def test_error_text_ignored_for_complete(lifecycle):
    job = lifecycle.create("acct-1", "1", False)
    result = lifecycle.report_status(job.id, "complete", OUTPUTS, "leftover warning")
    assert result.job.error_log is None


def test_complete_requires_an_output(lifecycle, store):
    job = lifecycle.create("acct-1", "1", False)
    with pytest.raises(InvalidTransition):
        lifecycle.report_status(job.id, "complete")
    assert store.get_job(job.id).status is JobStatus.PENDING


def test_pending_cannot_be_reported(lifecycle):
    job = lifecycle.create("acct-1", "1", False)
    with pytest.raises(InvalidTransition):
        lifecycle.report_status(job.id, "pending")


def test_mark_dispatched_only_from_pending(lifecycle):
    job = lifecycle.create("acct-1", "1", False)
    lifecycle.mark_dispatched(job.id)
    with pytest.raises(InvalidTransition):
        lifecycle.mark_dispatched(job.id)


def test_unknown_job_and_account(lifecycle):
    with pytest.raises(NotFound):
        lifecycle.report_status(999999, "complete", OUTPUTS)
    with pytest.raises(UnknownAccount):
        lifecycle.create("nobody", "1", False)
    with pytest.raises(UnknownAccount):
        lifecycle.submit("nobody", "1", filename="x.mp4")


@pytest.mark.parametrize("value", ["0", "-1", "abc", "", "nan", None])
def test_invalid_durations(lifecycle, value):
    with pytest.raises(InvalidDuration):
        lifecycle.create("acct-1", value, False)


def test_paid_account_never_watermarked(lifecycle, store):
    store.update_account("acct-1", plan_tier=PlanTier.PAID)
    job, admission = lifecycle.submit("acct-1", "45", filename="long.mp4")
    assert admission.watermarked is False
    assert job.watermarked is False


def test_parse_helpers():
    assert parse_status(" Complete ") is JobStatus.COMPLETE
    assert parse_status(JobStatus.FAILED) is JobStatus.FAILED
    with pytest.raises(InvalidTransition):
        parse_status("done")
    assert parse_duration("1.25") == Decimal("1.25")
    assert parse_duration(2) == Decimal("2.00")


class FlakyStore(MemoryStore):
    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.calls = 0

    def transition_job(self, job_id, **kwargs):
        self.calls += 1
        if self.calls <= self.failures:
            raise UpstreamUnavailable("database hiccup")
        return super().transition_job(job_id, **kwargs)


def test_transition_retries_transient_store_failures():
    store = FlakyStore(failures=2)
    store.upsert_account("acct-1")
    delays = []
    lifecycle = JobLifecycle(store, max_attempts=3, base_delay=0.5, sleep=delays.append)
    job = lifecycle.create("acct-1", "2", False)

    result = lifecycle.report_status(job.id, "complete", OUTPUTS)
    assert result.credited
    assert delays == [0.5, 1.0]
    assert store.get_account("acct-1").total_minutes == Decimal("2.00")


def test_transition_gives_up_after_max_attempts():
    store = FlakyStore(failures=5)
    store.upsert_account("acct-1")
    lifecycle = JobLifecycle(store, max_attempts=2, sleep=lambda _: None)
    job = lifecycle.create("acct-1", "2", False)

    with pytest.raises(UpstreamUnavailable):
        lifecycle.report_status(job.id, "complete", OUTPUTS)
    assert store.calls == 2
    assert store.get_job(job.id).status is JobStatus.PENDING
    assert store.get_account("acct-1").total_minutes == Decimal("0.00")


def test_complete_without_outputs_for_unknown_job_is_not_found(lifecycle):
    with pytest.raises(NotFound):
        lifecycle.report_status(999999, "complete")


def test_concurrent_completions_credit_once(lifecycle, store):
    job = lifecycle.create("acct-1", "2", False)
    workers = 8
    barrier = threading.Barrier(workers)
    outcomes = []
    outcomes_lock = threading.Lock()

    def report():
        barrier.wait()
        try:
            lifecycle.report_status(job.id, "complete", OUTPUTS)
            outcome = "ok"
        except InvalidTransition:
            outcome = "rejected"
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=report) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes) == ["ok"] + ["rejected"] * (workers - 1)
    assert _total(store) == Decimal("2.00")
    assert store.get_job(job.id).status is JobStatus.COMPLETE
