"""Outbound webhooks to the captioning automation service."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx
import structlog

from .metering import FREE_LIMIT, WATERMARK_LIMIT, usage_payload
from .models import Account, Job

logger = logging.getLogger(__name__)
struct_logger = structlog.get_logger(__name__)


class DispatchError(Exception):
    """The pipeline webhook could not be reached after all retries."""


def _make_async_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(follow_redirects=True)


def account_payload(account: Account) -> Dict[str, Any]:
    total = account.total_minutes
    return {
        "email": account.email or account.id,
        "planTier": account.plan_tier.value,
        "totalMinutesCaptioned": float(total),
        "freeMinutesRemaining": float(max(FREE_LIMIT - total, 0)),
        "watermarkMinutesRemaining": float(max(WATERMARK_LIMIT - total, 0)),
        "stripeCustomerId": account.stripe_customer_id,
        "stripeSubscriptionId": account.stripe_subscription_id,
    }


def submission_payload(job: Job, account: Account) -> Dict[str, Any]:
    return {
        "jobId": job.id,
        "userId": account.id,
        "filename": job.filename,
        "videoFileUrl": job.video_url,
        "videoDuration": float(job.duration),
        "watermarked": job.watermarked,
        "captionOptions": job.caption_options,
        "user": account_payload(account),
        "minutesUsage": usage_payload(account, job.duration, completed=False),
    }


def completion_payload(job: Job, account: Account) -> Dict[str, Any]:
    return {
        "event": "job_completed",
        "jobId": job.id,
        "userId": account.id,
        "status": job.status.value,
        "videoDuration": float(job.duration),
        "user": account_payload(account),
        "minutesUsage": usage_payload(account, job.duration, completed=True),
        "outputFiles": {
            "captionFile": job.output_caption_file,
            "videoFile": job.output_video_file,
        },
    }


class PipelineClient:
    def __init__(
        self,
        submit_url: Optional[str],
        *,
        usage_url: Optional[str] = None,
        account_url: Optional[str] = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
        timeout: float = 10.0,
        client_factory: Callable[[], Any] = _make_async_client,
    ) -> None:
        self.submit_url = submit_url or None
        self.usage_url = usage_url or submit_url or None
        self.account_url = account_url or None
        self._max_retries = max(1, max_retries)
        self._base_delay = base_delay
        self._timeout = timeout
        self._client_factory = client_factory

    @property
    def configured(self) -> bool:
        return self.submit_url is not None

    async def _post_with_retry(self, url: str, payload: Dict[str, Any], *, event: str, job_id: Any = None) -> None:
        delay = self._base_delay
        last_error: Optional[Exception] = None
        client = self._client_factory()
        try:
            for attempt in range(1, self._max_retries + 1):
                try:
                    response = await client.post(
                        url,
                        json=payload,
                        headers={"Content-Type": "application/json"},
                        timeout=self._timeout,
                    )
                    status_code = getattr(response, "status_code", None)
                    response.raise_for_status()
                    struct_logger.info(
                        "pipeline_notified",
                        pipeline_event=event,
                        job_id=job_id,
                        status_code=status_code,
                        attempt=attempt,
                    )
                    return
                except Exception as exc:
                    last_error = exc
                    logger.warning(
                        "Pipeline %s attempt %s failed for job %s: %s",
                        event,
                        attempt,
                        job_id,
                        exc,
                    )
                    if attempt == self._max_retries:
                        break
                    await asyncio.sleep(delay)
                    delay *= 2
        finally:
            try:
                await client.aclose()
            except Exception as exc:
                logger.debug("Closing pipeline client failed: %s", exc)

        struct_logger.error(
            "pipeline_failed",
            pipeline_event=event,
            job_id=job_id,
            attempts=self._max_retries,
            error=str(last_error),
        )
        raise DispatchError(str(last_error) or last_error.__class__.__name__) from last_error

    async def dispatch(self, job: Job, account: Account) -> bool:
        """Send a job to the pipeline. Returns False when no webhook is configured."""
        if self.submit_url is None:
            logger.warning("PIPELINE_WEBHOOK_URL not set; job %s stays pending", job.id)
            return False
        await self._post_with_retry(
            self.submit_url,
            submission_payload(job, account),
            event="job_submitted",
            job_id=job.id,
        )
        return True

    async def notify_usage(self, job: Job, account: Account) -> None:
        if self.usage_url is None:
            return
        try:
            await self._post_with_retry(
                self.usage_url,
                completion_payload(job, account),
                event="job_completed",
                job_id=job.id,
            )
        except DispatchError as exc:
            logger.warning("Usage update for job %s was not delivered: %s", job.id, exc)

    async def notify_account_created(self, account: Account) -> None:
        if self.account_url is None:
            return
        payload = {
            "event": "user_created",
            "userId": account.id,
            "email": account.email,
            "firstName": account.first_name,
            "lastName": account.last_name,
            "planTier": account.plan_tier.value,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self._post_with_retry(self.account_url, payload, event="user_created")
        except DispatchError as exc:
            logger.warning("Account webhook for %s was not delivered: %s", account.id, exc)
