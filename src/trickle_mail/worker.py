# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery worker: sends one message per fired trigger.

For each trigger the worker:

1. Claims the trigger id. A trigger whose claim is done fired twice; it
   is deleted and skipped without touching any counter. A claim older
   than ``claim_timeout`` that never completed is taken over.
2. Loads attachments and sends the message, retrying retryable errors up
   to ``max_attempts`` times with ``backoff`` delays in between.
3. Atomically increments ``sent`` or ``failed`` on the job, recording
   ``last_error`` on failure, and marks the claim done in the same
   transaction. If this fails the claim is released and the trigger is
   kept, so the next firing delivers it again.
4. Finalizes the job when its counters reach ``total_recipients``. The
   transition is a guarded update, so concurrent finishers write once.
5. Deletes the trigger (best effort).
6. On failure, raises ``DeliveryFailedError`` for the dispatch loop.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from .attachments import AttachmentStoreBase
from .errors import DeliveryFailedError
from .ingestion import JOB_ID_HEADER
from .logger import get_logger
from .models import DeliveryTrigger, JobStatus, LastError
from .persistence import Persistence
from .provider import (
    Attachment,
    EmailProvider,
    OutgoingEmail,
    error_kind,
    is_retryable_error,
)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF = (1.0, 2.0, 4.0)
DEFAULT_CLAIM_TIMEOUT = 300


class DeliveryOutcome(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    DUPLICATE = "duplicate"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class DeliveryWorker:
    """Processes fired delivery triggers.

    Attributes:
        persistence: Job, trigger and claim store.
        provider: Email provider used to send.
        attachments: Blob store holding job attachments.
        metrics: Optional ``TrickleMetrics``.
        max_attempts: Send attempts per trigger.
        backoff: Delay in seconds before attempt ``n + 1``.
        claim_timeout: Seconds after which an unfinished claim counts as
            abandoned.
    """

    def __init__(
        self,
        persistence: Persistence,
        provider: EmailProvider,
        attachments: AttachmentStoreBase,
        *,
        metrics: Any = None,
        logger=None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff: tuple[float, ...] = DEFAULT_BACKOFF,
        clock=time.time,
        claim_timeout: int = DEFAULT_CLAIM_TIMEOUT,
    ):
        self.persistence = persistence
        self.provider = provider
        self.attachments = attachments
        self.metrics = metrics
        self.logger = logger or get_logger("Worker")
        self._sleep = sleep
        self.max_attempts = max(1, max_attempts)
        self.backoff = backoff
        self.clock = clock
        self.claim_timeout = max(0, int(claim_timeout))

    async def process(self, trigger: DeliveryTrigger | dict[str, Any]) -> DeliveryOutcome:
        """Deliver one trigger.

        Returns:
            ``SENT`` on success, ``DUPLICATE`` when the trigger had already
            been processed or is being processed elsewhere.

        Raises:
            DeliveryFailedError: When the send failed; counters are already
                updated when this is raised.
            Exception: Any storage error while recording the outcome,
                after the claim has been released.
        """
        if not isinstance(trigger, DeliveryTrigger):
            trigger = DeliveryTrigger.model_validate(trigger)

        now_ts = int(self.clock())
        if not await self.persistence.claim_trigger(trigger.trigger_id, now_ts, now_ts - self.claim_timeout):
            return await self._skip_claimed(trigger)

        error: BaseException | None = None
        try:
            message_id = await self._send_with_retry(trigger)
            self.logger.info("Sent job %s to %s (%s)", trigger.job_id, trigger.recipient, message_id)
        except Exception as exc:
            error = exc
            self.logger.error("Failed to send job %s to %s: %s", trigger.job_id, trigger.recipient, exc)

        try:
            counters = await self._record_outcome(trigger, error)
        except Exception:
            self.logger.exception("Failed to record outcome of trigger %s, releasing claim", trigger.trigger_id)
            await self._release_claim(trigger.trigger_id)
            raise

        if counters is None:
            self.logger.warning("Job %s missing or already complete, counters not updated", trigger.job_id)
        else:
            await self._maybe_finalize(trigger.job_id, counters)
        await self._delete_trigger(trigger.trigger_id)

        if error is not None:
            raise DeliveryFailedError(trigger.trigger_id, trigger.recipient, error) from error
        return DeliveryOutcome.SENT

    async def _skip_claimed(self, trigger: DeliveryTrigger) -> DeliveryOutcome:
        claim = await self.persistence.get_claim(trigger.trigger_id)
        if claim is not None and not claim["done"]:
            # Owned by another delivery; its lease re-fires the trigger.
            self.logger.warning("Trigger %s is being delivered elsewhere, skipping", trigger.trigger_id)
        else:
            self.logger.warning("Trigger %s already processed, skipping duplicate", trigger.trigger_id)
            job = await self.persistence.get_job(trigger.job_id)
            if job is not None and job["status"] == JobStatus.PENDING.value:
                await self._maybe_finalize(trigger.job_id, job)
            await self._delete_trigger(trigger.trigger_id)
        if self.metrics is not None:
            self.metrics.inc_duplicate()
        return DeliveryOutcome.DUPLICATE

    async def _record_outcome(self, trigger: DeliveryTrigger, error: BaseException | None) -> dict[str, Any] | None:
        if error is None:
            counters = await self.persistence.increment_sent(trigger.job_id, trigger.trigger_id)
            if self.metrics is not None:
                self.metrics.inc_sent()
            return counters
        last_error = LastError(recipient=trigger.recipient, kind=error_kind(error), message=str(error))
        counters = await self.persistence.increment_failed(
            trigger.job_id, last_error.model_dump(), _utc_now_iso(), trigger.trigger_id
        )
        if self.metrics is not None:
            self.metrics.inc_failed("retryable" if is_retryable_error(error) else "permanent")
        return counters

    async def _send_with_retry(self, trigger: DeliveryTrigger) -> str:
        email = OutgoingEmail(
            sender=trigger.sender,
            recipient=trigger.recipient,
            subject=trigger.subject,
            content=trigger.content,
            headers=await self._headers(trigger.job_id),
            attachments=await self._load_attachments(trigger.attachment_refs),
        )
        attempt = 1
        while True:
            try:
                return await self.provider.send(email)
            except Exception as exc:
                if attempt >= self.max_attempts or not is_retryable_error(exc):
                    raise
                delay = self.backoff[min(attempt - 1, len(self.backoff) - 1)] if self.backoff else 0
                self.logger.warning(
                    "Retryable error sending to %s (attempt %d/%d), retrying in %ss: %s",
                    trigger.recipient,
                    attempt,
                    self.max_attempts,
                    delay,
                    exc,
                )
                if self.metrics is not None:
                    self.metrics.inc_retry()
                await self._sleep(delay)
                attempt += 1

    async def _headers(self, job_id: str) -> dict[str, str]:
        headers: dict[str, str] = {}
        job = await self.persistence.get_job(job_id)
        if job is not None:
            config = await self.persistence.get_user_config(job["user_id"])
            if config:
                headers.update(config.get("headers") or {})
        headers[JOB_ID_HEADER] = job_id
        return headers

    async def _load_attachments(self, keys: list[str]) -> list[Attachment]:
        return [
            Attachment(filename=key.rsplit("/", 1)[-1], content=await self.attachments.get(key))
            for key in keys
        ]

    async def _release_claim(self, trigger_id: str) -> None:
        try:
            await self.persistence.release_claim(trigger_id)
        except Exception:
            self.logger.exception("Failed to release claim of trigger %s", trigger_id)

    async def _delete_trigger(self, trigger_id: str) -> None:
        try:
            await self.persistence.delete_trigger(trigger_id)
        except Exception:
            self.logger.exception("Failed to delete trigger %s", trigger_id)

    async def _maybe_finalize(self, job_id: str, counters: dict[str, Any]) -> None:
        sent, failed = counters["sent"], counters["failed"]
        if sent + failed != counters["total_recipients"]:
            return
        status = JobStatus.for_counters(sent, failed)
        if await self.persistence.finalize_job(job_id, status.value, _utc_now_iso()):
            self.logger.info("Job %s finished: %s (sent=%d, failed=%d)", job_id, status.value, sent, failed)
            if self.metrics is not None:
                self.metrics.inc_finished(status.value)
