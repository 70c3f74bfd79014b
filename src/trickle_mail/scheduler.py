# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Fan-out of a submitted job into per-recipient delivery triggers.

Submission runs in three phases:

1. Validation of every input, with no side effect on failure.
2. Creation of the job record (``pending``, counters at zero).
3. Upload of attachments, then creation of one trigger per unique
   recipient, trigger ``i`` firing ``i * rate_interval`` seconds after
   submission.

If phase 3 fails, every trigger and attachment created so far is deleted
(best effort), the job is marked ``failed`` and the error is re-raised.

Example:
    Submitting a job::

        scheduler = JobScheduler(persistence, attachment_store, provider)
        result = await scheduler.submit(
            user_id="u1",
            sender="news@example.com",
            recipients="a@example.com;b@example.com",
            subject="Hello",
            content="<p>Hi</p>",
        )
"""

from __future__ import annotations

import base64
import binascii
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from .attachments import AttachmentStoreBase, attachment_key
from .errors import ValidationError
from .logger import get_logger
from .models import (
    AttachmentPayload,
    DeliveryTrigger,
    JobStatus,
    SubmitResult,
    UserConfig,
)
from .persistence import Persistence
from .provider import EmailProvider, is_valid_address, sender_is_verified
from .rate_limit import RateIntervalPolicy

DEFAULT_MAX_RECIPIENTS = 10000
DEFAULT_JOB_RETENTION_SECONDS = 7 * 24 * 3600
MAX_CONTENT_BYTES = 300_000
MAX_SUBJECT_LENGTH = 998
MAX_REPORTED_INVALID = 10


def utc_iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).isoformat().replace("+00:00", "Z")


def parse_recipients(recipients: str | Iterable[str] | None) -> list[str]:
    """Split, trim and de-duplicate recipients, keeping first-seen order.

    Duplicates are collapsed by exact, case-sensitive match.

    Args:
        recipients: ``;``-separated string or an iterable of addresses.
    """
    if not recipients:
        return []
    if isinstance(recipients, str):
        items = recipients.split(";")
    else:
        items = [part for item in recipients for part in str(item).split(";")]
    return list(dict.fromkeys(item.strip() for item in items if item.strip()))


@dataclass
class PreparedAttachment:
    key: str
    content: bytes


class JobScheduler:
    """Validates submissions and fans them out into delivery triggers.

    Attributes:
        persistence: Job and trigger store.
        attachments: Blob store receiving job attachments.
        provider: Email provider, consulted for verified sender identities.
        max_recipients: Ceiling on unique recipients per job.
        job_retention_seconds: Lifetime of a job record.
    """

    def __init__(
        self,
        persistence: Persistence,
        attachments: AttachmentStoreBase,
        provider: EmailProvider,
        *,
        metrics: Any = None,
        logger=None,
        max_recipients: int = DEFAULT_MAX_RECIPIENTS,
        job_retention_seconds: int = DEFAULT_JOB_RETENTION_SECONDS,
        clock=time.time,
    ):
        self.persistence = persistence
        self.attachments = attachments
        self.provider = provider
        self.metrics = metrics
        self.logger = logger or get_logger("Scheduler")
        self.max_recipients = max(1, int(max_recipients))
        self.job_retention_seconds = job_retention_seconds
        self.clock = clock

    # ---------------------------------------------------------------- validation
    async def validate(
        self,
        sender: str,
        recipients: str | Iterable[str] | None,
        subject: str,
        content: str,
        attachments: Iterable[AttachmentPayload | dict[str, Any]] = (),
        config: UserConfig | None = None,
    ) -> tuple[list[str], list[PreparedAttachment]]:
        """Validate a submission and return its unique recipients and decoded attachments.

        Raises:
            ValidationError: On the first rule the submission breaks.
        """
        sender = (sender or "").strip()
        if not sender or not recipients or not (subject or "").strip() or not (content or "").strip():
            raise ValidationError("Missing required fields")

        if not is_valid_address(sender):
            raise ValidationError("Invalid sender address", {"sender": sender})
        identities = await self.provider.verified_identities()
        if not sender_is_verified(sender, identities):
            raise ValidationError("Sender identity is not verified", {"sender": sender})

        if len(subject) > MAX_SUBJECT_LENGTH:
            raise ValidationError(
                f"Subject too long (max {MAX_SUBJECT_LENGTH} characters)", {"length": len(subject)}
            )
        content_size = len(content.encode("utf-8"))
        if content_size > MAX_CONTENT_BYTES:
            raise ValidationError("Email content too large (max 300KB)", {"size": content_size})

        unique = parse_recipients(recipients)
        if not unique:
            raise ValidationError("No valid recipients")
        if len(unique) > self.max_recipients:
            raise ValidationError(
                f"Too many recipients (max {self.max_recipients})",
                {"count": len(unique), "max": self.max_recipients},
            )
        invalid = [address for address in unique if not is_valid_address(address)]
        if invalid:
            raise ValidationError(
                f"{len(invalid)} invalid recipient address(es)",
                {"invalid": invalid[:MAX_REPORTED_INVALID], "invalidCount": len(invalid)},
            )

        prepared = self._prepare_attachments(attachments, config)
        return unique, prepared

    def _prepare_attachments(
        self,
        attachments: Iterable[AttachmentPayload | dict[str, Any]],
        config: UserConfig | None,
    ) -> list[PreparedAttachment]:
        max_size = config.max_attachment_size if config else None
        prepared: list[PreparedAttachment] = []
        seen: set[str] = set()
        for item in attachments or ():
            att = item if isinstance(item, AttachmentPayload) else AttachmentPayload.model_validate(item)
            try:
                key = attachment_key("", att.filename)
            except ValueError as exc:
                raise ValidationError("Invalid attachment filename", {"filename": att.filename}) from exc
            if key in seen:
                raise ValidationError("Duplicate attachment filename", {"filename": att.filename})
            seen.add(key)
            try:
                data = base64.b64decode(att.content, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise ValidationError("Attachment content is not valid base64", {"filename": att.filename}) from exc
            if max_size is not None and len(data) > max_size:
                raise ValidationError(
                    "Attachment too large",
                    {"filename": att.filename, "size": len(data), "max": max_size},
                )
            prepared.append(PreparedAttachment(key=att.filename, content=data))
        return prepared

    # ------------------------------------------------------------------ fan-out
    async def submit(
        self,
        *,
        user_id: str,
        sender: str,
        recipients: str | Iterable[str] | None,
        subject: str,
        content: str,
        attachments: Iterable[AttachmentPayload | dict[str, Any]] = (),
        config: UserConfig | None = None,
        rate_interval: float | None = None,
    ) -> SubmitResult:
        """Validate a submission, create the job and schedule its triggers.

        Args:
            user_id: Owner of the job.
            sender: From address; must be verified with the provider.
            recipients: ``;``-separated string or list of addresses.
            subject: Message subject.
            content: Rendered message body.
            attachments: Attachments with base64 content.
            config: Sender's configuration (rate limit, attachment size).
            rate_interval: Seconds between consecutive sends; defaults to
                ``config.rate_limit``.

        Returns:
            SubmitResult with the job id and the unique recipient count.

        Raises:
            ValidationError: If the submission is rejected (nothing created).
            Exception: Any storage error during fan-out, after rollback.
        """
        config = config or UserConfig(user_id=user_id)
        unique, prepared = await self.validate(sender, recipients, subject, content, attachments, config)
        interval = config.rate_limit if rate_interval is None else rate_interval
        if interval < 0:
            raise ValidationError("Rate interval must not be negative", {"rateInterval": interval})

        sender = sender.strip()
        job_id = str(uuid.uuid4())
        now = self.clock()
        await self.persistence.insert_job(
            {
                "job_id": job_id,
                "user_id": user_id,
                "sender": sender,
                "subject": subject,
                "content": content,
                "attachment_refs": [],
                "total_recipients": len(unique),
                "status": JobStatus.PENDING.value,
                "created_at": utc_iso(now),
                "expires_at": int(now) + self.job_retention_seconds,
            }
        )
        self.logger.info("Job %s created for %d unique recipients (interval=%ss)", job_id, len(unique), interval)

        uploaded: list[str] = []
        created: list[str] = []
        try:
            for att in prepared:
                key = await self.attachments.put(attachment_key(job_id, att.key), att.content)
                uploaded.append(key)
            if uploaded:
                await self.persistence.set_job_attachments(job_id, uploaded)

            fire_times = RateIntervalPolicy.plan(now, len(unique), interval)
            for index, (recipient, fire_at) in enumerate(zip(unique, fire_times)):
                trigger = DeliveryTrigger(
                    trigger_id=DeliveryTrigger.make_id(job_id, index),
                    job_id=job_id,
                    recipient=recipient,
                    sender=sender,
                    subject=subject,
                    content=content,
                    attachment_refs=uploaded,
                    fire_at=fire_at,
                )
                self.logger.debug(
                    "Scheduling email %d/%d to %s at %s", index + 1, len(unique), recipient, utc_iso(fire_at)
                )
                await self.persistence.insert_trigger(trigger.model_dump())
                created.append(trigger.trigger_id)
        except Exception:
            self.logger.exception("Error during fan-out of job %s, cleaning up", job_id)
            await self._rollback(job_id, created, uploaded)
            raise

        if self.metrics is not None:
            self.metrics.inc_submitted()
        return SubmitResult(job_id=job_id, total_recipients=len(unique))

    async def _rollback(self, job_id: str, triggers: list[str], keys: list[str]) -> None:
        """Delete created triggers and attachments, then mark the job failed."""
        for trigger_id in triggers:
            try:
                await self.persistence.delete_trigger(trigger_id)
                self.logger.info("Cleaned up trigger %s", trigger_id)
            except Exception:
                self.logger.exception("Failed to clean up trigger %s", trigger_id)
        for key in keys:
            try:
                await self.attachments.delete(key)
                self.logger.info("Cleaned up attachment %s", key)
            except Exception:
                self.logger.exception("Failed to clean up attachment %s", key)
        try:
            if await self.persistence.mark_job_failed(job_id, utc_iso(self.clock())) and self.metrics is not None:
                self.metrics.inc_finished(JobStatus.FAILED.value)
        except Exception:
            self.logger.exception("Failed to mark job %s as failed", job_id)
