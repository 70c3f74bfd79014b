# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for the trickle mail service.

This module defines the data models used throughout the application for
validation, serialization, and type safety.

Models:
    - JobStatus: Job lifecycle states and their allowed transitions
    - Job: One bulk-send request with aggregate progress counters
    - DeliveryTrigger: Scheduled instruction to send to one recipient
    - DeliveryEvent: Provider delivery-outcome notification
    - Classification: Severity/recommendation derived from an event
    - JobMetrics: Bounce and complaint rates derived from a job's events
    - UserConfig: Per-user sending configuration
    - QuotaStatus: Daily sending quota and rate-interval bounds

All models serialize with camelCase aliases (``jobId``, ``totalRecipients``)
and accept both the alias and the field name on input.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

LAST_ERROR_MAX_LENGTH = 500
DEFAULT_RATE_LIMIT = 60
DEFAULT_MAX_ATTACHMENT_SIZE = 10 * 1024 * 1024
MAX_ATTACHMENT_SIZE_LIMIT = 25 * 1024 * 1024
QUOTA_USABLE_SHARE = 0.5


class CamelModel(BaseModel):
    """Base model serializing with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobStatus(str, Enum):
    """Lifecycle states of a job.

    ``pending`` is the only non-terminal state. ``failed`` is reserved for
    fan-out failures; per-recipient failures end in ``completed_with_errors``.
    """

    PENDING = "pending"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.PENDING

    def can_transition_to(self, target: "JobStatus") -> bool:
        """Return True if ``self -> target`` is an allowed transition."""
        return target in _TRANSITIONS[self]

    @classmethod
    def for_counters(cls, sent: int, failed: int) -> "JobStatus":
        """Terminal status for a job whose counters add up to its total."""
        return cls.COMPLETED if failed == 0 else cls.COMPLETED_WITH_ERRORS


_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset(
        {JobStatus.COMPLETED, JobStatus.COMPLETED_WITH_ERRORS, JobStatus.FAILED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.COMPLETED_WITH_ERRORS: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class EventType(str, Enum):
    """Delivery-outcome event types emitted by the provider."""

    SEND = "Send"
    DELIVERY = "Delivery"
    BOUNCE = "Bounce"
    COMPLAINT = "Complaint"
    REJECT = "Reject"
    DELIVERY_DELAY = "DeliveryDelay"
    OPEN = "Open"
    CLICK = "Click"


KNOWN_EVENT_TYPES: tuple[str, ...] = tuple(t.value for t in EventType)


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class BounceCategory(str, Enum):
    HARD = "hard"
    SOFT = "soft"
    UNKNOWN = "unknown"


class LastError(CamelModel):
    """Last per-recipient failure observed on a job."""

    recipient: str
    kind: str
    message: str

    @field_validator("message")
    @classmethod
    def truncate_message(cls, v: str) -> str:
        if len(v) > LAST_ERROR_MAX_LENGTH:
            return v[: LAST_ERROR_MAX_LENGTH - 3] + "..."
        return v


class Job(CamelModel):
    """A bulk-send request and its aggregate progress.

    Timestamps are ISO-8601 UTC strings except ``expires_at`` which is an
    epoch-seconds retention horizon.
    """

    job_id: str
    user_id: str
    sender: str
    subject: str
    content: str
    attachment_refs: list[str] = Field(default_factory=list)
    total_recipients: Annotated[int, Field(ge=0)]
    sent: Annotated[int, Field(default=0, ge=0)]
    failed: Annotated[int, Field(default=0, ge=0)]
    status: JobStatus = JobStatus.PENDING
    created_at: str
    completed_at: str | None = None
    expires_at: int
    last_error: LastError | None = None
    last_error_at: str | None = None

    @property
    def processed(self) -> int:
        return self.sent + self.failed

    def status_payload(self) -> dict[str, Any]:
        """Status view returned by the job status endpoint."""
        return self.model_dump(
            by_alias=True,
            mode="json",
            include={
                "job_id",
                "status",
                "total_recipients",
                "sent",
                "failed",
                "created_at",
                "completed_at",
                "last_error",
                "last_error_at",
                "sender",
                "subject",
            },
        )


class DeliveryTrigger(CamelModel):
    """Everything the delivery worker needs to send to one recipient."""

    trigger_id: str
    job_id: str
    recipient: str
    sender: str
    subject: str
    content: str
    attachment_refs: list[str] = Field(default_factory=list)
    fire_at: int

    @staticmethod
    def make_id(job_id: str, index: int) -> str:
        return f"trickle-{job_id}-{index}"


class DeliveryEvent(CamelModel):
    """Provider delivery-outcome notification, immutable once stored."""

    job_id: str
    timestamp: int
    recipient: str
    event_type: str
    message_id: str | None = None
    source: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    ttl: int | None = None


class Classification(CamelModel):
    """Actionable interpretation of one delivery event."""

    severity: Severity
    category: BounceCategory | None = None
    icon: str
    interpretation: str
    recommendation: str
    requires_action: bool


class JobMetrics(CamelModel):
    """Bounce and complaint metrics computed from all events of a job."""

    hard_bounce_count: int = 0
    soft_bounce_count: int = 0
    complaint_count: int = 0
    reject_count: int = 0
    total_event_count: int = 0
    hard_bounce_rate: float = 0.0
    complaint_rate: float = 0.0
    warnings: list[str] = Field(default_factory=list)


class UserConfig(CamelModel):
    """Per-user sending configuration."""

    user_id: str
    rate_limit: Annotated[int, Field(default=DEFAULT_RATE_LIMIT, ge=1)]
    max_attachment_size: Annotated[
        int, Field(default=DEFAULT_MAX_ATTACHMENT_SIZE, ge=0, le=MAX_ATTACHMENT_SIZE_LIMIT)
    ]
    headers: dict[str, str] = Field(default_factory=dict)
    updated_at: str | None = None


class QuotaStatus(CamelModel):
    """Provider sending quota and the rate-interval bounds derived from it.

    ``usable_quota`` is the share of the daily quota jobs may use; the
    quota fields stay None when the provider reports no daily limit.
    """

    max_24_hour_send: Annotated[int | None, Field(default=None, alias="max24HourSend")]
    sent_last_24_hours: Annotated[int, Field(default=0, ge=0, alias="sentLast24Hours")]
    remaining: int | None = None
    usable_quota: int | None = None
    available: int | None = None
    max_send_rate: float
    min_rate_limit: int
    max_rate_limit: int


class AttachmentPayload(BaseModel):
    """Attachment submitted with a job: a filename and base64 content."""

    model_config = ConfigDict(extra="forbid")

    filename: Annotated[str, Field(min_length=1, max_length=255)]
    content: Annotated[str, Field(description="Base64-encoded file content")]
    content_type: Annotated[str, Field(default="application/octet-stream")]


class SubmitJobRequest(BaseModel):
    """Body of the job submission endpoint."""

    sender: str = ""
    recipients: str | list[str] = ""
    subject: str = ""
    content: str = ""
    attachments: list[AttachmentPayload] = Field(default_factory=list)


class SubmitResult(CamelModel):
    job_id: str
    total_recipients: int


class ConfigUpdate(CamelModel):
    """Body of the configuration update endpoint (all fields optional)."""

    rate_limit: int | None = None
    max_attachment_size: int | None = None
    headers: dict[str, str] | None = None
