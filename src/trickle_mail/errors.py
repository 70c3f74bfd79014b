# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception hierarchy for the trickle mail service.

Every error raised on purpose by the service derives from ``TrickleError``
and carries a short machine-readable ``code``. The HTTP layer maps
``ValidationError`` to 400 and ``JobNotFoundError`` to 404; anything else
surfaces as a 500.
"""

from __future__ import annotations

from typing import Any


class TrickleError(RuntimeError):
    """Base class for service errors."""

    code = "trickle_error"


class ValidationError(TrickleError):
    """Raised when submitted input is rejected before any side effect.

    Attributes:
        error: Human-readable summary returned as ``error`` to the caller.
        details: Optional structured details returned as ``details``.
    """

    code = "validation_error"

    def __init__(self, error: str, details: Any = None):
        super().__init__(error)
        self.error = error
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.error}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class InvalidTokenError(ValidationError):
    """Raised when an event-log pagination token cannot be decoded."""

    code = "invalid_token"

    def __init__(self, token: str | None = None):
        super().__init__("Invalid pagination token")
        self.token = token


class JobNotFoundError(TrickleError):
    """Raised when a job id does not exist (or has expired)."""

    code = "job_not_found"

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class ProviderError(TrickleError):
    """Error reported by the email provider for a single send attempt.

    Attributes:
        provider_code: Provider error signature (e.g. ``Throttling``,
            ``MessageRejected``) when known.
        status_code: HTTP-like status code (429, 503, ...) when known.
        smtp_code: SMTP reply code of the failed exchange when known.
    """

    code = "provider_error"

    def __init__(
        self,
        message: str,
        provider_code: str | None = None,
        status_code: int | None = None,
        smtp_code: int | None = None,
    ):
        super().__init__(message)
        self.provider_code = provider_code
        self.status_code = status_code
        self.smtp_code = smtp_code


class DeliveryFailedError(TrickleError):
    """Raised by the delivery worker once a failed recipient has been recorded.

    The job counters are already updated when this is raised; the hosting
    runtime uses it to apply its own policy (dead-letter recording).
    """

    code = "delivery_failed"

    def __init__(self, trigger_id: str, recipient: str, cause: BaseException):
        super().__init__(f"Delivery to {recipient} failed: {cause}")
        self.trigger_id = trigger_id
        self.recipient = recipient
        self.cause = cause
