"""Classification of delivery events into actionable signals.

Each provider event is mapped to a severity, an optional bounce category, a
short interpretation and a recommendation. Classification is computed on
every read and never stored, so changes to these rules apply retroactively
to events already in the store.

Example:
    Classifying a stored event::

        from trickle_mail.classifier import classify_event

        classification = classify_event(event)
        if classification.requires_action:
            ...
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .models import BounceCategory, Classification, DeliveryEvent, EventType, Severity

HARD_BOUNCE_RECOMMENDATION = (
    "Remove this address from your mailing list immediately. Sending to invalid "
    "addresses damages your sender reputation. Best practice: Maintain hard bounce "
    "rate below 2%."
)
SOFT_BOUNCE_RECOMMENDATION = (
    "This is usually temporary. Monitor if this address continues to soft bounce - "
    "after 10+ consecutive failures, consider removing it. For MailboxFull or "
    "ServerDown issues, retry is often successful."
)
COMPLAINT_RECOMMENDATION = (
    "CRITICAL: Remove this address immediately and investigate. High complaint rates "
    "damage sender reputation and can trigger a provider account review. Verify: "
    "1) Email content quality and relevance, 2) Recipient consent/permission, "
    "3) Unsubscribe process is working. Target: Keep complaint rate below 0.1%."
)

PERMANENT_SUBTYPES: dict[str, str] = {
    "NoEmail": "No email address associated with this recipient",
    "Suppressed": "Address is on the provider suppression list",
    "OnAccountSuppressionList": "Address is on your account suppression list",
}
PERMANENT_GENERIC = "Permanent bounce - invalid or non-existent address"

TRANSIENT_SUBTYPES: dict[str, str] = {
    "MailboxFull": "Recipient's mailbox is full",
    "MessageTooLarge": "Email size exceeds recipient server limits",
    "ContentRejected": "Email content was rejected",
    "AttachmentRejected": "Attachment type not accepted",
    "ServiceUnavailable": "Recipient server temporarily unavailable",
    "MailFromDomainNotVerified": "Sending domain not verified with recipient",
}
TRANSIENT_GENERIC = "Temporary delivery issue"

# Checked in order; the first substring found in the reason wins.
REJECT_REASONS: tuple[tuple[str, str, str], ...] = (
    (
        "config",
        "Configuration issue prevents sending",
        "Check: 1) Verified sender email address, 2) Provider sending limits, "
        "3) DKIM/SPF configuration",
    ),
    (
        "content",
        "Email content was rejected",
        "Review email content for spam triggers. Check: HTML formatting, links, "
        "attachments, text patterns.",
    ),
    (
        "reputation",
        "Provider blocked due to account reputation",
        "Your account reputation is too low for sending. Review previous "
        "bounce/complaint rates and contact provider support.",
    ),
)


def _text(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def classify_bounce(
    bounce_type: str | None = None,
    bounce_subtype: str | None = None,
    diagnostic_code: str | None = None,
) -> Classification:
    """Classify a bounce by type; the subtype only refines the wording."""
    if bounce_type == "Permanent":
        interpretation = PERMANENT_SUBTYPES.get(bounce_subtype or "", PERMANENT_GENERIC)
        if diagnostic_code and (bounce_subtype or "") not in PERMANENT_SUBTYPES:
            interpretation = f"{interpretation} ({diagnostic_code})"
        return Classification(
            severity=Severity.CRITICAL,
            category=BounceCategory.HARD,
            icon="🔴",
            interpretation=interpretation,
            recommendation=HARD_BOUNCE_RECOMMENDATION,
            requires_action=True,
        )

    if bounce_type == "Transient":
        interpretation = TRANSIENT_SUBTYPES.get(bounce_subtype or "", TRANSIENT_GENERIC)
        return Classification(
            severity=Severity.WARNING,
            category=BounceCategory.SOFT,
            icon="⚠️",
            interpretation=interpretation,
            recommendation=SOFT_BOUNCE_RECOMMENDATION,
            requires_action=False,
        )

    return Classification(
        severity=Severity.INFO,
        category=BounceCategory.UNKNOWN,
        icon="ℹ️",
        interpretation=f"Bounce event (type: {bounce_type or 'unknown'})",
        recommendation="Review the bounce details for more information.",
        requires_action=False,
    )


def classify_complaint(complaint_count: int | None = None) -> Classification:
    suffix = f" ({complaint_count} recipients)" if complaint_count and complaint_count > 1 else ""
    return Classification(
        severity=Severity.CRITICAL,
        icon="🚨",
        interpretation=f"Recipient marked email as spam{suffix}",
        recommendation=COMPLAINT_RECOMMENDATION,
        requires_action=True,
    )


def classify_reject(reason: str | None = None, reason_code: str | None = None) -> Classification:
    interpretation = "Provider rejected email before sending"
    recommendation = "Investigate provider account status and configuration"
    lowered = (reason or "").lower()
    for needle, text, advice in REJECT_REASONS:
        if needle in lowered:
            interpretation, recommendation = text, advice
            break
    if reason_code:
        interpretation = f"{interpretation} ({reason_code})"
    return Classification(
        severity=Severity.WARNING,
        icon="⚠️",
        interpretation=interpretation,
        recommendation=recommendation,
        requires_action=True,
    )


def classify_delivery_delay(delay_type: str | None = None) -> Classification:
    if delay_type == "Temporary":
        interpretation = "Temporary delivery delay"
        recommendation = "This is usually temporary. The email will be retried by the provider."
    else:
        interpretation = "Email delivery is delayed"
        recommendation = "Monitor this address. If delay persists, it may eventually bounce."
    return Classification(
        severity=Severity.INFO,
        icon="⏱️",
        interpretation=interpretation,
        recommendation=recommendation,
        requires_action=False,
    )


_INFO_EVENTS: dict[str, tuple[str, str, str]] = {
    EventType.DELIVERY.value: (
        "✅",
        "Email successfully delivered to recipient",
        "No action needed. Email reached the recipient's server.",
    ),
    EventType.SEND.value: (
        "📤",
        "Email successfully sent from the provider",
        "No action needed. Email accepted for delivery by the provider.",
    ),
    EventType.OPEN.value: (
        "👀",
        "Recipient opened the email",
        "No action needed. Engagement metric - recipient is engaged.",
    ),
    EventType.CLICK.value: (
        "🔗",
        "Recipient clicked a link in the email",
        "No action needed. Engagement metric - recipient is highly engaged.",
    ),
}


def classify(event_type: str, details: Mapping[str, Any] | None = None) -> Classification:
    """Classify an event from its raw type and details.

    Args:
        event_type: Provider event type (``Bounce``, ``Complaint``, ...).
            Unknown types get a generic info classification.
        details: Event-type specific attributes as stored by ingestion.

    Returns:
        The event's Classification.
    """
    details = details or {}
    if event_type == EventType.BOUNCE.value:
        return classify_bounce(
            _text(details.get("bounceType")),
            _text(details.get("bounceSubType")),
            _text(details.get("diagnosticCode")),
        )
    if event_type == EventType.COMPLAINT.value:
        count = details.get("complainedRecipientCount")
        return classify_complaint(int(count) if isinstance(count, (int, float)) else None)
    if event_type == EventType.REJECT.value:
        return classify_reject(_text(details.get("reason")), _text(details.get("reasonCode")))
    if event_type == EventType.DELIVERY_DELAY.value:
        return classify_delivery_delay(_text(details.get("delayType")))
    if event_type in _INFO_EVENTS:
        icon, interpretation, recommendation = _INFO_EVENTS[event_type]
        return Classification(
            severity=Severity.INFO,
            icon=icon,
            interpretation=interpretation,
            recommendation=recommendation,
            requires_action=False,
        )
    return Classification(
        severity=Severity.INFO,
        icon="ℹ️",
        interpretation=f"Email event: {event_type}",
        recommendation="Review event details for more information.",
        requires_action=False,
    )


def classify_event(event: DeliveryEvent | Mapping[str, Any]) -> Classification:
    """Classify a stored event (model or persistence row)."""
    if isinstance(event, DeliveryEvent):
        return classify(event.event_type, event.details)
    return classify(str(event.get("event_type") or event.get("eventType") or ""), event.get("details"))
