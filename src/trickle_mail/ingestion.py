"""Normalization of provider notifications into delivery events.

The provider publishes one notification per delivery outcome (SES event
publishing format), usually wrapped in an SNS record. This module turns a
notification into a ``DeliveryEvent`` and appends it to the event store.

The job a notification belongs to is read from the ``X-Job-ID`` header that
the delivery worker stamps on every message.

Example:
    Ingesting a batch of SNS records::

        result = await ingest_records(persistence, payload["Records"])
        logger.info("Ingested %d events (%d failed)", result.ingested, result.failed)
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from .logger import get_logger
from .models import DeliveryEvent, EventType

JOB_ID_HEADER = "X-Job-ID"
EVENT_TTL_SECONDS = 30 * 24 * 3600
UNKNOWN = "unknown"

logger = get_logger("Ingestion")


class NotificationError(ValueError):
    """Raised when a notification cannot be parsed."""


@dataclass
class IngestResult:
    ingested: int = 0
    failed: int = 0
    events: list[DeliveryEvent] = field(default_factory=list)


def _unwrap(message: Any) -> dict[str, Any]:
    """Return the SES event dict from a raw event, JSON text or SNS record."""
    if isinstance(message, (str, bytes)):
        try:
            message = json.loads(message)
        except ValueError as exc:
            raise NotificationError(f"notification is not valid JSON: {exc}") from exc
    if not isinstance(message, dict):
        raise NotificationError("notification must be an object")
    sns = message.get("Sns")
    if isinstance(sns, dict) and "Message" in sns:
        return _unwrap(sns["Message"])
    if message.get("Type") == "Notification" and "Message" in message:
        return _unwrap(message["Message"])
    return message


def _event_type(event: Mapping[str, Any]) -> str:
    event_type = event.get("eventType") or event.get("notificationType")
    if not event_type:
        raise NotificationError("notification has no eventType")
    return str(event_type)


def extract_job_id(event: Mapping[str, Any]) -> str:
    mail = event.get("mail") or {}
    for header in mail.get("headers") or []:
        if str(header.get("name", "")).lower() == JOB_ID_HEADER.lower():
            return str(header.get("value"))
    common = mail.get("commonHeaders") or {}
    value = common.get(JOB_ID_HEADER)
    if value:
        return str(value[0] if isinstance(value, list) else value)
    return UNKNOWN


def extract_recipient(event: Mapping[str, Any]) -> str:
    event_type = _event_type(event)
    recipient = None
    if event_type == EventType.BOUNCE.value:
        recipients = (event.get("bounce") or {}).get("bouncedRecipients") or []
        recipient = recipients[0].get("emailAddress") if recipients else None
    elif event_type == EventType.COMPLAINT.value:
        recipients = (event.get("complaint") or {}).get("complainedRecipients") or []
        recipient = recipients[0].get("emailAddress") if recipients else None
    elif event_type == EventType.DELIVERY.value:
        recipients = (event.get("delivery") or {}).get("recipients") or []
        recipient = recipients[0] if recipients else None
    if recipient:
        return str(recipient)
    destination = (event.get("mail") or {}).get("destination") or []
    return str(destination[0]) if destination else UNKNOWN


def extract_details(event: Mapping[str, Any]) -> dict[str, Any]:
    """Pick the event-type specific attributes kept with the event."""
    event_type = _event_type(event)
    details: dict[str, Any] = {}
    if event_type == EventType.BOUNCE.value:
        bounce = event.get("bounce") or {}
        details["bounceType"] = bounce.get("bounceType")
        details["bounceSubType"] = bounce.get("bounceSubType")
        recipients = bounce.get("bouncedRecipients") or []
        if recipients:
            details["bounceStatus"] = recipients[0].get("status")
            details["diagnosticCode"] = recipients[0].get("diagnosticCode")
    elif event_type == EventType.COMPLAINT.value:
        complaint = event.get("complaint") or {}
        details["complainedRecipientCount"] = len(complaint.get("complainedRecipients") or [])
        if complaint.get("complaintFeedbackType"):
            details["complaintFeedbackType"] = complaint["complaintFeedbackType"]
    elif event_type == EventType.DELIVERY.value:
        delivery = event.get("delivery") or {}
        details["processingTimeMillis"] = delivery.get("processingTimeMillis")
        details["smtpResponse"] = delivery.get("smtpResponse")
        details["remoteMtaIp"] = delivery.get("remoteMtaIp")
    elif event_type == EventType.OPEN.value:
        details["userAgent"] = (event.get("open") or {}).get("userAgent")
    elif event_type == EventType.CLICK.value:
        click = event.get("click") or {}
        details["link"] = click.get("link")
        details["userAgent"] = click.get("userAgent")
    elif event_type == EventType.REJECT.value:
        reject = event.get("reject") or {}
        details["reason"] = reject.get("reason")
        details["reasonCode"] = reject.get("reasonCode")
    elif event_type == EventType.DELIVERY_DELAY.value:
        delay = event.get("deliveryDelay") or {}
        details["delayType"] = delay.get("delayType")
        details["processingTimeMillis"] = delay.get("processingTimeMillis")
    return {key: value for key, value in details.items() if value is not None}


def parse_notification(
    message: Any, now: float | None = None, ttl_seconds: int = EVENT_TTL_SECONDS
) -> DeliveryEvent:
    """Turn one provider notification into a DeliveryEvent.

    Args:
        message: SES event as dict or JSON text, optionally wrapped in an SNS
            record (``{"Sns": {"Message": ...}}``) or SNS HTTP envelope.
        now: Ingest time in epoch seconds (defaults to the current time).
        ttl_seconds: Retention of the stored event.

    Raises:
        NotificationError: If the notification is malformed.
    """
    event = _unwrap(message)
    now = time.time() if now is None else now
    mail = event.get("mail") or {}
    return DeliveryEvent(
        job_id=extract_job_id(event),
        timestamp=int(now * 1000),
        recipient=extract_recipient(event),
        event_type=_event_type(event),
        message_id=mail.get("messageId"),
        source=mail.get("source"),
        details=extract_details(event),
        ttl=int(now) + ttl_seconds,
    )


async def ingest_records(
    store: Any, records: Iterable[Any], metrics: Any = None, ttl_seconds: int = EVENT_TTL_SECONDS
) -> IngestResult:
    """Parse and append a batch of notifications.

    A malformed record or a failed write is logged and counted; processing
    continues with the next record.
    """
    result = IngestResult()
    for record in records:
        try:
            event = parse_notification(record, ttl_seconds=ttl_seconds)
            await store.insert_event(event.model_dump())
        except Exception:
            logger.exception("Error processing delivery notification")
            result.failed += 1
            continue
        result.ingested += 1
        result.events.append(event)
        if metrics is not None:
            metrics.inc_event(event.event_type)
        logger.info("Wrote %s event for %s (job: %s)", event.event_type, event.recipient, event.job_id)
    return result
