import json

import pytest

from trickle_mail.ingestion import (
    EVENT_TTL_SECONDS,
    NotificationError,
    ingest_records,
    parse_notification,
)
from trickle_mail.persistence import Persistence


def bounce_event(job_id="job-1"):
    return {
        "eventType": "Bounce",
        "mail": {
            "messageId": "msg-1",
            "source": "news@example.com",
            "destination": ["fallback@example.com"],
            "headers": [
                {"name": "Subject", "value": "Hello"},
                {"name": "x-job-id", "value": job_id},
            ],
        },
        "bounce": {
            "bounceType": "Permanent",
            "bounceSubType": "General",
            "bouncedRecipients": [
                {"emailAddress": "gone@example.com", "status": "5.1.1", "diagnosticCode": "smtp; 550 user unknown"}
            ],
        },
    }


def test_sns_wrapped_bounce_is_normalized():
    record = {"Sns": {"Message": json.dumps(bounce_event())}}
    event = parse_notification(record, now=1000.0)
    assert event.job_id == "job-1"
    assert event.event_type == "Bounce"
    assert event.recipient == "gone@example.com"
    assert event.message_id == "msg-1"
    assert event.source == "news@example.com"
    assert event.timestamp == 1_000_000
    assert event.ttl == 1000 + EVENT_TTL_SECONDS
    assert event.details == {
        "bounceType": "Permanent",
        "bounceSubType": "General",
        "bounceStatus": "5.1.1",
        "diagnosticCode": "smtp; 550 user unknown",
    }


def test_job_id_from_common_headers_and_unknown_fallback():
    event = {
        "eventType": "Open",
        "mail": {"destination": ["a@example.com"], "commonHeaders": {"X-Job-ID": ["job-9"]}},
        "open": {"userAgent": "Mail/1.0"},
    }
    parsed = parse_notification(event)
    assert parsed.job_id == "job-9"
    assert parsed.recipient == "a@example.com"
    assert parsed.details == {"userAgent": "Mail/1.0"}

    event["mail"].pop("commonHeaders")
    assert parse_notification(event).job_id == "unknown"


def test_notification_without_recipient_uses_unknown():
    parsed = parse_notification({"eventType": "Send", "mail": {}})
    assert parsed.recipient == "unknown"


def test_sns_http_envelope_and_complaint_details():
    complaint = {
        "notificationType": "Complaint",
        "mail": {"headers": [{"name": "X-Job-ID", "value": "job-2"}]},
        "complaint": {
            "complainedRecipients": [{"emailAddress": "x@example.com"}, {"emailAddress": "y@example.com"}],
            "complaintFeedbackType": "abuse",
        },
    }
    envelope = {"Type": "Notification", "Message": json.dumps(complaint)}
    parsed = parse_notification(envelope)
    assert parsed.event_type == "Complaint"
    assert parsed.recipient == "x@example.com"
    assert parsed.details == {"complainedRecipientCount": 2, "complaintFeedbackType": "abuse"}


@pytest.mark.parametrize("bad", ["not json", 42, {"mail": {}}])
def test_malformed_notifications_raise(bad):
    with pytest.raises(NotificationError):
        parse_notification(bad)


@pytest.mark.asyncio
async def test_ingest_records_continues_past_bad_records(tmp_path):
    store = Persistence(str(tmp_path / "events.db"))
    await store.init_db()
    records = [{"Sns": {"Message": json.dumps(bounce_event())}}, "garbage", bounce_event("job-1")]
    result = await ingest_records(store, records)
    assert result.ingested == 2
    assert result.failed == 1
    stored = await store.list_events("job-1")
    assert [event["event_type"] for event in stored] == ["Bounce", "Bounce"]
    assert stored[0]["details"]["bounceType"] == "Permanent"


@pytest.mark.asyncio
async def test_ingest_records_stores_unknown_types_verbatim(tmp_path):
    store = Persistence(str(tmp_path / "events.db"))
    await store.init_db()
    record = {"eventType": "Subscription", "mail": {"headers": [{"name": "X-Job-ID", "value": "j"}]}}
    result = await ingest_records(store, [record])
    assert result.ingested == 1
    assert (await store.list_events("j"))[0]["event_type"] == "Subscription"
