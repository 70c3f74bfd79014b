import pytest

from trickle_mail.classifier import (
    HARD_BOUNCE_RECOMMENDATION,
    classify,
    classify_event,
)
from trickle_mail.models import BounceCategory, DeliveryEvent, Severity


def test_permanent_suppressed_bounce_is_critical_hard():
    result = classify("Bounce", {"bounceType": "Permanent", "bounceSubType": "Suppressed"})
    assert result.severity is Severity.CRITICAL
    assert result.category is BounceCategory.HARD
    assert result.requires_action is True
    assert result.icon == "🔴"
    assert result.interpretation == "Address is on the provider suppression list"
    assert result.recommendation == HARD_BOUNCE_RECOMMENDATION


def test_transient_mailbox_full_is_soft_warning():
    result = classify("Bounce", {"bounceType": "Transient", "bounceSubType": "MailboxFull"})
    assert result.severity is Severity.WARNING
    assert result.category is BounceCategory.SOFT
    assert result.requires_action is False
    assert result.interpretation == "Recipient's mailbox is full"


def test_permanent_general_appends_diagnostic_code():
    result = classify(
        "Bounce",
        {"bounceType": "Permanent", "bounceSubType": "General", "diagnosticCode": "smtp; 550 5.1.1 unknown"},
    )
    assert result.category is BounceCategory.HARD
    assert result.interpretation.endswith("(smtp; 550 5.1.1 unknown)")


def test_unknown_bounce_type_is_info_unknown_category():
    result = classify("Bounce", {"bounceType": "Undetermined"})
    assert result.severity is Severity.INFO
    assert result.category is BounceCategory.UNKNOWN
    assert result.requires_action is False
    assert "Undetermined" in result.interpretation


def test_subtype_only_refines_wording():
    result = classify("Bounce", {"bounceType": "Transient", "bounceSubType": "Brand-new"})
    assert result.category is BounceCategory.SOFT
    assert result.interpretation == "Temporary delivery issue"


def test_complaint_is_critical_and_mentions_count():
    single = classify("Complaint", {"complainedRecipientCount": 1})
    many = classify("Complaint", {"complainedRecipientCount": 3})
    assert single.severity is Severity.CRITICAL
    assert single.requires_action is True
    assert single.category is None
    assert "3 recipients" in many.interpretation
    assert "recipients" not in single.interpretation


@pytest.mark.parametrize(
    "reason,expected",
    [
        ("Bad configuration set", "Configuration issue prevents sending"),
        ("CONTENT looks like spam", "Email content was rejected"),
        ("reputation too low", "Provider blocked due to account reputation"),
        ("something else", "Provider rejected email before sending"),
    ],
)
def test_reject_reason_matching(reason, expected):
    result = classify("Reject", {"reason": reason})
    assert result.severity is Severity.WARNING
    assert result.requires_action is True
    assert result.interpretation == expected


def test_reject_appends_reason_code():
    result = classify("Reject", {"reason": "Bad content", "reasonCode": "R42"})
    assert result.interpretation == "Email content was rejected (R42)"


def test_delivery_delay_temporary_is_refined():
    temporary = classify("DeliveryDelay", {"delayType": "Temporary"})
    other = classify("DeliveryDelay", {"delayType": "MailboxFull"})
    assert temporary.severity is Severity.INFO
    assert temporary.interpretation == "Temporary delivery delay"
    assert other.interpretation == "Email delivery is delayed"


@pytest.mark.parametrize("event_type,icon", [("Delivery", "✅"), ("Send", "📤"), ("Open", "👀"), ("Click", "🔗")])
def test_informational_events(event_type, icon):
    result = classify(event_type, {})
    assert result.severity is Severity.INFO
    assert result.requires_action is False
    assert result.icon == icon


def test_unknown_event_type_echoes_raw_type():
    result = classify("RenderingFailure", None)
    assert result.severity is Severity.INFO
    assert result.interpretation == "Email event: RenderingFailure"


def test_classify_event_accepts_model_and_rows():
    event = DeliveryEvent(
        job_id="job",
        timestamp=1,
        recipient="a@example.com",
        event_type="Bounce",
        details={"bounceType": "Permanent"},
    )
    assert classify_event(event).category is BounceCategory.HARD
    assert classify_event({"event_type": "Complaint", "details": {}}).severity is Severity.CRITICAL
    assert classify_event({"eventType": "Open"}).icon == "👀"
