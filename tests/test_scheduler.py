import base64

import pytest

from trickle_mail.attachments import FilesystemAttachmentStore
from trickle_mail.errors import ValidationError
from trickle_mail.models import UserConfig
from trickle_mail.persistence import Persistence
from trickle_mail.provider import DryRunProvider
from trickle_mail.scheduler import JobScheduler, parse_recipients


class FailingTriggerStore(Persistence):
    """Persistence that raises on the n-th trigger insert."""

    def __init__(self, path, fail_on):
        super().__init__(path)
        self.fail_on = fail_on
        self.inserted = 0

    async def insert_trigger(self, trigger):
        self.inserted += 1
        if self.inserted == self.fail_on:
            raise RuntimeError("storage unavailable")
        await super().insert_trigger(trigger)


async def make_scheduler(tmp_path, store=None, verified=None, max_recipients=100):
    store = store or Persistence(str(tmp_path / "trickle.db"))
    await store.init_db()
    attachments = FilesystemAttachmentStore(tmp_path / "attachments")
    scheduler = JobScheduler(
        store,
        attachments,
        DryRunProvider(verified_senders=verified),
        max_recipients=max_recipients,
        clock=lambda: 1_000_000.0,
    )
    return scheduler, store, attachments


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def test_parse_recipients_dedups_in_order():
    assert parse_recipients("a@x.com; b@x.com;a@x.com;;") == ["a@x.com", "b@x.com"]
    assert parse_recipients(["a@x.com", "c@x.com;a@x.com"]) == ["a@x.com", "c@x.com"]
    assert parse_recipients("A@x.com;a@x.com") == ["A@x.com", "a@x.com"]
    assert parse_recipients(None) == []


@pytest.mark.asyncio
async def test_submit_dedups_and_spaces_triggers(tmp_path):
    scheduler, store, _ = await make_scheduler(tmp_path)
    result = await scheduler.submit(
        user_id="u1",
        sender="news@example.com",
        recipients="a@example.com; b@example.com; a@example.com",
        subject="Hello",
        content="<p>Hi</p>",
        config=UserConfig(user_id="u1", rate_limit=30),
    )
    assert result.total_recipients == 2

    job = await store.get_job(result.job_id)
    assert job["status"] == "pending"
    assert job["total_recipients"] == 2
    assert job["expires_at"] == 1_000_000 + scheduler.job_retention_seconds

    triggers = await store.list_triggers(result.job_id)
    assert [t["recipient"] for t in triggers] == ["a@example.com", "b@example.com"]
    assert [t["fire_at"] for t in triggers] == [1_000_000, 1_000_030]
    assert triggers[0]["trigger_id"] == f"trickle-{result.job_id}-0"


@pytest.mark.asyncio
async def test_explicit_rate_interval_overrides_config(tmp_path):
    scheduler, store, _ = await make_scheduler(tmp_path)
    result = await scheduler.submit(
        user_id="u1",
        sender="news@example.com",
        recipients=["a@example.com", "b@example.com", "c@example.com"],
        subject="Hello",
        content="Hi",
        rate_interval=0,
    )
    triggers = await store.list_triggers(result.job_id)
    assert {t["fire_at"] for t in triggers} == {1_000_000}


@pytest.mark.asyncio
async def test_empty_recipients_creates_nothing(tmp_path):
    scheduler, store, _ = await make_scheduler(tmp_path)
    with pytest.raises(ValidationError) as exc_info:
        await scheduler.submit(
            user_id="u1", sender="news@example.com", recipients=" ; ; ", subject="Hi", content="Body"
        )
    assert exc_info.value.error == "No valid recipients"
    assert await store.list_jobs("u1") == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides,error",
    [
        ({"subject": ""}, "Missing required fields"),
        ({"sender": "not-an-address"}, "Invalid sender address"),
        ({"sender": "news@unverified.com"}, "Sender identity is not verified"),
        ({"subject": "x" * 999}, "Subject too long (max 998 characters)"),
        ({"content": "x" * 300_001}, "Email content too large (max 300KB)"),
        ({"recipients": "a@example.com;bad;worse@"}, "2 invalid recipient address(es)"),
    ],
)
async def test_validation_errors(tmp_path, overrides, error):
    scheduler, store, _ = await make_scheduler(tmp_path, verified=["example.com"])
    request = {
        "user_id": "u1",
        "sender": "news@example.com",
        "recipients": "a@example.com",
        "subject": "Hello",
        "content": "Body",
    }
    request.update(overrides)
    with pytest.raises(ValidationError) as exc_info:
        await scheduler.submit(**request)
    assert exc_info.value.error == error
    assert await store.list_jobs("u1") == []


@pytest.mark.asyncio
async def test_invalid_recipients_are_reported(tmp_path):
    scheduler, _, _ = await make_scheduler(tmp_path)
    recipients = ";".join(f"bad{i}" for i in range(12))
    with pytest.raises(ValidationError) as exc_info:
        await scheduler.validate("news@example.com", recipients, "Hi", "Body")
    assert exc_info.value.details["invalidCount"] == 12
    assert len(exc_info.value.details["invalid"]) == 10


@pytest.mark.asyncio
async def test_too_many_recipients(tmp_path):
    scheduler, _, _ = await make_scheduler(tmp_path, max_recipients=2)
    with pytest.raises(ValidationError) as exc_info:
        await scheduler.validate("news@example.com", "a@x.com;b@x.com;c@x.com", "Hi", "Body")
    assert exc_info.value.details == {"count": 3, "max": 2}


@pytest.mark.asyncio
async def test_attachment_validation(tmp_path):
    scheduler, _, _ = await make_scheduler(tmp_path)
    config = UserConfig(user_id="u1", max_attachment_size=4)

    with pytest.raises(ValidationError, match="Duplicate attachment filename"):
        await scheduler.validate(
            "news@example.com",
            "a@example.com",
            "Hi",
            "Body",
            [{"filename": "a.txt", "content": b64(b"1")}, {"filename": "dir/a.txt", "content": b64(b"2")}],
            config,
        )
    with pytest.raises(ValidationError, match="not valid base64"):
        await scheduler.validate(
            "news@example.com", "a@example.com", "Hi", "Body", [{"filename": "a.txt", "content": "@@@"}], config
        )
    with pytest.raises(ValidationError) as exc_info:
        await scheduler.validate(
            "news@example.com",
            "a@example.com",
            "Hi",
            "Body",
            [{"filename": "big.bin", "content": b64(b"12345")}],
            config,
        )
    assert exc_info.value.error == "Attachment too large"
    assert exc_info.value.details == {"filename": "big.bin", "size": 5, "max": 4}


@pytest.mark.asyncio
async def test_attachments_uploaded_once_and_referenced(tmp_path):
    scheduler, store, attachments = await make_scheduler(tmp_path)
    result = await scheduler.submit(
        user_id="u1",
        sender="news@example.com",
        recipients="a@example.com;b@example.com",
        subject="Report",
        content="See attached",
        attachments=[{"filename": "report.pdf", "content": b64(b"%PDF-1.4")}],
    )
    key = f"{result.job_id}/report.pdf"
    assert await attachments.get(key) == b"%PDF-1.4"
    assert (await store.get_job(result.job_id))["attachment_refs"] == [key]
    for trigger in await store.list_triggers(result.job_id):
        assert trigger["attachment_refs"] == [key]


@pytest.mark.asyncio
async def test_partial_fan_out_is_rolled_back(tmp_path):
    store = FailingTriggerStore(str(tmp_path / "trickle.db"), fail_on=4)
    scheduler, store, attachments = await make_scheduler(tmp_path, store=store)
    recipients = [f"r{i}@example.com" for i in range(10)]

    with pytest.raises(RuntimeError, match="storage unavailable"):
        await scheduler.submit(
            user_id="u1",
            sender="news@example.com",
            recipients=recipients,
            subject="Hello",
            content="Body",
            attachments=[{"filename": "a.txt", "content": b64(b"data")}],
        )

    jobs = await store.list_jobs("u1")
    assert len(jobs) == 1
    job = jobs[0]
    assert job["status"] == "failed"
    assert job["completed_at"] is not None
    assert await store.list_triggers(job["job_id"]) == []
    assert await store.count_pending_triggers() == 0
    with pytest.raises(FileNotFoundError):
        await attachments.get(f"{job['job_id']}/a.txt")
