import asyncio

import pytest

from trickle_mail.attachments import FilesystemAttachmentStore
from trickle_mail.errors import DeliveryFailedError, ProviderError
from trickle_mail.models import DeliveryTrigger
from trickle_mail.persistence import Persistence
from trickle_mail.prometheus import TrickleMetrics
from trickle_mail.worker import DeliveryOutcome, DeliveryWorker


class ScriptedProvider:
    """Provider replaying a scripted list of outcomes (exceptions or ids)."""

    max_send_rate = 1.0

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.sent = []

    async def send(self, email):
        self.sent.append(email)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return f"<{len(self.sent)}@test>"

    async def verified_identities(self):
        return None


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


async def setup(tmp_path, outcomes=None, total=1, user_id="u1"):
    store = Persistence(str(tmp_path / "trickle.db"))
    await store.init_db()
    await store.insert_job(
        {
            "job_id": "job-1",
            "user_id": user_id,
            "sender": "news@example.com",
            "subject": "Hello",
            "content": "Body",
            "total_recipients": total,
            "created_at": "2025-01-01T00:00:00Z",
            "expires_at": 10_000_000_000,
        }
    )
    provider = ScriptedProvider(outcomes)
    sleep = RecordingSleep()
    metrics = TrickleMetrics()
    worker = DeliveryWorker(
        store,
        provider,
        FilesystemAttachmentStore(tmp_path / "attachments"),
        metrics=metrics,
        sleep=sleep,
    )
    return worker, store, provider, sleep, metrics


def make_trigger(index=0, refs=()):
    return DeliveryTrigger(
        trigger_id=DeliveryTrigger.make_id("job-1", index),
        job_id="job-1",
        recipient=f"r{index}@example.com",
        sender="news@example.com",
        subject="Hello",
        content="Body",
        attachment_refs=list(refs),
        fire_at=0,
    )


async def schedule(store, trigger):
    await store.insert_trigger(trigger.model_dump())
    return trigger


def sample(metrics, name, labels=None):
    return metrics.registry.get_sample_value(name, labels or {}) or 0


@pytest.mark.asyncio
async def test_retryable_errors_then_success(tmp_path):
    throttled = ProviderError("Maximum sending rate exceeded", "Throttling", 429)
    worker, store, provider, sleep, metrics = await setup(tmp_path, [throttled, throttled, "<ok@test>"])
    trigger = await schedule(store, make_trigger())

    assert await worker.process(trigger) is DeliveryOutcome.SENT

    assert len(provider.sent) == 3
    assert sleep.delays == [1.0, 2.0]
    job = await store.get_job("job-1")
    assert job["sent"] == 1
    assert job["failed"] == 0
    assert job["last_error"] is None
    assert job["status"] == "completed"
    assert await store.get_trigger(trigger.trigger_id) is None
    assert sample(metrics, "trickle_retries_total") == 2
    assert sample(metrics, "trickle_sent_total") == 1


@pytest.mark.asyncio
async def test_retries_exhausted_records_failure(tmp_path):
    timeout = ProviderError("timed out", "RequestTimeout", 504)
    worker, store, provider, sleep, _ = await setup(tmp_path, [timeout, timeout, timeout])
    trigger = await schedule(store, make_trigger())

    with pytest.raises(DeliveryFailedError):
        await worker.process(trigger)

    assert len(provider.sent) == 3
    assert sleep.delays == [1.0, 2.0]
    job = await store.get_job("job-1")
    assert job["failed"] == 1
    assert job["status"] == "completed_with_errors"
    assert job["last_error"]["kind"] == "RequestTimeout"


@pytest.mark.asyncio
async def test_non_retryable_error_fails_after_one_attempt(tmp_path):
    rejected = ProviderError("Email address is not verified", "MessageRejected", 400)
    worker, store, provider, sleep, metrics = await setup(tmp_path, [rejected], total=2)
    trigger = await schedule(store, make_trigger())

    with pytest.raises(DeliveryFailedError) as exc_info:
        await worker.process(trigger)

    assert exc_info.value.cause is rejected
    assert exc_info.value.recipient == "r0@example.com"
    assert len(provider.sent) == 1
    assert sleep.delays == []
    job = await store.get_job("job-1")
    assert job["failed"] == 1
    assert job["status"] == "pending"
    assert job["last_error"] == {
        "recipient": "r0@example.com",
        "kind": "MessageRejected",
        "message": "Email address is not verified",
    }
    assert job["last_error_at"] is not None
    assert await store.get_trigger(trigger.trigger_id) is None
    assert sample(metrics, "trickle_failed_total", {"kind": "permanent"}) == 1


@pytest.mark.asyncio
async def test_duplicate_firing_is_counted_once(tmp_path):
    worker, store, provider, _, metrics = await setup(tmp_path, total=2)
    trigger = await schedule(store, make_trigger())

    assert await worker.process(trigger) is DeliveryOutcome.SENT
    assert await worker.process(trigger) is DeliveryOutcome.DUPLICATE

    assert len(provider.sent) == 1
    job = await store.get_job("job-1")
    assert job["sent"] == 1
    assert job["status"] == "pending"
    assert sample(metrics, "trickle_duplicate_triggers_total") == 1


@pytest.mark.asyncio
async def test_concurrent_finishers_finalize_once(tmp_path):
    worker, store, _, _, metrics = await setup(tmp_path, total=5)
    triggers = [await schedule(store, make_trigger(i)) for i in range(5)]

    outcomes = await asyncio.gather(*(worker.process(t) for t in triggers))

    assert outcomes == [DeliveryOutcome.SENT] * 5
    job = await store.get_job("job-1")
    assert job["sent"] == 5
    assert job["status"] == "completed"
    assert job["completed_at"] is not None
    assert sample(metrics, "trickle_jobs_finished_total", {"status": "completed"}) == 1
    assert await store.count_pending_triggers() == 0


@pytest.mark.asyncio
async def test_mixed_outcomes_complete_with_errors(tmp_path):
    rejected = ProviderError("bad mailbox", "InvalidRecipient", 550)
    worker, store, _, _, _ = await setup(tmp_path, ["<1@test>", rejected], total=2)
    await worker.process(await schedule(store, make_trigger(0)))
    with pytest.raises(DeliveryFailedError):
        await worker.process(await schedule(store, make_trigger(1)))
    job = await store.get_job("job-1")
    assert (job["sent"], job["failed"], job["status"]) == (1, 1, "completed_with_errors")


@pytest.mark.asyncio
async def test_message_carries_job_id_user_headers_and_attachments(tmp_path):
    worker, store, provider, _, _ = await setup(tmp_path)
    await store.upsert_user_config(
        {"user_id": "u1", "rate_limit": 60, "max_attachment_size": 1024, "headers": {"List-ID": "news.example.com"}}
    )
    key = await worker.attachments.put("job-1/report.pdf", b"%PDF")
    trigger = await schedule(store, make_trigger(refs=[key]))

    await worker.process(trigger)

    email = provider.sent[0]
    assert email.recipient == "r0@example.com"
    assert email.headers == {"List-ID": "news.example.com", "X-Job-ID": "job-1"}
    assert [(a.filename, a.content) for a in email.attachments] == [("report.pdf", b"%PDF")]


@pytest.mark.asyncio
async def test_missing_job_does_not_crash(tmp_path):
    worker, store, provider, _, _ = await setup(tmp_path)
    orphan = make_trigger().model_copy(update={"job_id": "gone", "trigger_id": "trickle-gone-0"})
    assert await worker.process(orphan) is DeliveryOutcome.SENT
    assert provider.sent[0].headers == {"X-Job-ID": "gone"}
    assert (await store.get_job("job-1"))["sent"] == 0


class FlakyStore(Persistence):
    """Store whose first ``increment_sent`` call fails like a locked database."""

    def __init__(self, db_path):
        super().__init__(db_path)
        self.failures = 1

    async def increment_sent(self, job_id, trigger_id=None):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("database is locked")
        return await super().increment_sent(job_id, trigger_id)


@pytest.mark.asyncio
async def test_refired_trigger_completes_after_bookkeeping_error(tmp_path):
    worker, _, provider, _, _ = await setup(tmp_path)
    store = FlakyStore(str(tmp_path / "trickle.db"))
    worker.persistence = store
    trigger = await schedule(store, make_trigger())

    with pytest.raises(RuntimeError):
        await worker.process(trigger)

    assert await store.get_claim(trigger.trigger_id) is None
    assert await store.get_trigger(trigger.trigger_id) is not None
    assert (await store.get_job("job-1"))["status"] == "pending"

    # The lease expires and the trigger fires again
    assert await worker.process(trigger) is DeliveryOutcome.SENT

    assert len(provider.sent) == 2
    job = await store.get_job("job-1")
    assert (job["sent"], job["failed"], job["status"]) == (1, 0, "completed")
    assert await store.get_trigger(trigger.trigger_id) is None


@pytest.mark.asyncio
async def test_abandoned_claim_is_taken_over(tmp_path):
    worker, store, provider, _, _ = await setup(tmp_path)
    trigger = await schedule(store, make_trigger())
    worker.clock = lambda: 1_000
    worker.claim_timeout = 300

    # Claimed recently by another delivery: left alone
    await store.claim_trigger(trigger.trigger_id, 900)
    assert await worker.process(trigger) is DeliveryOutcome.DUPLICATE
    assert provider.sent == []
    assert await store.get_trigger(trigger.trigger_id) is not None

    # Claimed long ago and never completed: the crashed delivery is redone
    worker.clock = lambda: 2_000
    assert await worker.process(trigger) is DeliveryOutcome.SENT
    assert len(provider.sent) == 1
    assert (await store.get_job("job-1"))["status"] == "completed"


@pytest.mark.asyncio
async def test_duplicate_firing_finalizes_a_complete_job(tmp_path):
    worker, store, _, _, _ = await setup(tmp_path)
    trigger = await schedule(store, make_trigger())
    await store.claim_trigger(trigger.trigger_id, 0)
    await store.increment_sent("job-1", trigger.trigger_id)

    assert await worker.process(trigger) is DeliveryOutcome.DUPLICATE

    assert (await store.get_job("job-1"))["status"] == "completed"
    assert await store.get_trigger(trigger.trigger_id) is None
