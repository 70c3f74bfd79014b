# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration logic for the trickle mail service.

This module provides the TrickleCore class, the central coordinator of the
service. It wires the subsystems together and hosts the background loops:

- Job submission through the fan-out scheduler
- Trigger dispatch: due triggers are leased and handed to the delivery
  worker as independent tasks, bounded by a semaphore
- Dead-letter recording for triggers whose delivery failed
- Retention of expired jobs, events and trigger claims
- Event queries (summary, paginated log with classifications and metrics)
- Per-user configuration
- Provider quota reporting

It exposes a command-based API used by the REST layer and the CLI.

Example:
    Running the service::

        from trickle_mail.core import TrickleCore

        core = TrickleCore(db_path="/data/trickle.db", provider=provider)
        await core.start()
        # Triggers are now dispatched as they become due

        await core.stop()
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import math
from datetime import datetime, timezone
from typing import Any

from .attachments import AttachmentStoreBase, FilesystemAttachmentStore
from .classifier import classify_event
from .errors import DeliveryFailedError, InvalidTokenError, JobNotFoundError, ValidationError
from .event_metrics import compute_job_metrics
from .ingestion import EVENT_TTL_SECONDS, ingest_records
from .logger import get_logger
from .models import (
    KNOWN_EVENT_TYPES,
    MAX_ATTACHMENT_SIZE_LIMIT,
    QUOTA_USABLE_SHARE,
    DeliveryEvent,
    Job,
    QuotaStatus,
    UserConfig,
)
from .persistence import Persistence
from .prometheus import TrickleMetrics
from .provider import DryRunProvider, EmailProvider
from .rate_limit import MAX_RATE_INTERVAL, RateIntervalPolicy
from .scheduler import DEFAULT_JOB_RETENTION_SECONDS, DEFAULT_MAX_RECIPIENTS, JobScheduler
from .worker import DeliveryWorker

DEFAULT_EVENT_LIMIT = 100
MAX_EVENT_LIMIT = 1000
DEFAULT_JOB_LIST_LIMIT = 50
QUOTA_WINDOW_SECONDS = 24 * 3600


def encode_token(key: tuple[int, int] | None) -> str | None:
    """Opaque pagination token for an event-log ``(timestamp, seq)`` key."""
    if key is None:
        return None
    raw = json.dumps({"timestamp": key[0], "seq": key[1]}).encode()
    return base64.urlsafe_b64encode(raw).decode()


def decode_token(token: str | None) -> tuple[int, int] | None:
    """Decode a token produced by ``encode_token``.

    Raises:
        InvalidTokenError: If the token is not a valid pagination token.
    """
    if not token:
        return None
    try:
        data = json.loads(base64.urlsafe_b64decode(token.encode()))
        return int(data["timestamp"]), int(data["seq"])
    except (binascii.Error, ValueError, KeyError, TypeError) as exc:
        raise InvalidTokenError(token) from exc


def _event_limit(value: Any) -> int:
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return DEFAULT_EVENT_LIMIT
    return limit if 1 <= limit <= MAX_EVENT_LIMIT else DEFAULT_EVENT_LIMIT


class TrickleCore:
    """Central orchestrator for paced bulk delivery.

    Attributes:
        logger: Logger instance for diagnostic output.
        persistence: Database persistence layer.
        metrics: Prometheus metrics collector.
        provider: Email provider used by the delivery worker.
        attachments: Attachment blob store.
        rate_policy: Bounds of the per-user rate interval.
        scheduler: Fan-out scheduler.
        worker: Delivery worker.
    """

    def __init__(
        self,
        *,
        db_path: str = "/data/trickle.db",
        logger=None,
        metrics: TrickleMetrics | None = None,
        provider: EmailProvider | None = None,
        attachments: AttachmentStoreBase | None = None,
        attachments_dir: str = "/data/attachments",
        default_rate_limit: int | None = None,
        max_recipients: int = DEFAULT_MAX_RECIPIENTS,
        poll_interval: float = 1.0,
        max_concurrent_deliveries: int = 10,
        lease_seconds: int = 300,
        job_retention_seconds: int = DEFAULT_JOB_RETENTION_SECONDS,
        event_retention_seconds: int = EVENT_TTL_SECONDS,
        cleanup_interval: float = 3600.0,
        test_mode: bool = False,
        sleep=asyncio.sleep,
    ):
        """Initialize the core.

        Args:
            db_path: SQLite database path.
            logger: Custom logger instance. If None, uses default logger.
            metrics: Prometheus metrics collector. If None, creates new instance.
            provider: Email provider. Defaults to a ``DryRunProvider``.
            attachments: Attachment store. Defaults to a filesystem store
                under ``attachments_dir``.
            default_rate_limit: Rate interval of users without a stored
                configuration. Defaults to ``UserConfig``'s default.
            max_recipients: Ceiling on unique recipients per job.
            poll_interval: Seconds between trigger dispatch cycles.
            max_concurrent_deliveries: Deliveries running at the same time.
            lease_seconds: How long a fetched trigger is hidden from later
                cycles while its delivery runs.
            job_retention_seconds: Lifetime of job records.
            event_retention_seconds: Lifetime of ingested events.
            cleanup_interval: Seconds between retention passes.
            test_mode: Disables automatic dispatch; cycles run on ``run now``.
            sleep: Sleep used by the worker between send attempts.
        """
        self.logger = logger or get_logger()
        self.persistence = Persistence(db_path)
        self.metrics = metrics or TrickleMetrics()
        self.provider: EmailProvider = provider or DryRunProvider()
        self.attachments = attachments or FilesystemAttachmentStore(attachments_dir)
        self.rate_policy = RateIntervalPolicy(self.provider.max_send_rate)
        self._default_rate_limit = default_rate_limit
        self.scheduler = JobScheduler(
            self.persistence,
            self.attachments,
            self.provider,
            metrics=self.metrics,
            logger=get_logger("Scheduler"),
            max_recipients=max_recipients,
            job_retention_seconds=job_retention_seconds,
        )
        self._lease_seconds = max(1, int(lease_seconds))
        self.worker = DeliveryWorker(
            self.persistence,
            self.provider,
            self.attachments,
            metrics=self.metrics,
            logger=get_logger("Worker"),
            sleep=sleep,
            claim_timeout=self._lease_seconds,
        )
        self._test_mode = bool(test_mode)
        self._poll_interval = math.inf if self._test_mode else max(0.05, float(poll_interval))
        self._max_concurrent = max(1, int(max_concurrent_deliveries))
        self._semaphore = asyncio.Semaphore(self._max_concurrent)
        self._job_retention_seconds = job_retention_seconds
        self._event_retention_seconds = event_retention_seconds
        self._cleanup_interval = cleanup_interval

        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task_dispatch: asyncio.Task | None = None
        self._task_cleanup: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()

    # --------------------------------------------------------------------- utils
    @staticmethod
    def _utc_now_iso() -> str:
        return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    @staticmethod
    def _utc_now_epoch() -> int:
        return int(datetime.now(timezone.utc).timestamp())

    async def init(self) -> None:
        """Initialize the database schema and the pending-trigger gauge."""
        await self.persistence.init_db()
        await self._refresh_pending_gauge()

    async def handle_command(self, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute an external command.

        Supported commands:
        - ``run now``: Wake the dispatch loop (or run one cycle in test mode)
        - ``submitJob``: Validate and fan out a job
        - ``jobStatus``, ``listJobs``: Job queries
        - ``eventSummary``, ``eventLogs``: Event queries
        - ``ingestEvents``: Append provider notifications
        - ``getConfig``, ``updateConfig``: Per-user configuration
        - ``getQuota``: Provider sending quota and rate-interval bounds
        - ``listSenders``: Verified sender identities
        - ``listDeadLetters``: Failed deliveries recorded by the dispatch loop

        Args:
            cmd: Command name to execute.
            payload: Command-specific parameters.

        Returns:
            dict: Command result with ``ok`` status and command-specific data.

        Raises:
            ValidationError: If the payload is rejected.
            JobNotFoundError: If a job query names an unknown job.
        """
        payload = payload or {}
        match cmd:
            case "run now":
                if self._test_mode:
                    processed = await self.run_dispatch_cycle(wait=True)
                    return {"ok": True, "processed": processed}
                self._wake_event.set()
                return {"ok": True}
            case "submitJob":
                result = await self.submit_job(payload.get("user_id") or "default", payload)
                return {"ok": True, **result}
            case "jobStatus":
                return {"ok": True, **await self.job_status(payload.get("job_id", ""))}
            case "listJobs":
                jobs = await self.list_jobs(
                    payload.get("user_id") or "default", payload.get("limit", DEFAULT_JOB_LIST_LIMIT)
                )
                return {"ok": True, "jobs": jobs}
            case "eventSummary":
                return {"ok": True, **await self.event_summary(payload.get("job_id", ""))}
            case "eventLogs":
                logs = await self.event_logs(
                    payload.get("job_id", ""),
                    event_type=payload.get("event_type"),
                    recipient=payload.get("recipient"),
                    next_token=payload.get("next_token"),
                    limit=payload.get("limit", DEFAULT_EVENT_LIMIT),
                    total_recipients=payload.get("total_recipients"),
                )
                return {"ok": True, **logs}
            case "ingestEvents":
                return {"ok": True, **await self.ingest_events(payload.get("records") or [])}
            case "getConfig":
                config = await self.get_config(payload.get("user_id") or "default")
                return {"ok": True, **config.model_dump(by_alias=True, mode="json")}
            case "updateConfig":
                user_id = payload.pop("user_id", None) or "default"
                config = await self.update_config(user_id, payload)
                return {"ok": True, **config.model_dump(by_alias=True, mode="json")}
            case "getQuota":
                return {"ok": True, **(await self.get_quota()).model_dump(by_alias=True)}
            case "listSenders":
                return {"ok": True, "senders": await self.provider.verified_identities()}
            case "listDeadLetters":
                letters = await self.persistence.list_dead_letters(payload.get("job_id"))
                return {"ok": True, "deadLetters": letters}
            case _:
                return {"ok": False, "error": "unknown command"}

    # ---------------------------------------------------------------- submission
    async def submit_job(self, user_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Submit a job on behalf of ``user_id``.

        Returns:
            ``{"jobId", "totalRecipients"}``.
        """
        config = await self.get_config(user_id)
        result = await self.scheduler.submit(
            user_id=user_id,
            sender=payload.get("sender") or "",
            recipients=payload.get("recipients"),
            subject=payload.get("subject") or "",
            content=payload.get("content") or "",
            attachments=payload.get("attachments") or [],
            config=config,
            rate_interval=payload.get("rate_interval"),
        )
        await self._refresh_pending_gauge()
        if not self._test_mode:
            self._wake_event.set()
        return result.model_dump(by_alias=True)

    # -------------------------------------------------------------- job queries
    async def get_job(self, job_id: str) -> Job:
        row = await self.persistence.get_job(job_id)
        if row is None:
            raise JobNotFoundError(job_id)
        return Job.model_validate(row)

    async def job_status(self, job_id: str) -> dict[str, Any]:
        """Status view of a job.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        return (await self.get_job(job_id)).status_payload()

    async def list_jobs(self, user_id: str, limit: int = DEFAULT_JOB_LIST_LIMIT) -> list[dict[str, Any]]:
        """The caller's jobs, newest first."""
        try:
            limit = max(1, min(int(limit), DEFAULT_JOB_LIST_LIMIT))
        except (TypeError, ValueError):
            limit = DEFAULT_JOB_LIST_LIMIT
        rows = await self.persistence.list_jobs(user_id, limit)
        return [Job.model_validate(row).status_payload() for row in rows]

    # ------------------------------------------------------------- event queries
    async def event_summary(self, job_id: str) -> dict[str, Any]:
        """Event counts per type, zero-filled for every known type."""
        counts = await self.persistence.count_events_by_type(job_id)
        return {
            "jobId": job_id,
            "summary": {event_type: counts.get(event_type, 0) for event_type in KNOWN_EVENT_TYPES},
        }

    async def event_logs(
        self,
        job_id: str,
        *,
        event_type: str | None = None,
        recipient: str | None = None,
        next_token: str | None = None,
        limit: Any = DEFAULT_EVENT_LIMIT,
        total_recipients: int | None = None,
    ) -> dict[str, Any]:
        """One newest-first page of a job's events with their classifications.

        Filters apply to the fetched page, so a filtered page may hold fewer
        than ``limit`` events while ``nextToken`` is still set.

        Raises:
            InvalidTokenError: If ``next_token`` cannot be decoded.
        """
        limit = _event_limit(limit)
        rows, last_key = await self.persistence.query_events(job_id, limit, decode_token(next_token))

        events: list[dict[str, Any]] = []
        needle = recipient.lower() if recipient else None
        for row in rows:
            if event_type and row.get("event_type") != event_type:
                continue
            if needle and needle not in str(row.get("recipient", "")).lower():
                continue
            event = DeliveryEvent.model_validate(row)
            events.append(
                {
                    **event.model_dump(by_alias=True, mode="json"),
                    **classify_event(event).model_dump(by_alias=True, mode="json"),
                }
            )

        total = await self._total_recipients(job_id, total_recipients)
        metrics = await compute_job_metrics(self.persistence, job_id, total)
        return {
            "events": events,
            "count": len(events),
            "nextToken": encode_token(last_key),
            "filters": {"eventType": event_type, "recipient": recipient},
            "jobMetrics": metrics.model_dump(by_alias=True, mode="json"),
        }

    async def _total_recipients(self, job_id: str, fallback: int | None) -> int:
        try:
            row = await self.persistence.get_job(job_id)
        except Exception:
            self.logger.exception("Failed to read job %s for metrics", job_id)
            row = None
        if row is not None:
            return int(row["total_recipients"])
        try:
            return max(0, int(fallback or 0))
        except (TypeError, ValueError):
            return 0

    async def ingest_events(self, records: list[Any]) -> dict[str, int]:
        result = await ingest_records(
            self.persistence, records, self.metrics, ttl_seconds=self._event_retention_seconds
        )
        return {"ingested": result.ingested, "failed": result.failed}

    # -------------------------------------------------------------------- config
    async def get_config(self, user_id: str) -> UserConfig:
        """Stored configuration of ``user_id``, or the defaults."""
        stored = await self.persistence.get_user_config(user_id)
        if stored:
            return UserConfig.model_validate(stored)
        if self._default_rate_limit is not None:
            return UserConfig(user_id=user_id, rate_limit=self._default_rate_limit)
        return UserConfig(user_id=user_id)

    async def update_config(self, user_id: str, changes: dict[str, Any]) -> UserConfig:
        """Validate and store configuration changes.

        Raises:
            ValidationError: If ``rateLimit`` is outside the policy bounds or
                ``maxAttachmentSize`` outside 0..25 MiB.
        """
        current = await self.get_config(user_id)
        data = current.model_dump()
        rate_limit = changes.get("rate_limit", changes.get("rateLimit"))
        if rate_limit is not None:
            data["rate_limit"] = self.rate_policy.validate(rate_limit)
        max_size = changes.get("max_attachment_size", changes.get("maxAttachmentSize"))
        if max_size is not None:
            if (
                not isinstance(max_size, int)
                or isinstance(max_size, bool)
                or not 0 <= max_size <= MAX_ATTACHMENT_SIZE_LIMIT
            ):
                raise ValidationError(
                    f"Max attachment size must be between 0 and {MAX_ATTACHMENT_SIZE_LIMIT} bytes"
                )
            data["max_attachment_size"] = max_size
        headers = changes.get("headers")
        if headers is not None:
            if not isinstance(headers, dict):
                raise ValidationError("Headers must be an object")
            data["headers"] = {str(key): str(value) for key, value in headers.items()}
        data["updated_at"] = self._utc_now_iso()
        config = UserConfig.model_validate(data)
        await self.persistence.upsert_user_config(config.model_dump())
        self.logger.info("Updated configuration for user %s", user_id)
        return config

    # -------------------------------------------------------------------- quota
    async def get_quota(self) -> QuotaStatus:
        """Provider quota usage and the per-user rate-interval bounds.

        When the provider does not track its own daily usage, the number of
        deliveries recorded in the last 24 hours is used instead.
        """
        reported = await self.provider.quota()
        max_send_rate = reported.max_send_rate if reported else self.provider.max_send_rate
        max_24_hour_send = reported.max_24_hour_send if reported else None
        sent = reported.sent_last_24_hours if reported else None
        if sent is None:
            since = self._utc_now_epoch() - QUOTA_WINDOW_SECONDS
            sent = await self.persistence.count_completed_claims_since(since)
        quota = QuotaStatus(
            max_24_hour_send=max_24_hour_send,
            sent_last_24_hours=sent,
            max_send_rate=max_send_rate,
            min_rate_limit=RateIntervalPolicy(max_send_rate).min_interval(),
            max_rate_limit=MAX_RATE_INTERVAL,
        )
        if max_24_hour_send is not None:
            quota.remaining = max_24_hour_send - sent
            quota.usable_quota = math.floor(max_24_hour_send * QUOTA_USABLE_SHARE)
            quota.available = max(0, quota.usable_quota - sent)
        return quota

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the trigger dispatch loop and the retention loop."""
        self.logger.debug("Starting TrickleCore...")
        await self.init()
        self._stop.clear()
        self._task_dispatch = asyncio.create_task(self._dispatch_loop(), name="trigger-dispatch-loop")
        if not self._test_mode:
            self._task_cleanup = asyncio.create_task(self._cleanup_loop(), name="retention-loop")

    async def stop(self) -> None:
        """Stop the background loops and wait for in-flight deliveries."""
        self._stop.set()
        self._wake_event.set()
        tasks = [task for task in (self._task_dispatch, self._task_cleanup) if task]
        if self._task_cleanup:
            self._task_cleanup.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    # ----------------------------------------------------------------- dispatch
    async def _dispatch_loop(self) -> None:
        """Background loop leasing due triggers and running their deliveries."""
        self.logger.debug("Trigger dispatch loop started")
        if self._test_mode:
            await self._wait_for_wakeup(self._poll_interval)
        while not self._stop.is_set():
            try:
                processed = await self.run_dispatch_cycle()
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in dispatch loop: %s", exc)
                processed = 0
            if not processed:
                await self._wait_for_wakeup(self._poll_interval)

    async def run_dispatch_cycle(self, wait: bool = False) -> int:
        """Lease the triggers that are due and start their deliveries.

        Args:
            wait: Wait for the started deliveries to finish before returning.

        Returns:
            Number of triggers leased in this cycle.
        """
        now_ts = self._utc_now_epoch()
        free = self._max_concurrent - len(self._inflight)
        if free <= 0:
            return 0
        triggers = await self.persistence.lease_due_triggers(now_ts, free, self._lease_seconds)
        if not triggers:
            await self._refresh_pending_gauge()
            return 0
        self.logger.debug("Leased %d due triggers", len(triggers))
        tasks = []
        for trigger in triggers:
            task = asyncio.create_task(self._deliver(trigger), name=f"deliver-{trigger['trigger_id']}")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            tasks.append(task)
        if wait:
            await asyncio.gather(*tasks, return_exceptions=True)
            await self._refresh_pending_gauge()
        return len(triggers)

    async def _deliver(self, trigger: dict[str, Any]) -> None:
        async with self._semaphore:
            try:
                await self.worker.process(trigger)
            except DeliveryFailedError as exc:
                await self._record_dead_letter(trigger, str(exc.cause))
            except Exception:
                # The trigger is kept and fires again once its lease ends.
                self.logger.exception("Delivery of trigger %s crashed, will retry", trigger.get("trigger_id"))
        if not self._test_mode:
            self._wake_event.set()

    async def _record_dead_letter(self, trigger: dict[str, Any], error: str) -> None:
        try:
            await self.persistence.add_dead_letter(
                trigger.get("trigger_id", ""),
                trigger.get("job_id", ""),
                trigger.get("recipient", ""),
                error,
                self._utc_now_epoch(),
            )
        except Exception:
            self.logger.exception("Failed to record dead letter for trigger %s", trigger.get("trigger_id"))

    # ---------------------------------------------------------------- housekeeping
    async def apply_retention(self) -> dict[str, int]:
        """Delete expired jobs, events and old trigger claims."""
        now_ts = self._utc_now_epoch()
        removed = {
            "jobs": await self.persistence.remove_expired_jobs(now_ts),
            "events": await self.persistence.remove_expired_events(now_ts),
            "claims": await self.persistence.remove_claims_before(now_ts - self._job_retention_seconds),
        }
        if any(removed.values()):
            self.logger.info(
                "Retention removed %d jobs, %d events, %d claims",
                removed["jobs"],
                removed["events"],
                removed["claims"],
            )
            await self._refresh_pending_gauge()
        return removed

    async def _cleanup_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.apply_retention()
            except Exception:  # pragma: no cover
                self.logger.exception("Retention pass failed")
            await asyncio.sleep(self._cleanup_interval)

    async def _refresh_pending_gauge(self) -> None:
        try:
            count = await self.persistence.count_pending_triggers()
        except Exception:  # pragma: no cover
            self.logger.exception("Failed to refresh pending gauge")
            return
        self.metrics.set_pending(count)

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the dispatch loop until timeout or wake event.

        Args:
            timeout: Maximum seconds to wait. None or infinity waits indefinitely.
        """
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(timeout):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()
