"""Per-job bounce and complaint metrics.

Metrics are recomputed from the full event log of a job on each request.
They are advisory: a store failure yields zero-valued metrics instead of an
error so that status displays never break because of them.

Warning thresholds are fixed:

- hard bounce rate above 5% (critical) or above 2% (mild)
- complaint rate above 0.3% (critical) or above 0.1% (mild)

At most one warning is produced per metric.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Protocol

from .logger import get_logger
from .models import EventType, JobMetrics

HARD_BOUNCE_CRITICAL_RATE = 0.05
HARD_BOUNCE_WARNING_RATE = 0.02
COMPLAINT_CRITICAL_RATE = 0.003
COMPLAINT_WARNING_RATE = 0.001

logger = get_logger("EventMetrics")


class EventSource(Protocol):
    async def list_events(self, job_id: str) -> list[dict[str, Any]]: ...


def _rate(count: int, total_recipients: int) -> float:
    return count / total_recipients if total_recipients > 0 else 0.0


def build_warnings(hard_bounce_rate: float, complaint_rate: float) -> list[str]:
    warnings: list[str] = []
    if hard_bounce_rate > HARD_BOUNCE_CRITICAL_RATE:
        warnings.append(
            f"High hard bounce rate ({hard_bounce_rate * 100:.1f}%) - review your email list quality"
        )
    elif hard_bounce_rate > HARD_BOUNCE_WARNING_RATE:
        warnings.append(f"Hard bounce rate is {hard_bounce_rate * 100:.1f}% (target <2%)")

    if complaint_rate > COMPLAINT_CRITICAL_RATE:
        warnings.append(
            f"Critical: Spam complaint rate is {complaint_rate * 100:.2f}% - "
            "investigate email content and permissions"
        )
    elif complaint_rate > COMPLAINT_WARNING_RATE:
        warnings.append(f"Complaint rate is {complaint_rate * 100:.2f}% (target <0.1%)")
    return warnings


def metrics_from_events(events: Iterable[Mapping[str, Any]], total_recipients: int) -> JobMetrics:
    """Tally a job's events into JobMetrics.

    Args:
        events: Stored events (``event_type`` and ``details`` keys).
        total_recipients: Denominator for the rates; 0 yields rates of 0.
    """
    hard = soft = complaints = rejects = total = 0
    for event in events:
        total += 1
        event_type = event.get("event_type")
        if event_type == EventType.BOUNCE.value:
            bounce_type = (event.get("details") or {}).get("bounceType")
            if bounce_type == "Permanent":
                hard += 1
            elif bounce_type == "Transient":
                soft += 1
        elif event_type == EventType.COMPLAINT.value:
            complaints += 1
        elif event_type == EventType.REJECT.value:
            rejects += 1

    hard_bounce_rate = _rate(hard, total_recipients)
    complaint_rate = _rate(complaints, total_recipients)
    return JobMetrics(
        hard_bounce_count=hard,
        soft_bounce_count=soft,
        complaint_count=complaints,
        reject_count=rejects,
        total_event_count=total,
        hard_bounce_rate=hard_bounce_rate,
        complaint_rate=complaint_rate,
        warnings=build_warnings(hard_bounce_rate, complaint_rate),
    )


async def compute_job_metrics(store: EventSource, job_id: str, total_recipients: int = 0) -> JobMetrics:
    """Scan every event of ``job_id`` and compute its metrics.

    Any failure reading the store is logged and returns zero metrics.
    """
    try:
        events = await store.list_events(job_id)
    except Exception:
        logger.exception("Error computing metrics for job %s", job_id)
        return JobMetrics()
    return metrics_from_events(events, total_recipients)
