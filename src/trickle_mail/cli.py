"""Command-line interface for trickle-mail.

This module provides a CLI to run the service and to submit and inspect
jobs directly against the local database, without going through the HTTP
API.

Usage:
    trickle serve --port 8000
    trickle submit news@example.com --to "a@example.com;b@example.com" \\
        --subject "Hello" --content-file body.html
    trickle status <job-id>
    trickle jobs
    trickle events <job-id> --type Bounce
    trickle ingest notifications.json
    trickle config --rate-limit 30
    trickle quota
    trickle dispatch

Settings come from ``config.ini`` (or ``--config``) and ``TRICKLE_*``
environment variables.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table

from .config_loader import Settings, build_core, load_settings
from .errors import TrickleError, ValidationError

console = Console()
err_console = Console(stderr=True)

SEVERITY_STYLES = {"critical": "red", "warning": "yellow", "info": "dim"}
STATUS_STYLES = {
    "pending": "yellow",
    "completed": "green",
    "completed_with_errors": "dark_orange",
    "failed": "red",
}


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _call(settings: Settings, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
    """Run one core command against the configured database."""

    async def _run():
        core = build_core(settings)
        await core.init()
        return await core.handle_command(cmd, payload or {})

    try:
        result = run_async(_run())
    except ValidationError as exc:
        print_error(exc.error)
        if exc.details is not None:
            print_json(exc.details)
        sys.exit(1)
    except TrickleError as exc:
        print_error(str(exc))
        sys.exit(1)
    if not result.get("ok"):
        print_error(result.get("error") or "command failed")
        sys.exit(1)
    result.pop("ok", None)
    return result


@click.group()
@click.version_option(package_name="trickle-mail")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Path to config.ini (default: TRICKLE_CONFIG or ./config.ini).")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str]) -> None:
    """trickle-mail: rate-paced bulk email delivery."""
    ctx.obj = load_settings(config_path)


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to.")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on.")
@click.pass_obj
def serve(settings: Settings, host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP API and the trigger dispatch loop."""
    from contextlib import asynccontextmanager

    import uvicorn

    from .api import create_app

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    core = build_core(settings)

    @asynccontextmanager
    async def lifespan(app):
        await core.start()
        yield
        await core.stop()

    app = create_app(core, api_token=settings.api_token, lifespan=lifespan)
    host = host or settings.host
    port = port or settings.port
    console.print(f"[bold cyan]Starting trickle-mail on http://{host}:{port}[/bold cyan]")
    uvicorn.run(app, host=host, port=port)


@main.command("submit")
@click.argument("sender")
@click.option("--to", "recipients", required=True, multiple=True,
              help="Recipient address or ';'-separated list (repeatable).")
@click.option("--subject", "-s", required=True, help="Message subject.")
@click.option("--content", "-c", default=None, help="Message body (text or HTML).")
@click.option("--content-file", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Read the message body from a file.")
@click.option("--attach", "attachments", multiple=True, type=click.Path(exists=True, dir_okay=False),
              help="File to attach (repeatable).")
@click.option("--user", "-u", "user_id", default="default", help="Submitting user id.")
@click.option("--rate-interval", type=float, default=None,
              help="Seconds between sends (default: the user's rate limit).")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def submit(
    settings: Settings,
    sender: str,
    recipients: tuple[str, ...],
    subject: str,
    content: Optional[str],
    content_file: Optional[str],
    attachments: tuple[str, ...],
    user_id: str,
    rate_interval: Optional[float],
    as_json: bool,
) -> None:
    """Submit a job sending one message to each recipient."""
    if content_file:
        content = Path(content_file).read_text(encoding="utf-8")
    if not content:
        print_error("Provide --content or --content-file.")
        sys.exit(1)
    payload = {
        "user_id": user_id,
        "sender": sender,
        "recipients": list(recipients),
        "subject": subject,
        "content": content,
        "attachments": [
            {"filename": Path(path).name, "content": base64.b64encode(Path(path).read_bytes()).decode()}
            for path in attachments
        ],
        "rate_interval": rate_interval,
    }
    result = _call(settings, "submitJob", payload)
    if as_json:
        print_json(result)
        return
    print_success(f"Job {result['jobId']} scheduled for {result['totalRecipients']} recipients")


@main.command("status")
@click.argument("job_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def status(settings: Settings, job_id: str, as_json: bool) -> None:
    """Show the status and counters of a job."""
    job = _call(settings, "jobStatus", {"job_id": job_id})
    if as_json:
        print_json(job)
        return
    style = STATUS_STYLES.get(job["status"], "white")
    console.print(f"\n[bold cyan]Job: {job['jobId']}[/bold cyan]\n")
    console.print(f"  Status:      [{style}]{job['status']}[/{style}]")
    console.print(f"  Sender:      {job.get('sender')}")
    console.print(f"  Subject:     {job.get('subject')}")
    console.print(f"  Progress:    {job['sent']} sent, {job['failed']} failed of {job['totalRecipients']}")
    console.print(f"  Created:     {job.get('createdAt') or '-'}")
    console.print(f"  Completed:   {job.get('completedAt') or '-'}")
    if job.get("lastError"):
        error = job["lastError"]
        console.print(f"  Last error:  {error['recipient']} ({error['kind']}): {error['message']}")
    console.print()


@main.command("jobs")
@click.option("--user", "-u", "user_id", default="default", help="User whose jobs are listed.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def jobs(settings: Settings, user_id: str, as_json: bool) -> None:
    """List recent jobs, newest first."""
    job_list = _call(settings, "listJobs", {"user_id": user_id})["jobs"]
    if as_json:
        print_json(job_list)
        return
    if not job_list:
        console.print("[dim]No jobs found.[/dim]")
        return

    table = Table(title="Jobs")
    table.add_column("Job ID", style="cyan")
    table.add_column("Status")
    table.add_column("Subject")
    table.add_column("Sent", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Created")
    for job in job_list:
        style = STATUS_STYLES.get(job["status"], "white")
        table.add_row(
            job["jobId"],
            f"[{style}]{job['status']}[/{style}]",
            job.get("subject") or "-",
            str(job["sent"]),
            str(job["failed"]),
            str(job["totalRecipients"]),
            job.get("createdAt") or "-",
        )
    console.print(table)


@main.command("events")
@click.argument("job_id")
@click.option("--type", "event_type", default=None, help="Only events of this type (e.g. Bounce).")
@click.option("--recipient", "-r", default=None, help="Recipient substring filter.")
@click.option("--limit", "-l", type=int, default=100, help="Page size (1-1000).")
@click.option("--token", "next_token", default=None, help="Pagination token from a previous page.")
@click.option("--summary", is_flag=True, help="Show counts per event type instead.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def events(
    settings: Settings,
    job_id: str,
    event_type: Optional[str],
    recipient: Optional[str],
    limit: int,
    next_token: Optional[str],
    summary: bool,
    as_json: bool,
) -> None:
    """Show the delivery events of a job with their classification."""
    if summary:
        result = _call(settings, "eventSummary", {"job_id": job_id})
        if as_json:
            print_json(result)
            return
        table = Table(title=f"Events of {job_id}")
        table.add_column("Event type", style="cyan")
        table.add_column("Count", justify="right")
        for name, count in result["summary"].items():
            table.add_row(name, str(count))
        console.print(table)
        return

    result = _call(
        settings,
        "eventLogs",
        {
            "job_id": job_id,
            "event_type": event_type,
            "recipient": recipient,
            "limit": limit,
            "next_token": next_token,
        },
    )
    if as_json:
        print_json(result)
        return

    table = Table(title=f"Events of {job_id}")
    table.add_column("", justify="center")
    table.add_column("Type", style="cyan")
    table.add_column("Recipient")
    table.add_column("Interpretation")
    for event in result["events"]:
        style = SEVERITY_STYLES.get(event["severity"], "white")
        table.add_row(
            event["icon"],
            event["eventType"],
            event["recipient"],
            f"[{style}]{event['interpretation']}[/{style}]",
        )
    console.print(table)

    metrics = result["jobMetrics"]
    console.print(
        f"Hard bounce rate: {metrics['hardBounceRate']:.1%}  "
        f"Complaint rate: {metrics['complaintRate']:.2%}"
    )
    for warning in metrics["warnings"]:
        console.print(f"[yellow]⚠ {warning}[/yellow]")
    if result.get("nextToken"):
        console.print(f"[dim]Next page: --token {result['nextToken']}[/dim]")


@main.command("ingest")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def ingest(settings: Settings, path: str) -> None:
    """Ingest provider notifications from a JSON file.

    The file holds one notification, a list, or ``{"Records": [...]}``.
    """
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except ValueError as exc:
        print_error(f"Invalid JSON in {path}: {exc}")
        sys.exit(1)
    if isinstance(payload, dict) and isinstance(payload.get("Records"), list):
        records = payload["Records"]
    elif isinstance(payload, list):
        records = payload
    else:
        records = [payload]
    result = _call(settings, "ingestEvents", {"records": records})
    print_success(f"Ingested {result['ingested']} events ({result['failed']} failed)")


@main.command("config")
@click.option("--user", "-u", "user_id", default="default", help="User whose configuration is shown.")
@click.option("--rate-limit", type=int, default=None, help="Seconds between consecutive sends.")
@click.option("--max-attachment-size", type=int, default=None, help="Maximum attachment size in bytes.")
@click.option("--header", "headers", multiple=True, help="Extra header NAME=VALUE (repeatable).")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def config(
    settings: Settings,
    user_id: str,
    rate_limit: Optional[int],
    max_attachment_size: Optional[int],
    headers: tuple[str, ...],
    as_json: bool,
) -> None:
    """Show or update a user's sending configuration."""
    changes: dict[str, Any] = {}
    if rate_limit is not None:
        changes["rate_limit"] = rate_limit
    if max_attachment_size is not None:
        changes["max_attachment_size"] = max_attachment_size
    if headers:
        parsed = {}
        for item in headers:
            name, sep, value = item.partition("=")
            if not sep or not name.strip():
                print_error(f"Invalid header '{item}', expected NAME=VALUE.")
                sys.exit(1)
            parsed[name.strip()] = value.strip()
        changes["headers"] = parsed

    if changes:
        result = _call(settings, "updateConfig", {"user_id": user_id, **changes})
    else:
        result = _call(settings, "getConfig", {"user_id": user_id})
    if as_json:
        print_json(result)
        return
    console.print(f"\n[bold cyan]Configuration: {result['userId']}[/bold cyan]\n")
    console.print(f"  Rate limit:          {result['rateLimit']}s between sends")
    console.print(f"  Max attachment size: {result['maxAttachmentSize']} bytes")
    for name, value in (result.get("headers") or {}).items():
        console.print(f"  Header:              {name}: {value}")
    console.print()


@main.command("quota")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def quota(settings: Settings, as_json: bool) -> None:
    """Show the provider sending quota and the allowed rate limits."""
    result = _call(settings, "getQuota")
    if as_json:
        print_json(result)
        return

    def _value(key: str) -> str:
        return "-" if result.get(key) is None else str(result[key])

    console.print("\n[bold cyan]Sending quota[/bold cyan]\n")
    console.print(f"  Max per 24 hours:    {_value('max24HourSend')}")
    console.print(f"  Sent last 24 hours:  {result['sentLast24Hours']}")
    console.print(f"  Remaining:           {_value('remaining')}")
    console.print(f"  Usable (50%):        {_value('usableQuota')}")
    console.print(f"  Available:           {_value('available')}")
    console.print(f"  Max send rate:       {result['maxSendRate']}/sec")
    console.print(f"  Rate limit range:    {result['minRateLimit']}-{result['maxRateLimit']}s between sends")
    console.print()


@main.command("dead-letters")
@click.argument("job_id", required=False)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def dead_letters(settings: Settings, job_id: Optional[str], as_json: bool) -> None:
    """List deliveries that failed, optionally for one job."""
    letters = _call(settings, "listDeadLetters", {"job_id": job_id})["deadLetters"]
    if as_json:
        print_json(letters)
        return
    if not letters:
        console.print("[dim]No dead letters.[/dim]")
        return
    table = Table(title="Dead letters")
    table.add_column("Trigger", style="cyan")
    table.add_column("Recipient")
    table.add_column("Error")
    for letter in letters:
        table.add_row(letter["trigger_id"], letter["recipient"], letter.get("error") or "-")
    console.print(table)


@main.command("dispatch")
@click.pass_obj
def dispatch(settings: Settings) -> None:
    """Deliver every trigger that is due now, then exit."""

    async def _run() -> int:
        core = build_core(settings)
        await core.init()
        return await core.run_dispatch_cycle(wait=True)

    processed = run_async(_run())
    print_success(f"Dispatched {processed} triggers")


if __name__ == "__main__":
    main()
