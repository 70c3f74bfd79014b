"""FastAPI application factory for the trickle mail service.

This module provides the REST API of the service:

- Job submission, status and listing
- Event summary and the paginated, classified event log of a job
- Ingestion of provider delivery notifications
- Per-user configuration and verified senders
- Provider sending quota
- Health checks and Prometheus metrics exposure

Authentication uses an API token in the ``X-API-Token`` header; the caller
is identified by the ``X-User-Id`` header (``default`` when absent).

Example:
    Creating and running the API application::

        from trickle_mail.core import TrickleCore
        from trickle_mail.api import create_app

        core = TrickleCore(db_path="/data/trickle.db")
        app = create_app(core, api_token="secret-token")

        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from typing import Any, AsyncContextManager, Callable, Dict, Optional
import logging

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader

from .core import TrickleCore
from .errors import JobNotFoundError, ValidationError
from .models import ConfigUpdate, SubmitJobRequest

logger = logging.getLogger(__name__)

app = FastAPI(title="Trickle Mail Service")
service: TrickleCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
USER_ID_HEADER_NAME = "X-User-Id"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


def _service() -> TrickleCore:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def _body(result: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in result.items() if key != "ok"}


def create_app(
    svc: TrickleCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`trickle_mail.core.TrickleCore` that implements
        the business logic for each command.
    api_token:
        Optional secret used to protect every endpoint except ``/health``.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Trickle Mail Service", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token

    @api.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        logger.error("Validation error on %s %s: %s", request.method, request.url.path, exc.errors())
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request body", "details": jsonable_errors(exc)},
        )

    @api.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content=exc.to_payload())

    @api.exception_handler(JobNotFoundError)
    async def job_not_found_handler(request: Request, exc: JobNotFoundError):
        return JSONResponse(status_code=404, content={"error": "Job not found", "jobId": exc.job_id})

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.post("/jobs", dependencies=[auth_dependency])
    async def submit_job(
        payload: SubmitJobRequest,
        user_id: str = Header("default", alias=USER_ID_HEADER_NAME),
    ):
        """Validate a bulk-send job and schedule one delivery per recipient."""
        svc = _service()
        try:
            result = await svc.handle_command("submitJob", {"user_id": user_id, **payload.model_dump()})
        except ValidationError:
            raise
        except Exception as exc:
            logger.exception("Failed to create job")
            return JSONResponse(status_code=500, content={"error": "Failed to create job", "details": str(exc)})
        return _body(result)

    @api.get("/jobs", dependencies=[auth_dependency])
    async def list_jobs(user_id: str = Header("default", alias=USER_ID_HEADER_NAME)):
        """List the caller's jobs, most recent first."""
        result = await _service().handle_command("listJobs", {"user_id": user_id})
        return _body(result)

    @api.get("/jobs/{job_id}", dependencies=[auth_dependency])
    async def job_status(job_id: str):
        """Return the status and counters of a job."""
        return _body(await _service().handle_command("jobStatus", {"job_id": job_id}))

    @api.get("/jobs/{job_id}/events/summary", dependencies=[auth_dependency])
    async def event_summary(job_id: str):
        """Count a job's events per event type."""
        return _body(await _service().handle_command("eventSummary", {"job_id": job_id}))

    @api.get("/jobs/{job_id}/events", dependencies=[auth_dependency])
    async def event_logs(
        job_id: str,
        event_type: Optional[str] = Query(None, alias="eventType"),
        recipient: Optional[str] = None,
        next_token: Optional[str] = Query(None, alias="nextToken"),
        limit: Optional[str] = None,
        total_recipients: Optional[int] = Query(None, alias="totalRecipients"),
    ):
        """Return a newest-first page of classified events with the job metrics."""
        result = await _service().handle_command(
            "eventLogs",
            {
                "job_id": job_id,
                "event_type": event_type,
                "recipient": recipient,
                "next_token": next_token,
                "limit": limit,
                "total_recipients": total_recipients,
            },
        )
        return _body(result)

    @api.post("/events", dependencies=[auth_dependency])
    async def ingest_events(payload: Any = Body(...)):
        """Ingest provider notifications: one, a list, or ``{"Records": [...]}``."""
        if isinstance(payload, dict) and isinstance(payload.get("Records"), list):
            records = payload["Records"]
        elif isinstance(payload, list):
            records = payload
        else:
            records = [payload]
        return _body(await _service().handle_command("ingestEvents", {"records": records}))

    @api.get("/config", dependencies=[auth_dependency])
    async def get_config(user_id: str = Header("default", alias=USER_ID_HEADER_NAME)):
        """Return the caller's sending configuration."""
        return _body(await _service().handle_command("getConfig", {"user_id": user_id}))

    @api.put("/config", dependencies=[auth_dependency])
    async def update_config(
        payload: ConfigUpdate,
        user_id: str = Header("default", alias=USER_ID_HEADER_NAME),
    ):
        """Update the caller's rate limit, attachment size limit or headers."""
        changes = payload.model_dump(exclude_none=True)
        return _body(await _service().handle_command("updateConfig", {"user_id": user_id, **changes}))

    @api.get("/senders", dependencies=[auth_dependency])
    async def list_senders():
        """List the sender identities verified with the provider."""
        return _body(await _service().handle_command("listSenders", {}))

    @api.get("/quota", dependencies=[auth_dependency])
    async def get_quota():
        """Report the provider sending quota and the allowed rate-interval bounds."""
        return _body(await _service().handle_command("getQuota", {}))

    @api.get("/dead-letters", dependencies=[auth_dependency])
    async def list_dead_letters(job_id: Optional[str] = Query(None, alias="jobId")):
        """List deliveries that failed, optionally for one job."""
        return _body(await _service().handle_command("listDeadLetters", {"job_id": job_id}))

    @api.post("/run-now", dependencies=[auth_dependency])
    async def run_now():
        """Dispatch due triggers immediately."""
        return await _service().handle_command("run now", {})

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the service."""
        return Response(content=_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    return api


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]
