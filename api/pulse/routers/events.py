import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from pulse.core.dependencies import get_collector, get_rate_limiter
from pulse.services.collector import EventCollector, EventPayload
from pulse.services.rate_limit import RateLimiter, client_key

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])

RETRY_AFTER_SECONDS = 60


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

def _error(status_code: int, error: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, **extra})


def _iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------------

@router.post("/events/collect")
async def collect_event(
    request: Request,
    limiter: RateLimiter = Depends(get_rate_limiter),
    collector: EventCollector = Depends(get_collector),
) -> JSONResponse:
    """Collect one event from the client pipeline.

    Responses: 200 success / duplicate, 400 invalid payload, 429 rate
    limited, 500 processing failed.  Forwarding failures still return
    success.
    """
    client = client_key(request.headers)
    if not limiter.check(client):
        logger.warning("Rate limit exceeded for %s", client)
        return _error(
            status.HTTP_429_TOO_MANY_REQUESTS,
            "Too many requests",
            retry_after=RETRY_AFTER_SECONDS,
        )

    try:
        body = await request.json()
    except ValueError as exc:
        logger.warning("Invalid request payload: %s", exc)
        return _error(
            status.HTTP_400_BAD_REQUEST,
            "Invalid request payload",
            details=[{"type": "json_invalid", "loc": ["body"], "msg": "Request body is not valid JSON"}],
        )

    try:
        payload = EventPayload.model_validate(body)
    except ValidationError as exc:
        logger.warning("Invalid request payload: %s", exc.error_count())
        return _error(
            status.HTTP_400_BAD_REQUEST,
            "Invalid request payload",
            details=exc.errors(include_url=False, include_context=False, include_input=False),
        )

    try:
        result = await collector.process(payload)
    except Exception:
        logger.exception("Failed to process event %s", payload.event_id)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to process event")

    if result.status == "duplicate":
        return JSONResponse(content={"status": "duplicate", "event_id": result.event_id})
    return JSONResponse(
        content={
            "status": "success",
            "event_id": result.event_id,
            "processed_at": _iso(result.processed_at),
        }
    )
