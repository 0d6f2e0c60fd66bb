"""Interactive session endpoints.

SSE responses are produced by the session's worker and proxied unbuffered;
every rejection before dispatch (validation, credentials, admission, busy
worker) is a JSON error instead of a stream.
"""

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import StreamingResponse
from agentrelay.core.exceptions import InvalidRequestError
from agentrelay.core.schemas import CamelModel
from agentrelay.quota.tracker import QuotaTracker
from agentrelay.services.session_service import InteractiveSessionService
from agentrelay.sessions.schemas import RepositoryBinding, SessionOptions
from agentrelay.sse.streamer import SSE_HEADERS, SSEStreamer
from agentrelay.worker.schemas import SessionSnapshot

router = APIRouter()


class StartSessionRequest(CamelModel):
    prompt: str | None = None
    repository: RepositoryBinding | None = None
    options: SessionOptions | None = None


class MessageRequest(CamelModel):
    message: str | None = None
    session_id: str | None = None
    session: SessionSnapshot | None = None


def get_session_service(request: Request) -> InteractiveSessionService:
    return request.app.state.session_service


def get_quota_tracker(request: Request) -> QuotaTracker:
    return request.app.state.quota


def _event_stream(streamer: SSEStreamer, session_id: str) -> StreamingResponse:
    return StreamingResponse(
        streamer.frames(),
        media_type="text/event-stream",
        headers={**SSE_HEADERS, "X-Session-Id": session_id},
    )


@router.post("/interactive/start")
async def start_session(
    body: StartSessionRequest,
    service: InteractiveSessionService = Depends(get_session_service),
):
    """Start a session and stream its first turn.

    Returns:
        200 text/event-stream, X-Session-Id header carries the new id

    Raises:
        InvalidRequestError(400): prompt missing
        CredentialsMissingError(400): agent key or repository token unavailable
        AdmissionDeniedError(429): quota or concurrency limit reached
    """
    session_id, streamer = await service.start_session(body.prompt, body.repository, body.options)
    return _event_stream(streamer, session_id)


@router.get("/interactive/status")
async def session_status(
    session_id: str | None = Query(default=None, alias="sessionId"),
    service: InteractiveSessionService = Depends(get_session_service),
):
    if not session_id:
        raise InvalidRequestError("sessionId is required")
    record = await service.get_status(session_id)
    return record.model_dump(mode="json", by_alias=True, exclude_none=True)


@router.get("/interactive/usage")
async def usage_stats(quota: QuotaTracker = Depends(get_quota_tracker)):
    """Today's usage bucket, active session count and current admission status."""
    stats = await quota.usage_stats()
    return stats.model_dump(mode="json", by_alias=True)


@router.delete("/interactive/{session_id}")
async def end_session(
    session_id: str,
    service: InteractiveSessionService = Depends(get_session_service),
):
    """Idempotent: ending an unknown or already-ended session also succeeds."""
    await service.end_session(session_id)
    return {"success": True}


@router.post("/message")
async def send_message(
    body: MessageRequest,
    x_session_id: str | None = Header(default=None),
    service: InteractiveSessionService = Depends(get_session_service),
):
    """Send a follow-up message. The X-Session-Id header wins over body.sessionId."""
    session_id = x_session_id or body.session_id
    streamer = await service.send_message(session_id, body.message, body.session)
    return _event_stream(streamer, session_id)
