"""Session state, turns, retry and customization endpoints."""

from fastapi import APIRouter, HTTPException, Request

from companion_tavern.errors import TurnInProgress
from companion_tavern.models import Customization, TurnInput
from companion_tavern.pipeline.core import TurnOutcome, TurnSession

router = APIRouter()


def _session(request: Request, slug: str) -> TurnSession:
    try:
        return request.app.state.registry.get(slug)
    except ValueError as e:
        raise HTTPException(400, str(e)) from e


def _outcome_body(outcome: TurnOutcome) -> dict:
    body = {
        "reply_text": outcome.reply_text,
        "state": outcome.state.model_dump(),
        "post": outcome.post.model_dump() if outcome.post else None,
        "suggested_actions": outcome.suggested_actions,
        "channel": outcome.channel,
        "failed": outcome.failed,
    }
    if outcome.error is not None:
        body["error"] = str(outcome.error)
        body["error_type"] = type(outcome.error).__name__
        body["retryable"] = outcome.error.retryable
    if outcome.marker is not None:
        body["marker"] = outcome.marker.model_dump()
    return body


@router.get("/sessions")
async def list_sessions(request: Request):
    """List stored session slugs."""
    return request.app.state.registry.storage.list_sessions()


@router.get("/sessions/{slug}")
async def get_session(slug: str, request: Request):
    """Canonical state and history of a session."""
    session = _session(request, slug)
    return {
        "state": session.state.model_dump(),
        "messages": [m.model_dump() for m in session.history],
        "busy": session.busy,
    }


@router.get("/sessions/{slug}/channel")
async def get_channel(slug: str, request: Request):
    """Which generation channel the next turn would use."""
    channel = await _session(request, slug).resolver.resolve()
    return {"channel": channel.name, "available": bool(channel)}


@router.post("/sessions/{slug}/turn")
async def run_turn(slug: str, body: TurnInput, request: Request):
    """Run one turn; failures come back as a retryable marker."""
    session = _session(request, slug)
    try:
        outcome = await session.run_turn(body)
    except TurnInProgress as e:
        raise HTTPException(409, str(e)) from e
    return _outcome_body(outcome)


@router.post("/sessions/{slug}/retry/{marker_id}")
async def retry_turn(slug: str, marker_id: str, request: Request):
    """Replay the input behind a failure marker."""
    session = _session(request, slug)
    try:
        outcome = await session.retry(marker_id)
    except TurnInProgress as e:
        raise HTTPException(409, str(e)) from e
    except LookupError as e:
        raise HTTPException(404, str(e)) from e
    return _outcome_body(outcome)


@router.put("/sessions/{slug}/customization")
async def put_customization(slug: str, body: Customization, request: Request):
    """Store the player's customization; the next turn rebuilds the static prompt."""
    session = _session(request, slug)
    request.app.state.registry.storage.save_customization(slug, body)
    session.customization = body
    return body


@router.post("/sessions/{slug}/invalidate")
async def invalidate_rules(slug: str, request: Request):
    """Mark rule/world content as changed for this session."""
    session = _session(request, slug)
    session.assembler.invalidate()
    return {"freshness": session.assembler.freshness.value}
