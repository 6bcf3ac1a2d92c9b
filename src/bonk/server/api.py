"""JSON API used by the bonk workflow and by direct callers."""

from __future__ import annotations

import hmac

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ValidationError

from bonk.agent import ask_session
from bonk.mentions import get_model
from bonk.metrics import record_safely
from bonk.workflow import ensure_workflow_file

log = structlog.get_logger()


def require_api_token(request: Request, authorization: str | None = Header(None)) -> None:
    expected = request.app.state.config.api_token
    scheme, _, token = (authorization or "").partition(" ")
    if not expected or scheme.lower() != "bearer" or not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


router = APIRouter(dependencies=[Depends(require_api_token)])


class TrackRequest(BaseModel):
    owner: str
    repo: str
    run_id: int
    run_url: str
    issue_number: int = 0
    created_at: str = ""
    actor: str | None = None
    correlation_timestamp: str | None = None
    comment_id: int | None = None
    review_comment_id: int | None = None
    issue_id: int | None = None
    installation_id: int | None = None


class FinalizeRequest(BaseModel):
    owner: str
    repo: str
    run_id: int
    status: str | None = None


class SetupRequest(BaseModel):
    owner: str
    repo: str
    issue_number: int
    default_branch: str = "main"


class AskRequest(BaseModel):
    owner: str
    repo: str
    prompt: str
    ref: str | None = None
    model: str | None = None


async def _parse(request: Request, model: type[BaseModel]):
    try:
        return model.model_validate(await request.json())
    except (ValidationError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid request: {e}")


def _reaction_target(body: TrackRequest) -> tuple[int, str] | None:
    if body.comment_id:
        return body.comment_id, "issue_comment"
    if body.review_comment_id:
        return body.review_comment_id, "pull_request_review_comment"
    if body.issue_id and body.issue_number:
        return body.issue_number, "issue"
    return None


@router.post("/api/github/track")
async def track_run(request: Request) -> dict:
    """Register a started workflow run and begin polling it."""
    body = await _parse(request, TrackRequest)
    state = request.app.state
    tracker = await state.registry.get(f"{body.owner}/{body.repo}")
    if body.installation_id:
        await tracker.set_installation_id(body.installation_id)

    log.info(
        "track_requested",
        repo=tracker.name,
        run_id=body.run_id,
        actor=body.actor,
        correlation_timestamp=body.correlation_timestamp,
        run_created_at=body.created_at,
    )
    if body.actor:
        tracked = await tracker.track_pending_run(
            body.actor, body.run_id, body.run_url, fallback_issue=body.issue_number
        )
    elif body.issue_number:
        tracked = await tracker.track_run(body.run_id, body.run_url, body.issue_number)
    else:
        log.info("track_without_issue", repo=tracker.name, run_id=body.run_id)
        return {"tracked": False}

    target = _reaction_target(body)
    if target is not None:
        try:
            github = await state.client_factory(tracker.installation_id)
            await github.create_reaction(body.owner, body.repo, target[0], "eyes", target[1])
        except Exception:
            log.warning("reaction_failed", repo=tracker.name, target=target[0])

    return {"tracked": tracked}


@router.put("/api/github/track")
async def finalize_run(request: Request) -> dict:
    body = await _parse(request, FinalizeRequest)
    tracker = await request.app.state.registry.get(f"{body.owner}/{body.repo}")
    finalized = await tracker.finalize_run(body.run_id, body.status)
    return {"finalized": finalized}


@router.post("/api/github/setup")
async def setup_workflow(request: Request) -> dict:
    body = await _parse(request, SetupRequest)
    state = request.app.state
    tracker = await state.registry.get(f"{body.owner}/{body.repo}")
    github = await state.client_factory(tracker.installation_id)

    result = await ensure_workflow_file(
        github, state.config, body.owner, body.repo, body.issue_number, body.default_branch
    )
    await record_safely(
        state.metrics,
        tracker.name,
        "setup",
        "success" if result is None else "skipped",
        issue_number=body.issue_number,
    )
    if result is None:
        return {"exists": True}
    return {"exists": False, "prUrl": result.pr_url}


@router.post("/ask")
async def ask(request: Request) -> StreamingResponse:
    """Run the agent against a repository and stream its answer as plain text."""
    body = await _parse(request, AskRequest)
    state = request.app.state
    tracker = await state.registry.get(f"{body.owner}/{body.repo}")
    github = await state.client_factory(tracker.installation_id)
    try:
        model = get_model(body.model or state.config.default_model)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    log.info("ask_started", repo=tracker.name, ref=body.ref)
    chunks = ask_session(
        state.config,
        tracker.name,
        body.prompt,
        ref=body.ref,
        model=model.model_id,
        token=github.token,
    )
    return StreamingResponse(chunks, media_type="text/plain")


@router.get("/api/stats")
async def stats(request: Request, days: int | None = None) -> list[dict]:
    return await request.app.state.metrics.get_event_stats(days)
