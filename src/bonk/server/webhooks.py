"""GitHub webhook endpoint: signature check, mention dispatch, run-start correlation."""

from __future__ import annotations

import json
from collections.abc import Callable

import structlog
from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Request
from fastapi.responses import PlainTextResponse

from bonk.github import GitHubClient, verify_signature
from bonk.mentions import parse_issue_comment_event, parse_review_comment_event, parse_review_event
from bonk.metrics import record_safely
from bonk.models import Mode, ParsedRequest
from bonk.repo_config import load_repo_config
from bonk.workflow import WORKFLOW_FILE_PATH, run_workflow_mode

log = structlog.get_logger()

router = APIRouter()

RUN_START_ACTIONS = ("requested", "in_progress")

Parser = Callable[..., ParsedRequest | None]

_MENTION_PARSERS: dict[str, Parser] = {
    "issue_comment": parse_issue_comment_event,
    "pull_request_review_comment": parse_review_comment_event,
    "pull_request_review": parse_review_event,
}


def _log_context(gh_event: str, payload: dict) -> dict:
    repository = payload.get("repository") or {}
    number = (payload.get("issue") or payload.get("pull_request") or {}).get("number")
    return {"repo": repository.get("full_name", "unknown"), "gh_event": gh_event, "number": number}


@router.post("/webhooks")
async def github_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_hub_signature_256: str | None = Header(None),
    x_github_event: str | None = Header(None),
) -> PlainTextResponse:
    config = request.app.state.config
    body = await request.body()

    if not x_github_event or not verify_signature(body, x_hub_signature_256, config.webhook_secret):
        log.error("webhook_signature_invalid", gh_event=x_github_event)
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    log.info("webhook_received", **_log_context(x_github_event, payload))

    try:
        if x_github_event in _MENTION_PARSERS:
            await _handle_mention(request, background_tasks, x_github_event, payload)
        elif x_github_event == "workflow_run":
            await _handle_workflow_run(request, payload)
        else:
            return PlainTextResponse("Event not handled")
    except Exception:
        log.exception("webhook_error", **_log_context(x_github_event, payload))
        return PlainTextResponse("Internal error", status_code=500)

    return PlainTextResponse("OK")


async def _handle_mention(
    request: Request, background_tasks: BackgroundTasks, event: str, payload: dict
) -> None:
    state = request.app.state
    config = state.config

    installation_id = (payload.get("installation") or {}).get("id")
    if not installation_id:
        log.error("webhook_missing_installation", gh_event=event)
        return

    parsed = _MENTION_PARSERS[event](
        payload, mention=config.bot_mention, command=config.bot_command
    )
    if parsed is None:
        return

    context = parsed.context
    github: GitHubClient = await state.client_factory(installation_id)
    repo_config = await load_repo_config(
        context.owner, context.repo, config, github, ref=context.head_branch
    )
    await record_safely(
        state.metrics,
        context.full_repo,
        "webhook",
        "success",
        event_subtype=event,
        actor=context.actor,
        issue_number=context.issue_number,
        is_private=context.is_private,
        is_pull_request=context.is_pull_request,
    )

    if repo_config.mode is Mode.WORKFLOW:
        if not await github.has_write_access(context.owner, context.repo, context.actor):
            log.info("permission_denied", issue=context.issue_ref, actor=context.actor)
            return
        result = await run_workflow_mode(
            github, config, state.registry, installation_id, context, parsed.trigger_timestamp
        )
        log.info("workflow_mode_result", issue=context.issue_ref, message=result.message)
        return

    log.info("direct_mode_queued", issue=context.issue_ref, actor=context.actor)
    background_tasks.add_task(
        state.orchestrator.process_request, installation_id, parsed, repo_config
    )


async def _handle_workflow_run(request: Request, payload: dict) -> None:
    """Correlate a bonk workflow run with the pending request that caused it."""
    run = payload.get("workflow_run") or {}
    if payload.get("action") not in RUN_START_ACTIONS or run.get("path") != WORKFLOW_FILE_PATH:
        return

    repository = payload.get("repository") or {}
    actor = (run.get("triggering_actor") or run.get("actor") or {}).get("login", "")
    tracker = await request.app.state.registry.get(repository.get("full_name", ""))

    installation_id = (payload.get("installation") or {}).get("id")
    if installation_id:
        await tracker.set_installation_id(installation_id)

    await tracker.track_pending_run(actor, run["id"], run.get("html_url", ""))
