"""Mention detection and webhook payload parsing. Pure functions, no I/O."""

from __future__ import annotations

import re
from datetime import UTC, datetime
from functools import lru_cache

from bonk.models import EventContext, ModelConfig, ParsedRequest, ReviewCommentContext

BOT_MENTION = "@ask-bonk"
BOT_COMMAND = "/bonk"


@lru_cache(maxsize=8)
def _mention_pattern(mention: str, command: str) -> re.Pattern[str]:
    return re.compile(rf"(?:^|\s)(?:{re.escape(mention)}|{re.escape(command)})(?=$|\s)")


def has_mention(body: str, *, mention: str = BOT_MENTION, command: str = BOT_COMMAND) -> bool:
    """True when the trigger appears as a standalone token."""
    return bool(_mention_pattern(mention, command).search(body.strip()))


def extract_prompt(
    body: str,
    review_context: ReviewCommentContext | None = None,
    *,
    mention: str = BOT_MENTION,
    command: str = BOT_COMMAND,
) -> str:
    trimmed = body.strip()

    if trimmed in (mention, command):
        if review_context:
            return (
                "Review this code change and suggest improvements for the commented lines:\n\n"
                f"File: {review_context.file}\n"
                f"Lines: {review_context.line}\n\n"
                f"{review_context.diff_hunk}"
            )
        return "Summarize this thread"

    if review_context:
        return (
            f"{trimmed}\n\n"
            f'Context: You are reviewing a comment on file "{review_context.file}" '
            f"at line {review_context.line}.\n\n"
            f"Diff context:\n{review_context.diff_hunk}"
        )

    return trimmed


def get_review_comment_context(payload: dict) -> ReviewCommentContext:
    comment = payload.get("comment", {})
    return ReviewCommentContext(
        file=comment.get("path", ""),
        diff_hunk=comment.get("diff_hunk", ""),
        line=comment.get("line"),
        original_line=comment.get("original_line"),
        position=comment.get("position"),
        commit_id=comment.get("commit_id", ""),
        original_commit_id=comment.get("original_commit_id", ""),
    )


def is_fork_pr(payload: dict) -> bool:
    pr = payload.get("pull_request")
    if not pr or "head" not in pr or "base" not in pr:
        return False
    head_repo = (pr["head"] or {}).get("repo") or {}
    base_repo = (pr["base"] or {}).get("repo") or {}
    return head_repo.get("full_name") != base_repo.get("full_name")


def _base_context(payload: dict, issue_number: int, actor: str, **extra) -> EventContext:
    repository = payload.get("repository", {})
    return EventContext(
        owner=repository.get("owner", {}).get("login", ""),
        repo=repository.get("name", ""),
        issue_number=issue_number,
        actor=actor,
        is_private=bool(repository.get("private", False)),
        default_branch=repository.get("default_branch") or "main",
        **extra,
    )


def parse_issue_comment_event(
    payload: dict, *, mention: str = BOT_MENTION, command: str = BOT_COMMAND
) -> ParsedRequest | None:
    if payload.get("action") != "created":
        return None

    comment = payload.get("comment", {})
    body = comment.get("body") or ""
    if not has_mention(body, mention=mention, command=command):
        return None

    issue = payload.get("issue", {})
    context = _base_context(
        payload,
        issue.get("number", 0),
        comment.get("user", {}).get("login", ""),
        is_pull_request=bool(issue.get("pull_request")),
    )
    return ParsedRequest(
        context=context,
        prompt=extract_prompt(body, mention=mention, command=command),
        trigger_comment_id=comment.get("id", 0),
        trigger_timestamp=comment.get("created_at", ""),
    )


def parse_review_comment_event(
    payload: dict, *, mention: str = BOT_MENTION, command: str = BOT_COMMAND
) -> ParsedRequest | None:
    if payload.get("action") != "created":
        return None

    comment = payload.get("comment", {})
    body = comment.get("body") or ""
    if not has_mention(body, mention=mention, command=command):
        return None

    if is_fork_pr(payload):
        return None

    pr = payload.get("pull_request", {})
    review_context = get_review_comment_context(payload)
    context = _base_context(
        payload,
        pr.get("number", 0),
        comment.get("user", {}).get("login", ""),
        is_pull_request=True,
        head_branch=pr.get("head", {}).get("ref"),
        head_sha=pr.get("head", {}).get("sha"),
    )
    return ParsedRequest(
        context=context,
        prompt=extract_prompt(body, review_context, mention=mention, command=command),
        trigger_comment_id=comment.get("id", 0),
        trigger_timestamp=comment.get("created_at", ""),
        review_context=review_context,
    )


def parse_review_event(
    payload: dict, *, mention: str = BOT_MENTION, command: str = BOT_COMMAND
) -> ParsedRequest | None:
    if payload.get("action") != "submitted":
        return None

    review = payload.get("review", {})
    body = review.get("body") or ""
    if not body or not has_mention(body, mention=mention, command=command):
        return None

    if is_fork_pr(payload):
        return None

    pr = payload.get("pull_request", {})
    context = _base_context(
        payload,
        pr.get("number", 0),
        review.get("user", {}).get("login", ""),
        is_pull_request=True,
        head_branch=pr.get("head", {}).get("ref"),
        head_sha=pr.get("head", {}).get("sha"),
    )
    return ParsedRequest(
        context=context,
        prompt=extract_prompt(body, mention=mention, command=command),
        trigger_comment_id=review.get("id", 0),
        trigger_timestamp=review.get("submitted_at", ""),
    )


def get_model(model: str) -> ModelConfig:
    """Split a ``provider/model`` string."""
    provider_id, _, model_id = model.partition("/")
    if not provider_id or not model_id:
        raise ValueError(f'Invalid model {model}. Model must be in the format "provider/model".')
    return ModelConfig(provider_id=provider_id, model_id=model_id)


def generate_branch_name(kind: str, issue_number: int, now: datetime | None = None) -> str:
    stamp = (now or datetime.now(UTC)).strftime("%Y%m%d%H%M%S")
    return f"bonk/{kind}{issue_number}-{stamp}"
