"""Direct-mode request handling: permission check, working comment, agent with retry."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

import structlog

from bonk.agent import run_agent_session
from bonk.config import BonkConfig
from bonk.github import GitHubClient
from bonk.mentions import get_model
from bonk.metrics import MetricsStore, record_safely
from bonk.models import AgentResult, EventContext, ModelConfig, ParsedRequest
from bonk.notifier import WorkingComment
from bonk.prompts import build_issue_context, build_pr_context, failure_body, format_response
from bonk.repo_config import RepoConfig
from bonk.tracker import ClientFactory

log = structlog.get_logger()

FORK_PR_MESSAGE = "Fork PRs are not supported."

AgentRunner = Callable[..., Awaitable[AgentResult]]


def _is_fork(pr: dict, context: EventContext) -> bool:
    head_owner = (pr.get("headRepositoryOwner") or {}).get("login", "")
    head_repo = (pr.get("headRepository") or {}).get("name", "")
    return f"{head_owner}/{head_repo}".lower() != context.full_repo.lower()


class Orchestrator:
    def __init__(
        self,
        config: BonkConfig,
        client_factory: ClientFactory,
        *,
        metrics: MetricsStore | None = None,
        agent_runner: AgentRunner = run_agent_session,
    ):
        self.config = config
        self.metrics = metrics
        self._client_factory = client_factory
        self._agent_runner = agent_runner

    async def process_request(
        self, installation_id: int, request: ParsedRequest, repo_config: RepoConfig
    ) -> None:
        context = request.context
        start = time.monotonic()
        github = await self._client_factory(installation_id)

        if not await github.has_write_access(context.owner, context.repo, context.actor):
            log.info("permission_denied", issue=context.issue_ref, actor=context.actor)
            await self._record(context, "permission", "denied")
            return

        comment = WorkingComment(github, context.owner, context.repo, context.issue_number)
        await comment.create()
        log.info("working_comment_created", issue=context.issue_ref, comment_id=comment.comment_id)

        try:
            status = await self._run(github, request, repo_config, comment)
        except Exception as e:
            log.exception("request_failed", issue=context.issue_ref)
            await comment.finalize(failure_body(str(e) or type(e).__name__))
            status = "error"

        await self._record(
            context,
            "direct",
            status,
            duration_ms=(time.monotonic() - start) * 1000,
        )

    async def _run(
        self,
        github: GitHubClient,
        request: ParsedRequest,
        repo_config: RepoConfig,
        comment: WorkingComment,
    ) -> str:
        context = request.context
        repo_data = await github.get_repository(context.owner, context.repo)
        context.is_private = bool(repo_data.get("private", context.is_private))
        context.default_branch = repo_data.get("default_branch") or context.default_branch
        model = get_model(repo_config.model or self.config.default_model)

        exclude_ids = [request.trigger_comment_id, comment.comment_id]
        if context.is_pull_request:
            pr = await github.get_pull_request(context.owner, context.repo, context.issue_number)
            if not pr:
                raise RuntimeError(f"Pull request #{context.issue_number} not found")
            if _is_fork(pr, context):
                log.info("fork_pr_refused", issue=context.issue_ref)
                await comment.finalize(FORK_PR_MESSAGE)
                return "fork"
            context.head_branch = pr.get("headRefName") or context.head_branch
            context.head_sha = pr.get("headRefOid") or context.head_sha
            review_comments = await github.get_review_comments(
                context.owner, context.repo, context.issue_number
            )
            data_context = build_pr_context(pr, review_comments, exclude_ids)
        else:
            issue = await github.get_issue(context.owner, context.repo, context.issue_number)
            if not issue:
                raise RuntimeError(f"Issue #{context.issue_number} not found")
            data_context = build_issue_context(issue, exclude_ids)

        result, last_error = await self._run_with_retry(
            github, context, f"{request.prompt}\n\n{data_context}", model
        )
        if result is None:
            log.error("agent_retries_exhausted", issue=context.issue_ref, error=last_error)
            await comment.finalize(failure_body(last_error))
            return "error"

        await comment.finalize(
            format_response(result.response, result.changed_files, result.session_link, str(model))
        )
        log.info(
            "response_posted",
            issue=context.issue_ref,
            files=len(result.changed_files),
            turns=result.turns_used,
            cost_usd=result.cost_usd,
        )

        if not context.is_pull_request and result.changed_files and result.new_branch:
            pr_number = await github.create_pr(
                context.owner,
                context.repo,
                result.new_branch,
                context.default_branch,
                result.summary or f"Fix issue #{context.issue_number}",
                f"{result.response}\n\nCloses #{context.issue_number}",
            )
            pr_url = f"https://github.com/{context.full_repo}/pull/{pr_number}"
            await comment.update(f"Bonk created PR: {pr_url}")
            log.info("issue_pr_created", issue=context.issue_ref, pr=pr_number)

        return "success"

    async def _run_with_retry(
        self,
        github: GitHubClient,
        context: EventContext,
        prompt: str,
        model: ModelConfig,
    ) -> tuple[AgentResult | None, str]:
        attempts = self.config.agent_max_attempts
        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                result = await self._agent_runner(
                    self.config,
                    context,
                    prompt,
                    model,
                    branch=context.head_branch or context.default_branch,
                    token=github.token,
                )
                return result, ""
            except Exception as e:
                last_error = str(e) or type(e).__name__
                log.warning(
                    "agent_attempt_failed",
                    issue=context.issue_ref,
                    attempt=attempt,
                    max_attempts=attempts,
                    error=last_error,
                )
                if attempt < attempts:
                    await asyncio.sleep(self.config.agent_retry_delay_s)
        return None, last_error

    async def _record(self, context: EventContext, event_type: str, status: str, **fields) -> None:
        await record_safely(
            self.metrics,
            context.full_repo,
            event_type,
            status,
            actor=context.actor,
            issue_number=context.issue_number,
            is_private=context.is_private,
            is_pull_request=context.is_pull_request,
            **fields,
        )
