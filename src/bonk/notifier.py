"""Comment side effects: best-effort one-shot posts and the in-place working comment."""

from __future__ import annotations

import structlog

from bonk.github import GitHubClient

log = structlog.get_logger()

WORKING_MESSAGE = "Bonk is working on it..."


async def post_comment_best_effort(
    github: GitHubClient, owner: str, repo: str, issue_number: int, body: str
) -> bool:
    """Post a comment, logging and swallowing any failure. Never retried."""
    try:
        await github.create_comment(owner, repo, issue_number, body)
    except Exception:
        log.exception("comment_post_failed", repo=f"{owner}/{repo}", issue=issue_number)
        return False
    return True


class WorkingComment:
    """A single comment created once and then edited in place."""

    def __init__(self, github: GitHubClient, owner: str, repo: str, issue_number: int):
        self.github = github
        self.owner = owner
        self.repo = repo
        self.issue_number = issue_number
        self.comment_id: int | None = None

    async def create(self, body: str = WORKING_MESSAGE) -> int:
        if self.comment_id is None:
            self.comment_id = await self.github.create_comment(
                self.owner, self.repo, self.issue_number, body
            )
        return self.comment_id

    async def update(self, body: str) -> None:
        if self.comment_id is None:
            await self.create(body)
            return
        await self.github.update_comment(self.owner, self.repo, self.comment_id, body)

    async def finalize(self, body: str) -> None:
        await self.update(body)
