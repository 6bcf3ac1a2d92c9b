"""GitHub integration via gh CLI."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import os
import re
import shlex

import structlog

from bonk.config import BonkConfig
from bonk.models import ReviewComment, RunStatus

log = structlog.get_logger()

WRITE_PERMISSIONS = ("admin", "write")

_REACTION_ENDPOINTS = {
    "issue_comment": "repos/{owner}/{repo}/issues/comments/{target}/reactions",
    "pull_request_review_comment": "repos/{owner}/{repo}/pulls/comments/{target}/reactions",
    "issue": "repos/{owner}/{repo}/issues/{target}/reactions",
}


class GitHubClient:
    def __init__(self, token: str | None = None):
        self._token = token

    @property
    def token(self) -> str | None:
        return self._token

    # -- Comment operations --

    async def create_comment(self, owner: str, repo: str, number: int, body: str) -> int:
        stdout = await self._gh(
            "api",
            f"repos/{owner}/{repo}/issues/{number}/comments",
            "-f",
            f"body={body}",
            "--jq",
            ".id",
        )
        if not stdout.strip().isdigit():
            raise RuntimeError(f"Failed to create comment on {owner}/{repo}#{number}")
        comment_id = int(stdout.strip())
        log.info("comment_created", repo=f"{owner}/{repo}", number=number, comment_id=comment_id)
        return comment_id

    async def update_comment(self, owner: str, repo: str, comment_id: int, body: str) -> None:
        stdout = await self._gh(
            "api",
            "--method",
            "PATCH",
            f"repos/{owner}/{repo}/issues/comments/{comment_id}",
            "-f",
            f"body={body}",
            "--jq",
            ".id",
        )
        if not stdout:
            raise RuntimeError(f"Failed to update comment {comment_id} in {owner}/{repo}")

    async def create_reaction(
        self, owner: str, repo: str, target_id: int, content: str, target_type: str
    ) -> None:
        """Best-effort reaction. Overall PR reviews cannot be reacted to via REST."""
        endpoint = _REACTION_ENDPOINTS.get(target_type)
        if endpoint is None:
            log.info("reaction_skipped", target_type=target_type, target=target_id)
            return
        await self._gh(
            "api",
            endpoint.format(owner=owner, repo=repo, target=target_id),
            "-f",
            f"content={content}",
        )

    # -- Permissions --

    async def has_write_access(self, owner: str, repo: str, username: str) -> bool:
        stdout = await self._gh(
            "api",
            f"repos/{owner}/{repo}/collaborators/{username}/permission",
            "--jq",
            ".permission",
        )
        return stdout.strip() in WRITE_PERMISSIONS

    # -- Repository operations --

    async def get_repository(self, owner: str, repo: str) -> dict:
        stdout = await self._gh("api", f"repos/{owner}/{repo}")
        if not stdout:
            raise RuntimeError(f"Repository {owner}/{repo} not found")
        return json.loads(stdout)

    async def file_exists(self, owner: str, repo: str, path: str, ref: str | None = None) -> bool:
        args = ["api", f"repos/{owner}/{repo}/contents/{path}", "--method", "GET", "--jq", ".path"]
        if ref:
            args.extend(["-f", f"ref={ref}"])
        stdout = await self._gh(*args)
        return bool(stdout.strip())

    async def get_file_content(
        self, owner: str, repo: str, path: str, ref: str | None = None
    ) -> str | None:
        args = [
            "api",
            f"repos/{owner}/{repo}/contents/{path}",
            "--jq",
            ".content",
            "-H",
            "Accept: application/vnd.github.v3+json",
            "--method",
            "GET",
        ]
        if ref:
            args.extend(["-f", f"ref={ref}"])
        stdout = await self._gh(*args)
        if not stdout:
            return None
        try:
            return base64.b64decode(stdout.strip()).decode("utf-8")
        except ValueError:
            return stdout

    async def get_branch_sha(self, owner: str, repo: str, branch: str) -> str:
        stdout = await self._gh(
            "api",
            f"repos/{owner}/{repo}/git/ref/heads/{branch}",
            "--jq",
            ".object.sha",
        )
        if not stdout.strip():
            raise RuntimeError(f"Branch {branch} not found in {owner}/{repo}")
        return stdout.strip()

    async def create_branch(self, owner: str, repo: str, branch: str, sha: str) -> bool:
        """Create a branch ref. Returns False when it could not be created (e.g. it exists)."""
        stdout = await self._gh(
            "api",
            "--method",
            "POST",
            f"repos/{owner}/{repo}/git/refs",
            "-f",
            f"ref=refs/heads/{branch}",
            "-f",
            f"sha={sha}",
        )
        return bool(stdout)

    async def create_or_update_file(
        self,
        owner: str,
        repo: str,
        path: str,
        content: str,
        message: str,
        branch: str,
        sha: str | None = None,
    ) -> None:
        args = [
            "api",
            "--method",
            "PUT",
            f"repos/{owner}/{repo}/contents/{path}",
            "-f",
            f"message={message}",
            "-f",
            f"content={base64.b64encode(content.encode()).decode()}",
            "-f",
            f"branch={branch}",
        ]
        if sha:
            args.extend(["-f", f"sha={sha}"])
        stdout = await self._gh(*args)
        if not stdout:
            raise RuntimeError(f"Failed to write {path} on {owner}/{repo}@{branch}")
        log.info("file_written", repo=f"{owner}/{repo}", path=path, branch=branch)

    # -- Issue / PR operations --

    async def get_issue(self, owner: str, repo: str, number: int) -> dict:
        stdout = await self._gh(
            "issue",
            "view",
            str(number),
            "--repo",
            f"{owner}/{repo}",
            "--json",
            "title,body,author,createdAt,state,comments",
        )
        if not stdout:
            return {}
        return json.loads(stdout)

    async def get_pull_request(self, owner: str, repo: str, number: int) -> dict:
        stdout = await self._gh(
            "pr",
            "view",
            str(number),
            "--repo",
            f"{owner}/{repo}",
            "--json",
            "title,body,author,baseRefName,headRefName,headRefOid,createdAt,additions,"
            "deletions,state,headRepository,headRepositoryOwner,commits,files,comments,reviews",
        )
        if not stdout:
            return {}
        return json.loads(stdout)

    async def get_review_comments(
        self, owner: str, repo: str, pr_number: int
    ) -> list[ReviewComment]:
        stdout = await self._gh(
            "api",
            f"repos/{owner}/{repo}/pulls/{pr_number}/comments",
            "--paginate",
        )
        if not stdout:
            return []

        return [
            ReviewComment(
                id=c["id"],
                author=c.get("user", {}).get("login", "unknown"),
                body=c.get("body", ""),
                path=c.get("path"),
                line=c.get("line") or c.get("original_line"),
                created_at=c.get("created_at"),
            )
            for c in json.loads(stdout)
        ]

    async def create_pr(
        self, owner: str, repo: str, head: str, base: str, title: str, body: str
    ) -> int:
        if len(title) > 256:
            title = title[:253] + "..."
        stdout = await self._gh(
            "pr",
            "create",
            "--repo",
            f"{owner}/{repo}",
            "--head",
            head,
            "--base",
            base,
            "--title",
            title,
            "--body",
            body,
        )
        match = re.search(r"/pull/(\d+)", stdout or "")
        if match:
            number = int(match.group(1))
            log.info("pr_created", repo=f"{owner}/{repo}", number=number, head=head)
            return number
        raise RuntimeError(f"Failed to parse PR number from: {stdout}")

    async def find_open_pr(self, owner: str, repo: str, head_branch: str) -> tuple[int, str] | None:
        stdout = await self._gh(
            "pr",
            "list",
            "--repo",
            f"{owner}/{repo}",
            "--head",
            head_branch,
            "--state",
            "open",
            "--json",
            "number,url",
        )
        if not stdout:
            return None
        prs = json.loads(stdout)
        if prs:
            return prs[0]["number"], prs[0]["url"]
        return None

    # -- Workflow runs --

    async def get_workflow_run_status(self, owner: str, repo: str, run_id: int) -> RunStatus:
        stdout = await self._gh("api", f"repos/{owner}/{repo}/actions/runs/{run_id}")
        if not stdout:
            raise RuntimeError(f"Could not fetch run {run_id} in {owner}/{repo}")
        data = json.loads(stdout)
        return RunStatus(status=data.get("status") or "unknown", conclusion=data.get("conclusion"))

    # -- Internal --

    async def _gh(self, *args: str) -> str:
        env = {**os.environ, "GH_TOKEN": self._token} if self._token else None
        proc = await asyncio.create_subprocess_exec(
            "gh",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            log.warning("gh_error", args=args[:2], stderr=stderr.decode())
            return ""
        return stdout.decode()


async def create_client(config: BonkConfig, installation_id: int) -> GitHubClient:
    """Build a client holding a fresh credential for one installation.

    With ``github_token_command`` set, the command is run (``{installation_id}``
    substituted) and its stdout is used as the token.
    """
    if not config.github_token_command:
        return GitHubClient(config.github_token or None)

    command = config.github_token_command.format(installation_id=installation_id)
    proc = await asyncio.create_subprocess_exec(
        *shlex.split(command),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    token = stdout.decode().strip()
    if proc.returncode != 0 or not token:
        raise RuntimeError(
            f"Token command failed for installation {installation_id}: {stderr.decode().strip()}"
        )
    return GitHubClient(token)


def verify_signature(payload: bytes, signature: str | None, secret: str) -> bool:
    """Check an ``X-Hub-Signature-256`` header against the raw body."""
    if not signature or not secret:
        return False
    expected = "sha256=" + hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)
