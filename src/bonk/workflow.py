"""Workflow (delegated) mode: the target repository's Actions workflow runs the agent.

The bot only makes sure the workflow file exists and records a pending
correlation; the run itself is matched later by ``workflow_run`` webhooks or
the run-registration API and then tracked by the repository's ``RunTracker``.
"""

from __future__ import annotations

import structlog

from bonk.config import BonkConfig
from bonk.github import GitHubClient
from bonk.models import EventContext, WorkflowResult
from bonk.tracker import TrackerRegistry

log = structlog.get_logger()

WORKFLOW_FILE_PATH = ".github/workflows/bonk.yml"
WORKFLOW_BRANCH = "bonk/add-workflow-file"

WORKFLOW_TEMPLATE = """\
name: Bonk

on:
  issue_comment:
    types: [created]
  pull_request_review_comment:
    types: [created]
  pull_request_review:
    types: [submitted]

permissions:
  contents: write
  issues: write
  pull-requests: write

jobs:
  bonk:
    if: >-
      contains(github.event.comment.body || github.event.review.body, '{{BOT_MENTION}}') ||
      contains(github.event.comment.body || github.event.review.body, '{{BOT_COMMAND}}')
    runs-on: ubuntu-latest
    env:
      BONK_API_URL: ${{ vars.BONK_API_URL }}
      BONK_API_TOKEN: ${{ secrets.BONK_API_TOKEN }}
    steps:
      - uses: actions/checkout@v4
        with:
          fetch-depth: 0

      - name: Track run
        run: |
          curl -sf -X POST "$BONK_API_URL/api/github/track" \\
            -H "Authorization: Bearer $BONK_API_TOKEN" \\
            -H "Content-Type: application/json" \\
            -d "$(jq -n \\
              --arg owner "${{ github.repository_owner }}" \\
              --arg repo "${{ github.event.repository.name }}" \\
              --argjson run_id "${{ github.run_id }}" \\
              --arg run_url "${{ github.server_url }}/${{ github.repository }}/actions/runs/${{ github.run_id }}" \\
              --argjson issue_number "${{ github.event.issue.number || github.event.pull_request.number }}" \\
              --arg correlation_timestamp "${{ github.event.comment.created_at || github.event.review.submitted_at }}" \\
              --arg actor "${{ github.actor }}" \\
              '{owner: $owner, repo: $repo, run_id: $run_id, run_url: $run_url,
                issue_number: $issue_number, correlation_timestamp: $correlation_timestamp,
                actor: $actor}')"

      - name: Run Bonk
        id: agent
        uses: anthropics/claude-code-action@v1
        with:
          anthropic_api_key: ${{ secrets.ANTHROPIC_API_KEY }}
          trigger_phrase: "{{BOT_MENTION}}"
          claude_args: "--model {{MODEL}}"

      - name: Finalize run
        if: always()
        run: |
          curl -sf -X PUT "$BONK_API_URL/api/github/track" \\
            -H "Authorization: Bearer $BONK_API_TOKEN" \\
            -H "Content-Type: application/json" \\
            -d '{"owner": "${{ github.repository_owner }}", "repo": "${{ github.event.repository.name }}", "run_id": ${{ github.run_id }}, "status": "${{ steps.agent.outcome }}"}' \\
            || echo "::warning::Failed to finalize Bonk run tracking"
"""

WORKFLOW_PR_BODY = """\
## Summary

This PR adds the Bonk GitHub Action workflow to enable `{mention}` / `{command}` mentions in issues and PRs.

## Setup Required

After merging, ensure the following are set in your repository:

1. Go to **Settings** > **Secrets and variables** > **Actions**
2. Add the repository secrets `ANTHROPIC_API_KEY` and `BONK_API_TOKEN`
3. Add the repository variable `BONK_API_URL` pointing at the Bonk server

## Usage

Once merged and configured, mention the bot in any issue or PR:

```
{mention} fix the type error in utils.py
```

Or use the slash command:

```
{command} add tests for the new feature
```
"""


def render_workflow(config: BonkConfig, model: str | None = None) -> str:
    return (
        WORKFLOW_TEMPLATE.replace("{{BOT_MENTION}}", config.bot_mention)
        .replace("{{BOT_COMMAND}}", config.bot_command)
        .replace("{{MODEL}}", (model or config.default_model).split("/", 1)[-1])
    )


async def ensure_workflow_file(
    github: GitHubClient,
    config: BonkConfig,
    owner: str,
    repo: str,
    issue_number: int,
    default_branch: str,
) -> WorkflowResult | None:
    """Return None when the workflow file exists, else open (or point at) the setup PR."""
    if await github.file_exists(owner, repo, WORKFLOW_FILE_PATH):
        return None

    log.info("workflow_file_missing", repo=f"{owner}/{repo}", issue=issue_number)
    existing = await github.find_open_pr(owner, repo, WORKFLOW_BRANCH)
    if existing:
        number, url = existing
        await github.create_comment(
            owner,
            repo,
            issue_number,
            f"Please merge PR #{number} first for Bonk to run workflows.\n\n{url}",
        )
        return WorkflowResult(success=False, message=f"PR already exists: #{number}", pr_url=url)

    base_sha = await github.get_branch_sha(owner, repo, default_branch)
    if not await github.create_branch(owner, repo, WORKFLOW_BRANCH, base_sha):
        # Left over from a previously closed setup PR
        log.info("workflow_branch_exists", repo=f"{owner}/{repo}", branch=WORKFLOW_BRANCH)

    await github.create_or_update_file(
        owner,
        repo,
        WORKFLOW_FILE_PATH,
        render_workflow(config),
        "Add Bonk workflow file",
        WORKFLOW_BRANCH,
    )
    pr_number = await github.create_pr(
        owner,
        repo,
        WORKFLOW_BRANCH,
        default_branch,
        "Add Bonk workflow",
        WORKFLOW_PR_BODY.format(mention=config.bot_mention, command=config.bot_command),
    )
    pr_url = f"https://github.com/{owner}/{repo}/pull/{pr_number}"
    await github.create_comment(
        owner,
        repo,
        issue_number,
        f"I noticed the workflow file is missing. I've created a PR to add it: #{pr_number}\n\n"
        f"Once merged and configured, mention me again!\n\n{pr_url}",
    )
    return WorkflowResult(success=True, message=f"Created PR #{pr_number}", pr_url=pr_url)


async def run_workflow_mode(
    github: GitHubClient,
    config: BonkConfig,
    registry: TrackerRegistry,
    installation_id: int,
    context: EventContext,
    timestamp: str,
) -> WorkflowResult:
    setup = await ensure_workflow_file(
        github, config, context.owner, context.repo, context.issue_number, context.default_branch
    )
    if setup is not None:
        return setup

    tracker = await registry.get(context.full_repo)
    await tracker.set_installation_id(installation_id)
    await tracker.register_pending(context.actor, timestamp, context.issue_number)
    log.info("workflow_pending_stored", issue=context.issue_ref, actor=context.actor)
    return WorkflowResult(success=True, message="Workflow triggered, awaiting workflow_run event")
