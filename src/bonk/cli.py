"""CLI entry points for bonk."""

from __future__ import annotations

import asyncio
import functools
import re

import click
import structlog

from bonk.config import BonkConfig

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer(),
    ],
)


def _get_config() -> BonkConfig:
    return BonkConfig()


def _parse_issue_ref(ref: str) -> tuple[str, str, int]:
    """Parse 'owner/repo#number' into (owner, repo, number)."""
    match = re.match(r"^([^/]+)/([^#]+)#(\d+)$", ref)
    if not match:
        raise click.BadParameter(
            f"Invalid issue reference: {ref}. Expected format: owner/repo#number"
        )
    return match.group(1), match.group(2), int(match.group(3))


def _parse_repo(ref: str) -> str:
    if not re.match(r"^[^/\s]+/[^/\s]+$", ref):
        raise click.BadParameter(f"Invalid repository: {ref}. Expected format: owner/repo")
    return ref


@click.group()
def main() -> None:
    """Bonk: mention-triggered GitHub coding bot."""


@main.command()
@click.option("--host", default=None, help="Bind address (defaults to BONK_HOST).")
@click.option("--port", default=None, type=int, help="Bind port (defaults to BONK_PORT).")
def serve(host: str | None, port: int | None) -> None:
    """Start the webhook server and the run tracker timers."""
    import uvicorn

    from bonk.server.app import create_app

    config = _get_config()
    app = create_app(config)
    uvicorn.run(app, host=host or config.host, port=port or config.port)


@main.command()
@click.argument("issue_ref")
@click.argument("prompt")
@click.option("--pr", "is_pull_request", is_flag=True, help="The number refers to a pull request.")
@click.option("--actor", default="", help="User to check write access for.")
@click.option("--installation-id", default=0, type=int)
def process(
    issue_ref: str, prompt: str, is_pull_request: bool, actor: str, installation_id: int
) -> None:
    """Run one direct-mode request by hand.

    ISSUE_REF should be in the format owner/repo#number (e.g. acme/widgets#42).
    """
    from bonk.github import create_client
    from bonk.models import EventContext, ParsedRequest
    from bonk.orchestrator import Orchestrator
    from bonk.repo_config import load_repo_config

    owner, repo, number = _parse_issue_ref(issue_ref)
    config = _get_config()

    client_factory = functools.partial(create_client, config)

    async def _process() -> None:
        github = await client_factory(installation_id)
        request = ParsedRequest(
            context=EventContext(
                owner=owner,
                repo=repo,
                issue_number=number,
                actor=actor or await _current_user(),
                is_pull_request=is_pull_request,
            ),
            prompt=prompt,
            trigger_comment_id=0,
        )
        repo_config = await load_repo_config(owner, repo, config, github)
        orchestrator = Orchestrator(config, client_factory)
        await orchestrator.process_request(installation_id, request, repo_config)
        click.echo("Done.")

    asyncio.run(_process())


async def _current_user() -> str:
    proc = await asyncio.create_subprocess_exec(
        "gh",
        "api",
        "user",
        "--jq",
        ".login",
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, _ = await proc.communicate()
    login = stdout.decode().strip()
    if proc.returncode != 0 or not login:
        raise click.ClickException("Could not detect the gh user; pass --actor")
    return login


@main.command()
@click.argument("repo_ref")
def pending(repo_ref: str) -> None:
    """Show pending correlations and scheduled triggers for OWNER/REPO."""
    from bonk.store import TrackerStore

    name = _parse_repo(repo_ref)
    config = _get_config()
    store = TrackerStore(config.resolved_db_path())

    async def _show() -> None:
        await store.init_db()
        entries = await store.load_pending(name)
        timers = await store.list_timers(name)

        click.echo(f"Pending correlations for {name}:")
        if not entries:
            click.echo("  (none)")
        for p in entries:
            click.echo(f"  {p.key}  issue #{p.issue_number}")

        click.echo("Scheduled triggers:")
        if not timers:
            click.echo("  (none)")
        for t in timers:
            click.echo(f"  {t.trigger:<18} {t.ref:<40} due {t.due_at:.0f}")

    asyncio.run(_show())


@main.command()
@click.option("--days", default=None, type=int, help="Only count events from the last N days.")
def stats(days: int | None) -> None:
    """Show bot event counts."""
    from bonk.metrics import MetricsStore

    config = _get_config()
    metrics = MetricsStore(config.resolved_db_path())

    async def _show() -> None:
        await metrics.init_db()
        rows = await metrics.get_event_stats(days)

        if not rows:
            click.echo("No events recorded yet.")
            return

        click.echo(f"{'Event':<18} {'Status':<20} {'Count':>6} {'Avg ms':>10}")
        click.echo("-" * 57)
        for row in rows:
            avg = row["avg_duration_ms"] or 0
            click.echo(
                f"{row['event_type']:<18} {row['status']:<20} {row['count']:>6} {avg:>10.0f}"
            )

    asyncio.run(_show())
