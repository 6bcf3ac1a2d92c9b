"""Per-repository workflow run tracking.

A ``RunTracker`` owns one repository's correlation state. Delegated work is
first recorded as a pending correlation keyed by ``actor:timestamp`` because no
run id exists yet; when the run-start event arrives the entry is consumed by
actor and the run is polled until it reaches a terminal state. All waiting is
done through one-shot deferred triggers in the ``TrackerStore`` which the
``TimerDriver`` fires back into ``RunTracker.fire``.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

import structlog

from bonk.config import BonkConfig
from bonk.github import GitHubClient
from bonk.metrics import MetricsStore, record_safely
from bonk.models import PendingCorrelation, RunState, TrackedRun
from bonk.notifier import post_comment_best_effort
from bonk.store import TrackerStore

log = structlog.get_logger()

POLL_TRIGGER = "check_run_status"
CLEANUP_TRIGGER = "cleanup_pending"

ClientFactory = Callable[[int], Awaitable[GitHubClient]]


def failure_message(conclusion: str | None) -> str:
    if conclusion == "timeout":
        return "Bonk workflow timed out."
    if conclusion == "failure":
        return "Bonk workflow failed. Check the logs for details."
    if conclusion == "cancelled":
        return "Bonk workflow was cancelled."
    return f"Bonk workflow finished with status: {conclusion or 'unknown'}"


def _run_ref(run_id: int) -> str:
    return f"run:{run_id}"


class RunTracker:
    """Tracks workflow runs for one repository. Name format: ``{owner}/{repo}``."""

    def __init__(
        self,
        name: str,
        store: TrackerStore,
        client_factory: ClientFactory,
        *,
        poll_interval_s: float = 30,
        max_tracking_s: float = 30 * 60,
        pending_cleanup_s: float = 600,
        metrics: MetricsStore | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.owner, _, self.repo = name.partition("/")
        self.store = store
        self.metrics = metrics
        self.poll_interval_s = poll_interval_s
        self.max_tracking_s = max_tracking_s
        self.pending_cleanup_s = pending_cleanup_s
        self.installation_id = 0
        self.pending: dict[str, PendingCorrelation] = {}
        self.runs: dict[int, TrackedRun] = {}
        self._client_factory = client_factory
        self._clock = clock
        self._lock = asyncio.Lock()

    async def load(self) -> None:
        """Restore installation id and pending entries from the store."""
        async with self._lock:
            self.installation_id = await self.store.get_installation(self.name)
            self.pending = {p.key: p for p in await self.store.load_pending(self.name)}

    async def set_installation_id(self, installation_id: int) -> None:
        async with self._lock:
            if installation_id == self.installation_id:
                return
            self.installation_id = installation_id
            await self.store.set_installation(self.name, installation_id)

    # -- Pending correlations --

    async def register_pending(self, actor: str, timestamp: str, issue_number: int) -> None:
        async with self._lock:
            pending = PendingCorrelation(
                actor=actor,
                timestamp=timestamp,
                issue_number=issue_number,
                created_at=self._clock(),
            )
            self.pending[pending.key] = pending
            await self.store.save_pending(self.name, pending)
            log.info("pending_added", repo=self.name, issue=issue_number, key=pending.key)

            await self.store.schedule(
                self.name,
                CLEANUP_TRIGGER,
                pending.key,
                {"key": pending.key},
                self._clock() + self.pending_cleanup_s,
            )

    async def consume_pending(self, actor: str) -> PendingCorrelation | None:
        """Remove and return the oldest pending entry for ``actor``, if any.

        The run-start event only carries the actor, so matching collapses to
        actor-only and the first entry in insertion order wins.
        """
        async with self._lock:
            match = self._first_pending(actor)
            if match is not None:
                await self._drop_pending(match)
            return match

    async def cleanup_pending(self, key: str) -> None:
        async with self._lock:
            if self.pending.pop(key, None) is None:
                return
            await self.store.delete_pending(self.name, key)
            log.info("pending_expired", repo=self.name, key=key)

    # -- Run polling --

    async def track_run(self, run_id: int, run_url: str, issue_number: int) -> bool:
        """Start polling a run. Returns False when already tracked or not schedulable."""
        async with self._lock:
            if await self._is_tracked(run_id):
                return False
            return await self._start_run(run_id, run_url, issue_number)

    async def track_pending_run(
        self, actor: str, run_id: int, run_url: str, fallback_issue: int = 0
    ) -> bool:
        """Correlate a run-start event with ``actor``'s oldest pending entry and track it.

        Runs report their start more than once (``requested``, ``in_progress``,
        the registration call). Only the first report consumes a pending entry;
        later ones leave the actor's remaining entries for their own runs.
        """
        async with self._lock:
            if await self._is_tracked(run_id):
                return False

            match = self._first_pending(actor)
            issue_number = match.issue_number if match is not None else fallback_issue
            if not issue_number:
                log.info("workflow_run_unmatched", repo=self.name, run_id=run_id, actor=actor)
                return False

            if not await self._start_run(run_id, run_url, issue_number):
                return False
            if match is not None:
                await self._drop_pending(match)
            return True

    async def check_run_status(
        self, run_id: int, run_url: str, issue_number: int, created_at: float
    ) -> bool:
        """Poll one run. Returns False when the next poll could not be scheduled."""
        async with self._lock:
            run = self.runs.setdefault(
                run_id,
                TrackedRun(
                    run_id=run_id,
                    run_url=run_url,
                    issue_number=issue_number,
                    created_at=created_at,
                ),
            )
            if run.state.is_terminal:
                log.info("run_already_terminal", repo=self.name, run_id=run_id, state=run.state)
                return True

            elapsed = self._clock() - run.created_at
            if elapsed > self.max_tracking_s:
                log.warning("run_timed_out", repo=self.name, run_id=run_id, elapsed_s=round(elapsed))
                await self._finish(run, "timeout")
                return True

            try:
                github = await self._client_factory(self.installation_id)
            except Exception:
                log.exception("client_create_failed", repo=self.name, run_id=run_id)
                return await self._schedule_poll(run)

            try:
                status = await github.get_workflow_run_status(self.owner, self.repo, run_id)
            except Exception:
                log.exception("run_status_failed", repo=self.name, run_id=run_id)
                return await self._schedule_poll(run)

            log.info(
                "run_status",
                repo=self.name,
                run_id=run_id,
                status=status.status,
                conclusion=status.conclusion,
            )
            if not status.is_completed:
                return await self._schedule_poll(run)
            await self._finish(run, status.conclusion)
            return True

    async def finalize_run(self, run_id: int, status: str | None) -> bool:
        """Short-circuit polling when the workflow reports its own completion."""
        async with self._lock:
            run = self.runs.get(run_id)
            if run is None:
                timer = await self.store.get_timer(self.name, POLL_TRIGGER, _run_ref(run_id))
                if timer is None:
                    log.info("finalize_unknown_run", repo=self.name, run_id=run_id)
                    return False
                run = TrackedRun(**timer.payload)
                self.runs[run_id] = run

            if run.state.is_terminal:
                return False

            await self.store.cancel(self.name, POLL_TRIGGER, _run_ref(run_id))
            await self._finish(run, status)
            await self._record("finalize", status or "unknown", run_id=run_id)
            return True

    async def fire(self, trigger: str, payload: dict) -> bool:
        """Handle one deferred trigger. False leaves it to fire again later."""
        if trigger == POLL_TRIGGER:
            return await self.check_run_status(**payload)
        if trigger == CLEANUP_TRIGGER:
            await self.cleanup_pending(payload["key"])
        else:
            log.warning("unknown_trigger", repo=self.name, trigger=trigger)
        return True

    # -- Internal --

    def _first_pending(self, actor: str) -> PendingCorrelation | None:
        return next((p for p in self.pending.values() if p.actor == actor), None)

    async def _drop_pending(self, pending: PendingCorrelation) -> None:
        del self.pending[pending.key]
        await self.store.delete_pending(self.name, pending.key)
        log.info("pending_consumed", repo=self.name, issue=pending.issue_number, key=pending.key)

    async def _is_tracked(self, run_id: int) -> bool:
        if run_id in self.runs or await self.store.get_timer(
            self.name, POLL_TRIGGER, _run_ref(run_id)
        ):
            log.info("run_already_tracked", repo=self.name, run_id=run_id)
            return True
        return False

    async def _start_run(self, run_id: int, run_url: str, issue_number: int) -> bool:
        run = TrackedRun(
            run_id=run_id,
            run_url=run_url,
            issue_number=issue_number,
            created_at=self._clock(),
        )
        if not await self._schedule_poll(run):
            return False

        self._prune_runs()
        self.runs[run_id] = run
        log.info(
            "run_tracked",
            repo=self.name,
            run_id=run_id,
            issue=issue_number,
            first_poll_s=self.poll_interval_s,
        )
        await self._record("track", "success", issue_number=issue_number, run_id=run_id)
        return True

    async def _schedule_poll(self, run: TrackedRun) -> bool:
        try:
            await self.store.schedule(
                self.name,
                POLL_TRIGGER,
                _run_ref(run.run_id),
                run.to_payload(),
                self._clock() + self.poll_interval_s,
            )
        except Exception:
            log.exception("poll_schedule_failed", repo=self.name, run_id=run.run_id)
            return False
        return True

    async def _finish(self, run: TrackedRun, conclusion: str | None) -> None:
        run.state = RunState.from_conclusion(conclusion)
        if run.state is RunState.SUCCESS:
            # The workflow posts its own response on success
            log.info("run_succeeded", repo=self.name, run_id=run.run_id)
            return
        await self._post_failure_comment(run, conclusion)

    async def _post_failure_comment(self, run: TrackedRun, conclusion: str | None) -> None:
        body = f"{failure_message(conclusion)}\n\n[View workflow run]({run.run_url})"
        try:
            github = await self._client_factory(self.installation_id)
        except Exception:
            log.exception("failure_comment_client_failed", repo=self.name, run_id=run.run_id)
            await self._record("failure_comment", "error", issue_number=run.issue_number)
            return

        posted = await post_comment_best_effort(
            github, self.owner, self.repo, run.issue_number, body
        )
        if posted:
            log.info(
                "failure_comment_posted",
                repo=self.name,
                issue=run.issue_number,
                conclusion=conclusion,
            )
        await self._record(
            "failure_comment",
            "success" if posted else "error",
            event_subtype=conclusion,
            issue_number=run.issue_number,
            run_id=run.run_id,
        )

    def _prune_runs(self) -> None:
        horizon = self._clock() - 2 * self.max_tracking_s
        for run_id in [
            r.run_id for r in self.runs.values() if r.state.is_terminal and r.created_at < horizon
        ]:
            del self.runs[run_id]

    async def _record(self, event_type: str, status: str, **fields) -> None:
        await record_safely(self.metrics, self.name, event_type, status, **fields)


class TrackerRegistry:
    """Lazily creates and loads one ``RunTracker`` per ``owner/repo``."""

    def __init__(
        self,
        config: BonkConfig,
        store: TrackerStore,
        client_factory: ClientFactory,
        *,
        metrics: MetricsStore | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.store = store
        self.metrics = metrics
        self._client_factory = client_factory
        self._clock = clock
        self._trackers: dict[str, RunTracker] = {}
        self._lock = asyncio.Lock()

    async def get(self, name: str) -> RunTracker:
        async with self._lock:
            tracker = self._trackers.get(name)
            if tracker is None:
                tracker = RunTracker(
                    name,
                    self.store,
                    self._client_factory,
                    poll_interval_s=self.config.poll_interval_s,
                    max_tracking_s=self.config.max_tracking_s,
                    pending_cleanup_s=self.config.pending_cleanup_s,
                    metrics=self.metrics,
                    clock=self._clock,
                )
                await tracker.load()
                self._trackers[name] = tracker
            return tracker
