from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from bonk.config import BonkConfig
from bonk.github import GitHubClient
from bonk.metrics import MetricsStore
from bonk.models import EventContext, ParsedRequest, RunStatus
from bonk.store import TrackerStore
from bonk.tracker import RunTracker

START = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def config(tmp_path) -> BonkConfig:
    return BonkConfig(
        github_token="test-token",
        webhook_secret="hook-secret",
        api_token="api-token",
        agent_retry_delay_s=0,
        timer_tick_s=0.01,
        db_path=tmp_path / "bonk.db",
        workspace_dir=tmp_path / "workspaces",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_github() -> AsyncMock:
    gh = AsyncMock(spec=GitHubClient)
    gh.token = "test-token"
    gh.has_write_access = AsyncMock(return_value=True)
    gh.create_comment = AsyncMock(return_value=900)
    gh.get_repository = AsyncMock(return_value={"private": False, "default_branch": "main"})
    gh.get_file_content = AsyncMock(return_value=None)
    gh.file_exists = AsyncMock(return_value=True)
    gh.get_workflow_run_status = AsyncMock(return_value=RunStatus(status="in_progress"))
    gh.get_review_comments = AsyncMock(return_value=[])
    return gh


@pytest.fixture
def client_factory(mock_github) -> AsyncMock:
    return AsyncMock(return_value=mock_github)


@pytest.fixture
async def store(tmp_path) -> TrackerStore:
    s = TrackerStore(tmp_path / "bonk.db")
    await s.init_db()
    return s


@pytest.fixture
async def mock_metrics(tmp_path) -> MetricsStore:
    m = MetricsStore(tmp_path / "bonk.db")
    await m.init_db()
    return m


@pytest.fixture
async def tracker(store, client_factory, mock_metrics, clock) -> RunTracker:
    t = RunTracker(
        "acme/widgets",
        store,
        client_factory,
        poll_interval_s=30,
        max_tracking_s=30 * 60,
        pending_cleanup_s=600,
        metrics=mock_metrics,
        clock=clock,
    )
    await t.load()
    return t


@pytest.fixture
def issue_request() -> ParsedRequest:
    return ParsedRequest(
        context=EventContext(owner="acme", repo="widgets", issue_number=42, actor="alice"),
        prompt="fix the flaky test",
        trigger_comment_id=111,
        trigger_timestamp="2024-01-01T00:00:00Z",
    )
