"""Tests for agent invocation and workspace handling."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from claude_agent_sdk import AssistantMessage, ResultMessage, TextBlock

from bonk.agent import (
    AgentError,
    AgentRun,
    parse_changed_files,
    run_agent,
    run_agent_session,
    stream_agent,
    summarize,
)
from bonk.models import EventContext, ModelConfig

MODEL = ModelConfig("anthropic", "claude-sonnet-4-20250514")


def _assistant(*texts: str) -> MagicMock:
    message = MagicMock(spec=AssistantMessage)
    message.content = []
    for text in texts:
        block = MagicMock(spec=TextBlock)
        block.text = text
        message.content.append(block)
    return message


def _result(text: str | None, is_error: bool = False) -> MagicMock:
    message = MagicMock(spec=ResultMessage)
    message.result = text
    message.session_id = "sess-1"
    message.total_cost_usd = 0.25
    message.num_turns = 4
    message.is_error = is_error
    return message


def _fake_query(*messages):
    async def _query(prompt, options):
        for message in messages:
            yield message

    return _query


class TestParseChangedFiles:
    def test_porcelain(self):
        porcelain = " M src/app.py\n?? tests/test_new.py\nR  old.py -> new.py\n D gone.py\n"
        assert parse_changed_files(porcelain) == [
            "src/app.py",
            "tests/test_new.py",
            "new.py",
            "gone.py",
        ]

    def test_clean(self):
        assert parse_changed_files("") == []


class TestSummarize:
    def test_first_non_empty_line(self):
        assert summarize("\n## Fixed the race\n\nDetails...") == "Fixed the race"

    def test_truncates(self):
        summary = summarize("x" * 100)
        assert len(summary) == 72
        assert summary.endswith("...")

    def test_empty(self):
        assert summarize("") == ""


class TestRunAgent:
    @pytest.mark.asyncio
    async def test_collects_result(self, config):
        with patch(
            "bonk.agent.query", new=_fake_query(_assistant("thinking"), _result("Final answer"))
        ):
            run = await run_agent("do it", "/tmp/x", config=config, model="claude-sonnet-4")
        assert run.text == "Final answer"
        assert run.session_id == "sess-1"
        assert run.turns_used == 4
        assert not run.is_error

    @pytest.mark.asyncio
    async def test_falls_back_to_streamed_text(self, config):
        with patch("bonk.agent.query", new=_fake_query(_assistant("a", "b"), _result(None))):
            run = await run_agent("do it", "/tmp/x", config=config)
        assert run.text == "a\nb"

    @pytest.mark.asyncio
    async def test_stream_yields_text(self, config):
        with patch("bonk.agent.query", new=_fake_query(_assistant("one"), _assistant("two"))):
            chunks = [c async for c in stream_agent("q", "/tmp/x", config=config)]
        assert chunks == ["one", "two"]


class TestRunAgentSession:
    @pytest.fixture
    def git(self):
        calls: list[tuple] = []
        porcelain = {"value": " M src/app.py\n"}

        async def _git(work_dir, *args):
            calls.append(args)
            return porcelain["value"] if args[0] == "status" else ""

        mock = AsyncMock(side_effect=_git)
        mock.calls = calls
        mock.porcelain = porcelain
        return mock

    @pytest.mark.asyncio
    async def test_issue_pushes_new_branch(self, config, git):
        context = EventContext(owner="acme", repo="widgets", issue_number=42, actor="alice")
        run = AgentRun(text="Fixed it.", session_id="s1")
        with (
            patch("bonk.agent.clone_repo", new=AsyncMock()) as clone,
            patch("bonk.agent._git", new=git),
            patch("bonk.agent.run_agent", new=AsyncMock(return_value=run)) as agent,
        ):
            result = await run_agent_session(config, context, "p", MODEL, branch="main", token="t")

        clone.assert_awaited_once()
        assert clone.call_args.args[0] == "acme/widgets"
        assert agent.call_args.kwargs["model"] == "claude-sonnet-4-20250514"
        assert git.calls[0][:2] == ("checkout", "-b")
        assert result.new_branch.startswith("bonk/issue42-")
        assert git.calls[-1] == ("push", "origin", f"HEAD:{result.new_branch}")
        assert result.changed_files == ["src/app.py"]
        assert result.summary == "Fixed it."

    @pytest.mark.asyncio
    async def test_pull_request_pushes_head_branch(self, config, git):
        context = EventContext(
            owner="acme", repo="widgets", issue_number=8, actor="alice", is_pull_request=True
        )
        with (
            patch("bonk.agent.clone_repo", new=AsyncMock()),
            patch("bonk.agent._git", new=git),
            patch("bonk.agent.run_agent", new=AsyncMock(return_value=AgentRun(text="ok"))),
        ):
            result = await run_agent_session(config, context, "p", MODEL, branch="feature")

        assert all(call[0] != "checkout" for call in git.calls)
        assert git.calls[-1] == ("push", "origin", "HEAD:feature")
        assert result.new_branch is None

    @pytest.mark.asyncio
    async def test_no_changes_no_commit(self, config, git):
        git.porcelain["value"] = ""
        context = EventContext(owner="acme", repo="widgets", issue_number=42, actor="alice")
        with (
            patch("bonk.agent.clone_repo", new=AsyncMock()),
            patch("bonk.agent._git", new=git),
            patch("bonk.agent.run_agent", new=AsyncMock(return_value=AgentRun(text="answer"))),
        ):
            result = await run_agent_session(config, context, "p", MODEL, branch="main")

        assert [c[0] for c in git.calls] == ["checkout", "status"]
        assert result.new_branch is None
        assert result.changed_files == []

    @pytest.mark.asyncio
    async def test_error_result_raises(self, config, git):
        context = EventContext(owner="acme", repo="widgets", issue_number=42, actor="alice")
        with (
            patch("bonk.agent.clone_repo", new=AsyncMock()),
            patch("bonk.agent._git", new=git),
            patch(
                "bonk.agent.run_agent",
                new=AsyncMock(return_value=AgentRun(text="rate limited", is_error=True)),
            ),
        ):
            with pytest.raises(AgentError, match="rate limited"):
                await run_agent_session(config, context, "p", MODEL, branch="main")

    @pytest.mark.asyncio
    async def test_session_link_from_template(self, config, git):
        config.session_url_template = "https://sessions.example/{session_id}"
        git.porcelain["value"] = ""
        context = EventContext(owner="acme", repo="widgets", issue_number=42, actor="alice")
        with (
            patch("bonk.agent.clone_repo", new=AsyncMock()),
            patch("bonk.agent._git", new=git),
            patch(
                "bonk.agent.run_agent",
                new=AsyncMock(return_value=AgentRun(text="x", session_id="abc")),
            ),
        ):
            result = await run_agent_session(config, context, "p", MODEL, branch="main")

        assert result.session_link == "https://sessions.example/abc"
