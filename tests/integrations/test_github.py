from __future__ import annotations

import base64
import hashlib
import hmac
import json
from unittest.mock import AsyncMock, patch

import pytest

from bonk.config import BonkConfig
from bonk.github import GitHubClient, create_client, verify_signature


@pytest.fixture
def github():
    return GitHubClient()


def _gh_result(stdout: str, returncode: int = 0, stderr: str = ""):
    proc = AsyncMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(stdout.encode(), stderr.encode()))
    return proc


class TestCreateComment:
    @pytest.mark.asyncio
    async def test_returns_id(self, github):
        with patch("asyncio.create_subprocess_exec", return_value=_gh_result("12345\n")) as mock_exec:
            comment_id = await github.create_comment("acme", "widgets", 42, "hello")
        assert comment_id == 12345
        args = mock_exec.call_args[0]
        assert "repos/acme/widgets/issues/42/comments" in args
        assert "body=hello" in args

    @pytest.mark.asyncio
    async def test_raises_on_error(self, github):
        with patch("asyncio.create_subprocess_exec", return_value=_gh_result("", returncode=1)):
            with pytest.raises(RuntimeError, match="Failed to create comment"):
                await github.create_comment("acme", "widgets", 42, "hello")


class TestUpdateComment:
    @pytest.mark.asyncio
    async def test_patches_comment(self, github):
        with patch("asyncio.create_subprocess_exec", return_value=_gh_result("900")) as mock_exec:
            await github.update_comment("acme", "widgets", 900, "done")
        args = mock_exec.call_args[0]
        assert "PATCH" in args
        assert "repos/acme/widgets/issues/comments/900" in args

    @pytest.mark.asyncio
    async def test_raises_on_error(self, github):
        with patch("asyncio.create_subprocess_exec", return_value=_gh_result("", returncode=1)):
            with pytest.raises(RuntimeError):
                await github.update_comment("acme", "widgets", 900, "done")


class TestCreateReaction:
    @pytest.mark.asyncio
    async def test_review_comment_endpoint(self, github):
        with patch("asyncio.create_subprocess_exec", return_value=_gh_result("{}")) as mock_exec:
            await github.create_reaction("acme", "widgets", 5, "eyes", "pull_request_review_comment")
        args = mock_exec.call_args[0]
        assert "repos/acme/widgets/pulls/comments/5/reactions" in args
        assert "content=eyes" in args

    @pytest.mark.asyncio
    async def test_review_is_skipped(self, github):
        with patch("asyncio.create_subprocess_exec") as mock_exec:
            await github.create_reaction("acme", "widgets", 5, "eyes", "pull_request_review")
        mock_exec.assert_not_called()


class TestHasWriteAccess:
    @pytest.mark.parametrize(
        "permission,expected",
        [("admin", True), ("write", True), ("read", False), ("none", False), ("", False)],
    )
    @pytest.mark.asyncio
    async def test_permission_levels(self, github, permission, expected):
        with patch("asyncio.create_subprocess_exec", return_value=_gh_result(f"{permission}\n")):
            assert await github.has_write_access("acme", "widgets", "alice") is expected


class TestFiles:
    @pytest.mark.asyncio
    async def test_get_file_content_decodes(self, github):
        encoded = base64.b64encode(b"mode: workflow\n").decode()
        with patch("asyncio.create_subprocess_exec", return_value=_gh_result(encoded)):
            content = await github.get_file_content("acme", "widgets", ".github/bonk.yml")
        assert content == "mode: workflow\n"

    @pytest.mark.asyncio
    async def test_get_file_content_missing(self, github):
        with patch("asyncio.create_subprocess_exec", return_value=_gh_result("", returncode=1)):
            assert await github.get_file_content("acme", "widgets", ".github/bonk.yml") is None

    @pytest.mark.asyncio
    async def test_file_exists(self, github):
        with patch(
            "asyncio.create_subprocess_exec",
            return_value=_gh_result(".github/workflows/bonk.yml"),
        ):
            assert await github.file_exists("acme", "widgets", ".github/workflows/bonk.yml")

    @pytest.mark.asyncio
    async def test_create_or_update_file_encodes_content(self, github):
        with patch("asyncio.create_subprocess_exec", return_value=_gh_result("{}")) as mock_exec:
            await github.create_or_update_file("acme", "widgets", "a.yml", "x: 1", "Add", "b")
        args = mock_exec.call_args[0]
        assert f"content={base64.b64encode(b'x: 1').decode()}" in args
        assert "branch=b" in args


class TestPullRequests:
    @pytest.mark.asyncio
    async def test_create_pr_parses_number(self, github):
        with patch(
            "asyncio.create_subprocess_exec",
            return_value=_gh_result("https://github.com/acme/widgets/pull/77\n"),
        ):
            number = await github.create_pr("acme", "widgets", "bonk/x", "main", "Title", "Body")
        assert number == 77

    @pytest.mark.asyncio
    async def test_create_pr_truncates_title(self, github):
        with patch(
            "asyncio.create_subprocess_exec",
            return_value=_gh_result("https://github.com/acme/widgets/pull/77"),
        ) as mock_exec:
            await github.create_pr("acme", "widgets", "bonk/x", "main", "t" * 300, "Body")
        args = mock_exec.call_args[0]
        title = args[args.index("--title") + 1]
        assert len(title) == 256
        assert title.endswith("...")

    @pytest.mark.asyncio
    async def test_find_open_pr(self, github):
        prs = [{"number": 5, "url": "https://github.com/acme/widgets/pull/5"}]
        with patch("asyncio.create_subprocess_exec", return_value=_gh_result(json.dumps(prs))):
            assert await github.find_open_pr("acme", "widgets", "bonk/add-workflow-file") == (
                5,
                "https://github.com/acme/widgets/pull/5",
            )

    @pytest.mark.asyncio
    async def test_find_open_pr_none(self, github):
        with patch("asyncio.create_subprocess_exec", return_value=_gh_result("[]")):
            assert await github.find_open_pr("acme", "widgets", "bonk/add-workflow-file") is None

    @pytest.mark.asyncio
    async def test_review_comments(self, github):
        comments = [
            {
                "id": 1,
                "user": {"login": "bob"},
                "body": "nit",
                "path": "a.py",
                "line": None,
                "original_line": 4,
            }
        ]
        with patch("asyncio.create_subprocess_exec", return_value=_gh_result(json.dumps(comments))):
            result = await github.get_review_comments("acme", "widgets", 8)
        assert result[0].author == "bob"
        assert result[0].line == 4


class TestWorkflowRunStatus:
    @pytest.mark.asyncio
    async def test_parses_status(self, github):
        run = {"id": 7, "status": "completed", "conclusion": "cancelled"}
        with patch("asyncio.create_subprocess_exec", return_value=_gh_result(json.dumps(run))):
            status = await github.get_workflow_run_status("acme", "widgets", 7)
        assert status.is_completed
        assert status.conclusion == "cancelled"

    @pytest.mark.asyncio
    async def test_in_progress_has_no_conclusion(self, github):
        run = {"id": 7, "status": "in_progress", "conclusion": None}
        with patch("asyncio.create_subprocess_exec", return_value=_gh_result(json.dumps(run))):
            status = await github.get_workflow_run_status("acme", "widgets", 7)
        assert not status.is_completed
        assert status.conclusion is None

    @pytest.mark.asyncio
    async def test_raises_on_error(self, github):
        with patch("asyncio.create_subprocess_exec", return_value=_gh_result("", returncode=1)):
            with pytest.raises(RuntimeError):
                await github.get_workflow_run_status("acme", "widgets", 7)


class TestToken:
    @pytest.mark.asyncio
    async def test_token_passed_as_env(self):
        github = GitHubClient("secret-token")
        with patch("asyncio.create_subprocess_exec", return_value=_gh_result("write")) as mock_exec:
            await github.has_write_access("acme", "widgets", "alice")
        assert mock_exec.call_args.kwargs["env"]["GH_TOKEN"] == "secret-token"

    @pytest.mark.asyncio
    async def test_ambient_auth_without_token(self, github):
        with patch("asyncio.create_subprocess_exec", return_value=_gh_result("write")) as mock_exec:
            await github.has_write_access("acme", "widgets", "alice")
        assert mock_exec.call_args.kwargs["env"] is None


class TestCreateClient:
    @pytest.mark.asyncio
    async def test_static_token(self):
        client = await create_client(BonkConfig(github_token="abc"), 5)
        assert client.token == "abc"

    @pytest.mark.asyncio
    async def test_token_command(self):
        config = BonkConfig(github_token_command="mint-token --installation {installation_id}")
        with patch(
            "asyncio.create_subprocess_exec", return_value=_gh_result("ghs_minted\n")
        ) as mock_exec:
            client = await create_client(config, 5)
        assert client.token == "ghs_minted"
        assert mock_exec.call_args[0][:3] == ("mint-token", "--installation", "5")

    @pytest.mark.asyncio
    async def test_token_command_failure(self):
        config = BonkConfig(github_token_command="mint-token {installation_id}")
        with patch(
            "asyncio.create_subprocess_exec",
            return_value=_gh_result("", returncode=1, stderr="no key"),
        ):
            with pytest.raises(RuntimeError, match="no key"):
                await create_client(config, 5)


class TestVerifySignature:
    def _sign(self, body: bytes, secret: str) -> str:
        return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()

    def test_valid(self):
        assert verify_signature(b"{}", self._sign(b"{}", "s"), "s")

    def test_tampered_body(self):
        assert not verify_signature(b"{ }", self._sign(b"{}", "s"), "s")

    def test_missing_signature_or_secret(self):
        assert not verify_signature(b"{}", None, "s")
        assert not verify_signature(b"{}", self._sign(b"{}", ""), "")
