"""Configuration via Pydantic settings."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class BonkConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BONK_", env_file=".env", extra="ignore")

    # GitHub
    github_token: str = ""
    # Shell command that prints an installation token, e.g. "mint-token {installation_id}"
    github_token_command: str = ""
    webhook_secret: str = ""
    api_token: str = ""

    # Triggers
    bot_mention: str = "@ask-bonk"
    bot_command: str = "/bonk"

    # Agent
    default_model: str = "anthropic/claude-sonnet-4-20250514"
    default_mode: str = "direct"
    agent_permission_mode: str = "bypassPermissions"
    agent_max_attempts: int = 3
    agent_retry_delay_s: int = 15
    session_url_template: str = ""
    git_author_name: str = "bonk[bot]"
    git_author_email: str = "bonk[bot]@users.noreply.github.com"

    # Run tracking
    poll_interval_s: int = 30
    max_tracking_s: int = 30 * 60
    pending_cleanup_s: int = 600
    timer_tick_s: float = 5.0
    # A claimed trigger that never completes fires again after this long
    timer_lease_s: float = 120.0
    max_concurrent_triggers: int = 8

    # Server
    host: str = "0.0.0.0"
    port: int = 8787

    # Paths
    workspace_dir: Path = Path("~/.bonk/workspaces")
    db_path: Path = Path("~/.bonk/bonk.db")

    def resolved_workspace_dir(self) -> Path:
        return self.workspace_dir.expanduser()

    def resolved_db_path(self) -> Path:
        return self.db_path.expanduser()
