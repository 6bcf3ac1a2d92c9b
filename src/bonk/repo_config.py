"""Per-repository overrides read from ``.github/bonk.yml``.

Layers (most specific wins):
1. Built-in defaults from ``BonkConfig``
2. Repo-level ``.github/bonk.yml`` at the ref the request targets
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog
import yaml

from bonk.models import Mode

if TYPE_CHECKING:
    from bonk.config import BonkConfig
    from bonk.github import GitHubClient

log = structlog.get_logger()

REPO_CONFIG_PATH = ".github/bonk.yml"


@dataclass
class RepoConfig:
    mode: Mode = Mode.DIRECT
    model: str = ""


async def load_repo_config(
    owner: str,
    repo: str,
    config: BonkConfig,
    github: GitHubClient,
    ref: str | None = None,
) -> RepoConfig:
    raw = await github.get_file_content(owner, repo, REPO_CONFIG_PATH, ref)
    overrides: dict = {}
    if raw:
        try:
            overrides = yaml.safe_load(raw) or {}
        except yaml.YAMLError:
            log.warning("repo_config_parse_error", repo=f"{owner}/{repo}")
        if not isinstance(overrides, dict):
            log.warning("repo_config_not_mapping", repo=f"{owner}/{repo}")
            overrides = {}
    return _resolve(overrides, config)


def _resolve(overrides: dict, config: BonkConfig) -> RepoConfig:
    mode_value = str(overrides.get("mode", config.default_mode)).lower()
    try:
        mode = Mode(mode_value)
    except ValueError:
        log.warning("repo_config_unknown_mode", mode=mode_value)
        mode = Mode(config.default_mode)
    return RepoConfig(mode=mode, model=str(overrides.get("model") or config.default_model))
