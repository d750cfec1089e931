"""
Configuration for the activity bot.
Loads settings from a YAML file and/or environment variables.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from activity_bot.errors import ConfigError

DEFAULT_EXTENSIONS = ("rs", "txt", "md", "toml", "json", "yaml", "yml")

_REPO_RE = re.compile(r"^[\w.-]+/[\w.-]+$")


@dataclass(frozen=True)
class RetryConfig:
    """Bounded retry policy for pushes and forge API calls."""
    max_attempts: int = 3              # per API call, TransientNetworkError only
    push_attempts: int = 3             # git push, PushRejected
    base_delay_seconds: float = 15.0   # doubled after every failed attempt
    max_delay_seconds: float = 120.0
    merge_poll_attempts: int = 5       # while GitHub computes "mergeable"


@dataclass(frozen=True)
class BotConfig:
    username: str = ""
    repo: str = ""                     # "owner/name"
    repo_path: str = "."
    cron_schedule: str = "0 */8 * * *"
    min_files: int = 1
    max_files: int = 3
    min_lines: int = 1
    max_lines: int = 5
    debug: bool = False

    base_branch: Optional[str] = None  # None: ask the API for the default branch
    target_dir: str = "."
    extensions: tuple = DEFAULT_EXTENSIONS
    require_approval: bool = False
    delete_branch_after_merge: bool = True
    approve_delay_seconds: tuple = (60, 180)
    merge_delay_seconds: float = 30
    timezone: str = "UTC"
    token_file: Optional[str] = None
    token: str = field(default="", repr=False)
    retry: RetryConfig = field(default_factory=RetryConfig)

    @property
    def owner(self) -> str:
        return self.repo.split("/")[0]

    @property
    def name(self) -> str:
        return self.repo.split("/")[1]


def _known(cls, data: dict) -> dict:
    """Keep only the keys `cls` declares."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


def _read_token(token_file: Optional[str]) -> str:
    if not token_file:
        return ""
    path = Path(token_file).expanduser()
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError as e:
        raise ConfigError(f"Cannot read token_file {path}: {e}") from e


def load_config(config_path: Optional[str] = None) -> BotConfig:
    """Load configuration from YAML file and environment variables.

    Loading is idempotent: the same file and environment always produce equal
    BotConfig values.
    """
    data: dict = {}

    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a mapping at top level")

    retry_data = data.pop("retry", None) or {}
    if not isinstance(retry_data, dict):
        raise ConfigError("'retry' must be a mapping")
    values = _known(BotConfig, data)
    values.pop("token", None)  # never read the secret from the config file

    for key in ("extensions", "approve_delay_seconds"):
        if key in values:
            if values[key] is None:
                del values[key]
            elif isinstance(values[key], (str, int, float)):
                values[key] = (values[key],)
            else:
                values[key] = tuple(values[key])

    # Override with environment variables
    values["username"] = os.getenv("GITHUB_USERNAME", values.get("username", ""))
    values["repo"] = os.getenv("GITHUB_REPO", values.get("repo", ""))
    values["repo_path"] = os.getenv("REPO_PATH", values.get("repo_path", "."))
    if os.getenv("CRON_SCHEDULE"):
        values["cron_schedule"] = os.environ["CRON_SCHEDULE"]

    values["token"] = os.getenv("GITHUB_TOKEN", "") or _read_token(values.get("token_file"))

    try:
        retry = RetryConfig(**_known(RetryConfig, retry_data))
        return BotConfig(retry=retry, **values)
    except TypeError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def validate_config(config: BotConfig, require_token: bool = True) -> None:
    """Raise ConfigError if the configuration cannot drive a cycle."""
    bounds = {
        "min_files": config.min_files,
        "max_files": config.max_files,
        "min_lines": config.min_lines,
        "max_lines": config.max_lines,
    }
    for key, value in bounds.items():
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise ConfigError(f"{key} must be a non-negative integer, got {value!r}")
    if config.min_files > config.max_files:
        raise ConfigError(
            f"min_files ({config.min_files}) > max_files ({config.max_files})")
    if config.min_lines > config.max_lines:
        raise ConfigError(
            f"min_lines ({config.min_lines}) > max_lines ({config.max_lines})")

    if not _REPO_RE.match(config.repo or ""):
        raise ConfigError(
            f"Repository should be in the format 'owner/repo', got {config.repo!r}")
    if not config.cron_schedule or len(config.cron_schedule.split()) != 5:
        raise ConfigError(
            f"cron_schedule must have 5 fields, got {config.cron_schedule!r}")
    if not Path(config.repo_path).is_dir():
        raise ConfigError(f"repo_path is not a directory: {config.repo_path!r}")

    if len(config.approve_delay_seconds) != 2:
        raise ConfigError("approve_delay_seconds must be [min, max]")
    low, high = config.approve_delay_seconds
    if low < 0 or low > high or config.merge_delay_seconds < 0:
        raise ConfigError(f"Invalid approve_delay_seconds: {config.approve_delay_seconds!r}")

    r = config.retry
    if r.max_attempts < 1 or r.push_attempts < 1 or r.merge_poll_attempts < 1:
        raise ConfigError("retry attempt counts must be >= 1")
    if r.base_delay_seconds < 0 or r.max_delay_seconds < 0:
        raise ConfigError("retry delays must be >= 0")

    if require_token and not config.token:
        raise ConfigError("GITHUB_TOKEN environment variable not set (or token_file missing)")
