"""Configuration loader for weekly-activity.

Reads YAML configuration from ~/.config/weekly-activity/config.yaml (or a
custom path) and overlays the GITHUB_* environment variables. The resulting
Config is passed explicitly into the pipeline.

Requires PyYAML (pip install pyyaml).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Mapping, Optional

import yaml

from weekly_activity.rest_client import DEFAULT_API_URL

DEFAULT_CONFIG_PATH = os.path.expanduser("~/.config/weekly-activity/config.yaml")

OWNER_TYPES = ("user", "org")
AUTH_SCHEMES = ("bearer", "basic")
COMMIT_SCOPES = ("repository", "branch")

# Environment variable -> Config attribute
ENV_OVERRIDES = {
    "GITHUB_TOKEN": "token",
    "GITHUB_API_URL": "api_url",
    "GITHUB_OWNER": "owner",
}


@dataclass
class Config:
    """Top-level application configuration."""

    api_url: str = DEFAULT_API_URL
    token: str = ""
    auth_scheme: str = "bearer"
    owner: str = ""
    owner_type: str = "user"
    lookback_months: int = 3
    start: str = ""               # YYYY-MM-DD; overrides lookback_months
    commit_scope: str = "repository"
    max_workers: int = 4
    timeout: int = 30
    max_retries: int = 3
    per_page: int = 100
    max_pages: int = 10
    include: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)


def _expand_path(path: str) -> str:
    """Expand ~ and environment variables in a path."""
    return os.path.expanduser(os.path.expandvars(path))


def _choice(value, choices: tuple, default: str) -> str:
    if isinstance(value, str) and value.lower() in choices:
        return value.lower()
    return default


def _positive_int(value, default: int) -> int:
    # bool is an int subclass; "true" is not a count
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        return default
    return value


def _string(value, default: str) -> str:
    if isinstance(value, str):
        return value.strip()
    return default


def _patterns(value) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(p) for p in value if p]


def validate_start(value: str) -> str:
    """Return ``value`` if it is a YYYY-MM-DD date, else an empty string."""
    if not value:
        return ""
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        return ""
    return value


def config_from_dict(data: Mapping) -> Config:
    """Build a Config from a parsed YAML mapping.

    Unknown keys are ignored; invalid values fall back to the defaults.
    """
    defaults = Config()
    start = data.get("start", "")
    if not isinstance(start, str):
        # PyYAML parses bare 2024-01-01 into a date object
        start = str(start) if start else ""

    return Config(
        api_url=_string(data.get("api_url"), defaults.api_url) or defaults.api_url,
        token=_string(data.get("token"), ""),
        auth_scheme=_choice(data.get("auth_scheme"), AUTH_SCHEMES, defaults.auth_scheme),
        owner=_string(data.get("owner"), ""),
        owner_type=_choice(data.get("owner_type"), OWNER_TYPES, defaults.owner_type),
        lookback_months=_positive_int(data.get("lookback_months"), defaults.lookback_months),
        start=validate_start(start),
        commit_scope=_choice(data.get("commit_scope"), COMMIT_SCOPES, defaults.commit_scope),
        max_workers=_positive_int(data.get("max_workers"), defaults.max_workers),
        timeout=_positive_int(data.get("timeout"), defaults.timeout),
        max_retries=_positive_int(data.get("max_retries"), defaults.max_retries),
        per_page=_positive_int(data.get("per_page"), defaults.per_page),
        max_pages=_positive_int(data.get("max_pages"), defaults.max_pages),
        include=_patterns(data.get("include")),
        exclude=_patterns(data.get("exclude")),
    )


def apply_env(config: Config, environ: Optional[Mapping[str, str]] = None) -> Config:
    """Overlay GITHUB_TOKEN, GITHUB_API_URL and GITHUB_OWNER onto a Config.

    Empty variables are ignored.
    """
    env = os.environ if environ is None else environ
    overrides = {}
    for var, attr in ENV_OVERRIDES.items():
        value = env.get(var, "").strip()
        if value:
            overrides[attr] = value
    return replace(config, **overrides) if overrides else config


def load_config(config_path: Optional[str] = None) -> Config:
    """Load configuration from a YAML file.

    Args:
        config_path: Path to the YAML config file. Defaults to
            ~/.config/weekly-activity/config.yaml.

    Returns:
        A Config instance. If the config file does not exist or is not a
        mapping, returns a default Config (graceful degradation).
    """
    path = _expand_path(config_path) if config_path else DEFAULT_CONFIG_PATH

    if not os.path.isfile(path):
        return Config()

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        return Config()

    return config_from_dict(data)
