"""Configuration management with environment overrides."""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
import logging

from .errors import ConfigError, InvalidRequest
from .types import (
    CommitSettings,
    ProfileSettings,
    PullRequestSettings,
    RepositorySettings,
    RunRequest,
    is_blank,
)

logger = logging.getLogger(__name__)

DEFAULT_OPERATION_TIMEOUT = 120.0
DEFAULT_PROFILE_TIMEOUT = 45.0
DEFAULT_GITHUB_TIMEOUT = 30.0

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {"ns": 1e-9, "us": 1e-6, "µs": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0}


def duration_seconds(value: Any, default: float) -> Any:
    """Convert a timeout to seconds.

    Accepts numbers (seconds) and duration strings such as "45s", "2m" or
    "1m30s". None and blank strings mean the default. Anything else is
    returned unchanged for field validation to reject.
    """
    if value is None:
        return default
    if not isinstance(value, str):
        return value

    text = value.strip()
    if not text:
        return default
    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position == 0 or position != len(text):
        raise ValueError(f"invalid duration {value!r}")
    return total


class ProfileConfig(BaseModel):
    """CPU profile collection from the target service."""
    url: str = Field(default="", description="pprof CPU profile endpoint")
    seconds: int = Field(default=0, description="Sample duration; <=0 means default")
    timeout: float = Field(default=DEFAULT_PROFILE_TIMEOUT, gt=0, description="HTTP timeout; seconds or a duration like \"45s\"")
    headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("timeout", mode="before")
    @classmethod
    def parse_timeout(cls, value: Any) -> Any:
        return duration_seconds(value, DEFAULT_PROFILE_TIMEOUT)


class RepositoryConfig(BaseModel):
    """Where profile updates are written."""
    owner: str = ""
    name: str = ""
    pgo_path: str = Field(default="", description="Artifact path inside the repository")
    base_branch: str = ""
    head_branch: str = ""


class GitHubConfig(BaseModel):
    """GitHub authentication and API settings."""
    token: Optional[str] = None
    app_id: int = Field(default=0)
    private_key_path: str = ""
    timeout: float = Field(default=DEFAULT_GITHUB_TIMEOUT, gt=0)
    api_url: str = Field(default="https://api.github.com")

    @field_validator("timeout", mode="before")
    @classmethod
    def parse_timeout(cls, value: Any) -> Any:
        return duration_seconds(value, DEFAULT_GITHUB_TIMEOUT)


class PullRequestConfig(BaseModel):
    title: str = ""
    body: str = ""
    managed_by_marker: str = ""


class CommitConfig(BaseModel):
    message: str = ""


class RuntimeConfig(BaseModel):
    timeout: float = Field(default=DEFAULT_OPERATION_TIMEOUT, gt=0, description="End-to-end run timeout in seconds")

    @field_validator("timeout", mode="before")
    @classmethod
    def parse_timeout(cls, value: Any) -> Any:
        return duration_seconds(value, DEFAULT_OPERATION_TIMEOUT)


class AppConfig(BaseModel):
    """Root cpgo configuration document."""
    profile: ProfileConfig = Field(default_factory=ProfileConfig)
    repository: RepositoryConfig = Field(default_factory=RepositoryConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    pull_request: PullRequestConfig = Field(default_factory=PullRequestConfig)
    commit: CommitConfig = Field(default_factory=CommitConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)


def _section(config_dict: dict, name: str) -> dict:
    # an empty YAML section decodes to None
    if not isinstance(config_dict.get(name), dict):
        config_dict[name] = {}
    return config_dict[name]


def load_config(config_path: Optional[str]) -> AppConfig:
    """Load configuration from a YAML file with environment overrides.

    Args:
        config_path: Path to the YAML config file

    Returns:
        Loaded configuration

    Raises:
        ConfigError: If the path is blank, unreadable or the document is invalid
    """
    if is_blank(config_path):
        raise ConfigError("config path is required")

    path = Path(config_path)
    try:
        with open(path, "r") as f:
            config_dict = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"decode config file {path}: {e}") from e

    if not isinstance(config_dict, dict):
        raise ConfigError(f"decode config file {path}: top level must be a mapping")

    # Apply environment overrides
    if github_token := os.getenv("GITHUB_TOKEN"):
        _section(config_dict, "github")["token"] = github_token
    if app_id := os.getenv("GITHUB_APP_ID"):
        _section(config_dict, "github")["app_id"] = app_id
    if key_path := os.getenv("GITHUB_PRIVATE_KEY_PATH"):
        _section(config_dict, "github")["private_key_path"] = key_path
    if profile_url := os.getenv("CPGO_PROFILE_URL"):
        _section(config_dict, "profile")["url"] = profile_url

    try:
        config = AppConfig(**config_dict)
    except (ValidationError, TypeError) as e:
        raise ConfigError(f"invalid config file {path}: {e}") from e

    logger.debug(f"Loaded config from {path}")
    return config


def build_run_request(config: AppConfig) -> RunRequest:
    """Map configuration onto a run request.

    Raises:
        InvalidRequest: If the profile URL is blank
    """
    profile_url = config.profile.url.strip()
    if not profile_url:
        raise InvalidRequest("profile url is required", field="profile.url")

    return RunRequest(
        profile=ProfileSettings(
            url=profile_url,
            seconds=config.profile.seconds,
            headers=dict(config.profile.headers),
        ),
        repository=RepositorySettings(
            owner=config.repository.owner.strip(),
            name=config.repository.name.strip(),
            artifact_path=config.repository.pgo_path.strip(),
            base_branch=config.repository.base_branch.strip(),
            head_branch=config.repository.head_branch.strip(),
        ),
        pull_request=PullRequestSettings(
            title=config.pull_request.title.strip(),
            body=config.pull_request.body.strip(),
            managed_by_marker=config.pull_request.managed_by_marker.strip(),
        ),
        commit=CommitSettings(message=config.commit.message.strip()),
    )


def read_app_key(config: AppConfig) -> bytes:
    """Load the GitHub App private key from disk."""
    key_path = config.github.private_key_path.strip()
    if not key_path:
        raise ConfigError("github private key path is required")

    try:
        private_key = Path(key_path).read_bytes()
    except OSError as e:
        raise ConfigError(f"read github private key: {e}") from e

    if not private_key:
        raise ConfigError("github private key is empty")
    return private_key
