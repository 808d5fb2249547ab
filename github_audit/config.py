"""Configuration: a YAML file of audit jobs and targets plus env overrides.

Supports:
  - config.yaml (path from --config or GITHUB_AUDIT_CONFIG)
  - .env files / environment variables for tokens and runtime knobs
  - cloud secret references for access tokens (see secrets.py)
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_CHECKPOINT_FILE = "taskStats.json"
DEFAULT_BRANCH = "master"
DEFAULT_API_BASE_URL = "https://api.github.com"

_INTERVAL_RE = re.compile(r"^(\d+(?:\.\d+)?)([smhd])$")
_INTERVAL_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


class ConfigError(ValueError):
    """Raised when the configuration file is missing, unreadable or invalid."""


@dataclass(frozen=True)
class RepositoryCredentials:
    access_token: str
    username: str = ""
    email: str = ""


@dataclass(frozen=True)
class AuditJob:
    name: str
    polling_interval: str
    repo_type: str
    repo_name: str
    repo_owner: str
    repo_url: str
    credentials: RepositoryCredentials
    target_names: list[str]
    branches: list[str] = field(default_factory=lambda: [DEFAULT_BRANCH])
    tags: dict[str, str] = field(default_factory=dict)
    api_base_url: str = DEFAULT_API_BASE_URL


@dataclass(frozen=True)
class Target:
    name: str
    type: str
    config: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class AuditConfig:
    audit_jobs: list[AuditJob]
    targets: list[Target]
    loglevel: str = "info"
    logpath: Optional[str] = None
    checkpoint_file: str = DEFAULT_CHECKPOINT_FILE
    metric_formatter_file: Optional[str] = None


def parse_polling_interval(value: str) -> timedelta:
    """Convert ``10s``/``5m``/``2h``/``1d`` into a timedelta."""
    match = _INTERVAL_RE.match(str(value).strip().lower())
    if not match:
        raise ConfigError(f"polling interval format is incorrect: {value!r}")
    amount, unit = match.groups()
    return timedelta(**{_INTERVAL_UNITS[unit]: float(amount)})


def _yaml() -> YAML:
    yaml = YAML(typ="safe")
    yaml.allow_duplicate_keys = False
    return yaml


def _owner_from_url(repo_url: str) -> str:
    parts = [p for p in urlparse(repo_url).path.split("/") if p]
    return parts[0] if len(parts) >= 2 else ""


def _as_str_map(raw: Any) -> dict[str, str]:
    if not raw:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"expected a mapping, got {type(raw).__name__}")
    return {str(k): "" if v is None else str(v) for k, v in raw.items()}


def _parse_job(raw: dict[str, Any]) -> AuditJob:
    name = str(raw.get("name") or "")
    repo_config = raw.get("repo_config") or {}
    creds = repo_config.get("credentials") or {}
    output = raw.get("output") or {}

    # An env var named after the job overrides the token from the file
    token = os.environ.get(name, "") if name else ""
    token = token or str(creds.get("access_token") or "")

    repo_url = str(repo_config.get("repo_url") or "")
    branches = [str(b) for b in (repo_config.get("branches") or []) if b]

    return AuditJob(
        name=name,
        polling_interval=str(raw.get("polling_interval") or ""),
        repo_type=str(raw.get("repo_type") or ""),
        repo_name=str(raw.get("repo_name") or ""),
        repo_owner=str(raw.get("repo_owner") or _owner_from_url(repo_url)),
        repo_url=repo_url,
        credentials=RepositoryCredentials(
            access_token=token,
            username=str(creds.get("username") or ""),
            email=str(creds.get("email") or ""),
        ),
        target_names=[str(t) for t in (output.get("target_name") or []) if t],
        branches=branches or [DEFAULT_BRANCH],
        tags=_as_str_map(raw.get("tags")),
        api_base_url=str(repo_config.get("api_base_url") or DEFAULT_API_BASE_URL),
    )


def _parse_target(raw: dict[str, Any]) -> Target:
    return Target(
        name=str(raw.get("name") or ""),
        type=str(raw.get("type") or ""),
        config=_as_str_map(raw.get("config")),
    )


def validate_config(config: AuditConfig) -> None:
    """Check mandatory fields; raise ConfigError on the first problem."""
    if not config.audit_jobs:
        raise ConfigError("no audit job defined")
    if not config.targets:
        raise ConfigError("no target defined")

    for job in config.audit_jobs:
        if not job.name:
            raise ConfigError("missing audit job name")
        label = f"audit job {job.name!r}"
        if not job.credentials.access_token:
            raise ConfigError(f"{label}: missing access token")
        if not job.credentials.username and not job.credentials.email:
            raise ConfigError(f"{label}: missing username or email")
        if not job.repo_name:
            raise ConfigError(f"{label}: missing repository name")
        if not job.repo_url:
            raise ConfigError(f"{label}: missing repository URL")
        if not job.repo_type:
            raise ConfigError(f"{label}: missing repository type")
        if not job.repo_owner:
            raise ConfigError(f"{label}: cannot determine repository owner")
        if not job.target_names:
            raise ConfigError(f"{label}: missing target name in audit job")
        if not job.polling_interval:
            raise ConfigError(f"{label}: missing polling interval")
        parse_polling_interval(job.polling_interval)

    for target in config.targets:
        if not target.name:
            raise ConfigError("missing target name")
        if not target.type:
            raise ConfigError(f"target {target.name!r}: missing target type")


def parse_config(data: dict[str, Any]) -> AuditConfig:
    """Build and validate an AuditConfig from already-parsed YAML data."""
    if not isinstance(data, dict):
        raise ConfigError("config file must contain a mapping")

    config = AuditConfig(
        audit_jobs=[_parse_job(j or {}) for j in data.get("auditJobs") or []],
        targets=[_parse_target(t or {}) for t in data.get("targets") or []],
        loglevel=os.environ.get("GITHUB_AUDIT_LOG_LEVEL")
        or str(data.get("loglevel") or "info"),
        logpath=data.get("logpath") or None,
        checkpoint_file=os.environ.get("GITHUB_AUDIT_CHECKPOINT_FILE")
        or str(data.get("checkpoint_file") or DEFAULT_CHECKPOINT_FILE),
        metric_formatter_file=data.get("metric_formatter_file") or None,
    )
    validate_config(config)
    return config


def load_config(path: Optional[str] = None) -> AuditConfig:
    """Load configuration from a YAML file and the environment.

    ``.env`` is read first so that job tokens and overrides may live there.
    """
    load_dotenv()

    config_path = Path(path or os.environ.get("GITHUB_AUDIT_CONFIG", DEFAULT_CONFIG_PATH))
    try:
        data = _yaml().load(config_path.read_text(encoding="utf-8"))
    except (OSError, YAMLError) as exc:
        raise ConfigError(f"failed to read config file {config_path}: {exc}") from exc
    if data is None:
        raise ConfigError(f"config file {config_path} is empty")
    return parse_config(data)
