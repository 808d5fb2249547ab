"""Abstract base class for source connectors."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime

logger = logging.getLogger("audit.connector")


class UnknownRepositoryType(ValueError):
    """Raised when no connector exists for a job's ``repo_type``."""


class SourceConnector(ABC):
    """Read-side of a code-hosting provider for one repository.

    Each fetch returns the provider's raw JSON array as bytes, in the order
    the provider returned it. Implementations raise on any failure.
    """

    def __init__(
        self,
        repo_owner: str,
        repo_name: str,
        username: str = "",
        access_token: str = "",
    ) -> None:
        self.repo_owner = repo_owner
        self.repo_name = repo_name
        self.username = username
        self.access_token = access_token

    @abstractmethod
    def check_credentials(self) -> None:
        """Raise if the configured credentials are rejected."""

    @abstractmethod
    def get_commits(self, since: datetime, until: datetime, branch: str) -> bytes:
        """Commits on ``branch`` between ``since`` and ``until``."""

    @abstractmethod
    def get_pull_requests(self, after_number: int) -> bytes:
        """Pull requests with a number greater than ``after_number``."""

    @abstractmethod
    def get_issues(self, since: datetime) -> bytes:
        """Issues updated at or after ``since``."""

    @staticmethod
    def _rate_limit_sleep(attempt: int, base_seconds: float = 1.0) -> None:
        """Exponential backoff sleep for rate limiting."""
        delay = min(base_seconds * (2 ** attempt), 60.0)
        logger.warning("Rate limited, sleeping %.1fs (attempt %d)", delay, attempt)
        time.sleep(delay)


def new_source_connector(
    host: str,
    repo_owner: str,
    repo_name: str,
    username: str = "",
    access_token: str = "",
    api_base_url: str | None = None,
) -> SourceConnector:
    """Return the connector for ``host`` (the job's ``repo_type``)."""
    if host.strip().lower() == "github":
        from github_audit.connectors.github import GitHubConnector

        kwargs = {"api_base_url": api_base_url} if api_base_url else {}
        return GitHubConnector(repo_owner, repo_name, username, access_token, **kwargs)
    raise UnknownRepositoryType(f"unsupported repository type: {host!r}")
