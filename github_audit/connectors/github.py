"""GitHub REST connector: commits, pull requests and issues for one repo."""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from typing import Optional

import requests

from github_audit.connectors.base import SourceConnector

logger = logging.getLogger("audit.github")

REQUEST_TIMEOUT_SECONDS = 15
MAX_RATE_LIMIT_RETRIES = 5


def _iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class GitHubConnector(SourceConnector):
    def __init__(
        self,
        repo_owner: str,
        repo_name: str,
        username: str = "",
        access_token: str = "",
        api_base_url: str = "https://api.github.com",
        session: Optional[requests.Session] = None,
    ) -> None:
        super().__init__(repo_owner, repo_name, username, access_token)
        self._base = api_base_url.rstrip("/")
        self._session = session or requests.Session()
        self._session.headers.update({
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        })
        if access_token:
            self._session.headers["Authorization"] = f"token {access_token}"

    @property
    def _repo_url(self) -> str:
        return f"{self._base}/repos/{self.repo_owner}/{self.repo_name}"

    def _get(self, url: str, params: Optional[dict] = None) -> requests.Response:
        """GET with rate-limit waits; raises for any other non-2xx status."""
        attempt = 0
        while True:
            resp = self._session.get(url, params=params, timeout=REQUEST_TIMEOUT_SECONDS)
            if resp.status_code == 403 and "rate limit" in resp.text.lower():
                attempt += 1
                if attempt > MAX_RATE_LIMIT_RETRIES:
                    raise RuntimeError("GitHub rate limit exceeded after retries")
                reset = int(resp.headers.get("X-RateLimit-Reset", "0"))
                if reset:
                    wait = max(reset - int(time.time()), 1)
                    logger.warning("GitHub rate limit hit, waiting %ds", wait)
                    time.sleep(min(wait, 300))
                else:
                    self._rate_limit_sleep(attempt)
                continue
            resp.raise_for_status()
            return resp

    def _get_paginated(self, url: str, params: Optional[dict] = None) -> list[dict]:
        """Fetch all pages from a GitHub REST API endpoint."""
        results: list[dict] = []
        params = dict(params or {})
        params.setdefault("per_page", "100")

        while url:
            resp = self._get(url, params=params)
            data = resp.json()
            if isinstance(data, list):
                results.extend(data)
            else:
                results.append(data)

            # Follow Link header for pagination; the next URL carries the query
            url = ""
            params = {}
            for part in resp.headers.get("Link", "").split(","):
                if 'rel="next"' in part:
                    url = part.split(";")[0].strip().strip("<>")
                    break
        return results

    def check_credentials(self) -> None:
        resp = self._get(f"{self._base}/user")
        logger.debug("Authenticated against GitHub as %s", resp.json().get("login"))

    def get_commits(self, since: datetime, until: datetime, branch: str) -> bytes:
        logger.debug(
            "Fetching commits for %s/%s branch %s from %s to %s",
            self.repo_owner, self.repo_name, branch, since, until,
        )
        commits = self._get_paginated(
            f"{self._repo_url}/commits",
            params={"sha": branch, "since": _iso(since), "until": _iso(until)},
        )
        return json.dumps(commits).encode("utf-8")

    def get_pull_requests(self, after_number: int) -> bytes:
        logger.debug(
            "Fetching pull requests for %s/%s after #%d",
            self.repo_owner, self.repo_name, after_number,
        )
        pulls = self._get_paginated(f"{self._repo_url}/pulls", params={"state": "all"})
        pulls = [pr for pr in pulls if int(pr.get("number") or 0) > after_number]
        return json.dumps(pulls).encode("utf-8")

    def get_issues(self, since: datetime) -> bytes:
        logger.debug(
            "Fetching issues for %s/%s since %s", self.repo_owner, self.repo_name, since
        )
        issues = self._get_paginated(
            f"{self._repo_url}/issues", params={"state": "all", "since": _iso(since)}
        )
        return json.dumps(issues).encode("utf-8")
