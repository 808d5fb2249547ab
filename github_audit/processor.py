"""Turn raw provider payloads into typed output records.

Every record kind exposes its ordering key as ``marker`` so the pipeline
can advance checkpoints without inspecting documents.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence, Union

logger = logging.getLogger("audit.processor")


class ProcessingError(ValueError):
    """Raised when a provider payload cannot be transformed."""


def _parse_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _require_time(value: Any, what: str) -> datetime:
    parsed = _parse_time(value)
    if parsed is None:
        raise ProcessingError(f"missing {what}")
    return parsed


@dataclass(frozen=True)
class User:
    id: str
    user: str

    @classmethod
    def from_github(cls, raw: Optional[dict]) -> User:
        raw = raw or {}
        raw_id = raw.get("id")
        return cls(id="" if raw_id is None else str(raw_id), user=str(raw.get("login") or ""))


@dataclass(frozen=True)
class RepositoryRef:
    name: str
    url: str
    private: bool
    sha: str
    branch: str
    by_user: Optional[User] = None

    @classmethod
    def from_github(cls, raw: Optional[dict], with_user: bool) -> RepositoryRef:
        raw = raw or {}
        repo = raw.get("repo") or {}
        return cls(
            name=str(repo.get("full_name") or ""),
            url=str(repo.get("url") or ""),
            private=bool(repo.get("private", False)),
            sha=str(raw.get("sha") or ""),
            branch=str(raw.get("ref") or ""),
            by_user=User.from_github(raw.get("user")) if with_user else None,
        )


@dataclass(frozen=True)
class CommitRecord:
    repo_name: str
    repo_url: str
    commit_url: str
    created_at: datetime
    message: str
    committer: User
    sha: str
    document_type: str = "commit"
    repo_type: str = "github"

    @property
    def marker(self) -> datetime:
        return self.created_at


@dataclass(frozen=True)
class PullRequestRecord:
    repo_name: str
    repo_url: str
    pull_request_no: int
    state: str
    title: str
    url: str
    created_at: datetime
    updated_at: Optional[datetime]
    closed_at: Optional[datetime]
    merged_at: Optional[datetime]
    merge_commit_sha: str
    reviewers: list[User] = field(default_factory=list)
    request_from_repo: Optional[RepositoryRef] = None
    merge_to_repo: Optional[RepositoryRef] = None
    document_type: str = "pull_request"
    repo_type: str = "github"

    @property
    def marker(self) -> int:
        return self.pull_request_no


@dataclass(frozen=True)
class IssueRecord:
    repo_name: str
    repo_url: str
    issue_no: int
    state: str
    title: str
    url: str
    created_at: datetime
    updated_at: Optional[datetime]
    closed_at: Optional[datetime]
    created_by: User
    assignees: list[User] = field(default_factory=list)
    document_type: str = "issue"
    repo_type: str = "github"

    @property
    def marker(self) -> datetime:
        return self.created_at


Record = Union[CommitRecord, PullRequestRecord, IssueRecord]


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


class MetricFormatter:
    """Renames and adds document keys according to a JSON settings file.

    File format::

        {"changeDefaultKeys": {"old": "new"}, "addNewGlobalKeys": {"k": "v"}}
    """

    def __init__(
        self,
        change_default_keys: Optional[dict[str, str]] = None,
        add_new_global_keys: Optional[dict[str, str]] = None,
    ) -> None:
        self.change_default_keys = dict(change_default_keys or {})
        self.add_new_global_keys = dict(add_new_global_keys or {})

    @classmethod
    def from_file(cls, path: Optional[str]) -> MetricFormatter:
        if not path:
            return cls()
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
            return cls(
                change_default_keys=data.get("changeDefaultKeys"),
                add_new_global_keys=data.get("addNewGlobalKeys"),
            )
        except (OSError, ValueError, AttributeError) as exc:
            logger.error("Failed to read metric formatter file %s: %s", path, exc)
            return cls()

    def customize(self, doc: dict[str, Any]) -> dict[str, Any]:
        for old, new in self.change_default_keys.items():
            if old in doc:
                doc[new] = doc.pop(old)
        doc.update(self.add_new_global_keys)
        return doc


class GitHubProcessor:
    def __init__(
        self,
        repo_name: str,
        repo_url: str,
        formatter: Optional[MetricFormatter] = None,
    ) -> None:
        self.repo_name = repo_name
        self.repo_url = repo_url
        self.formatter = formatter or MetricFormatter()

    @staticmethod
    def _decode(data: bytes, kind: str) -> list[dict]:
        try:
            items = json.loads(data or b"[]")
        except ValueError as exc:
            logger.error("Failed to decode %s payload: %s", kind, exc)
            raise ProcessingError(f"invalid {kind} payload: {exc}") from exc
        if items is None:
            return []
        if not isinstance(items, list):
            raise ProcessingError(f"{kind} payload is not a JSON array")
        return items

    def process_commits(self, data: bytes) -> list[CommitRecord]:
        records = []
        for c in self._decode(data, "commit"):
            try:
                commit = c["commit"]
                records.append(CommitRecord(
                    repo_name=self.repo_name,
                    repo_url=self.repo_url,
                    commit_url=str(c.get("url") or ""),
                    created_at=_require_time(
                        (commit.get("committer") or {}).get("date"), "commit date"
                    ),
                    message=str(commit.get("message") or ""),
                    committer=User(
                        id=User.from_github(c.get("committer")).id,
                        user=str((commit.get("author") or {}).get("name") or ""),
                    ),
                    sha=str(c["sha"]),
                ))
            except (KeyError, TypeError, ValueError) as exc:
                raise ProcessingError(f"malformed commit: {exc}") from exc
        return records

    def process_pull_requests(self, data: bytes) -> list[PullRequestRecord]:
        records = []
        for p in self._decode(data, "pull request"):
            try:
                records.append(PullRequestRecord(
                    repo_name=self.repo_name,
                    repo_url=self.repo_url,
                    pull_request_no=int(p["number"]),
                    state=str(p.get("state") or ""),
                    title=str(p.get("title") or ""),
                    url=str(p.get("url") or ""),
                    created_at=_require_time(p.get("created_at"), "pull request created_at"),
                    updated_at=_parse_time(p.get("updated_at")),
                    closed_at=_parse_time(p.get("closed_at")),
                    merged_at=_parse_time(p.get("merged_at")),
                    merge_commit_sha=str(p.get("merge_commit_sha") or ""),
                    reviewers=[User.from_github(r) for r in p.get("requested_reviewers") or []],
                    request_from_repo=RepositoryRef.from_github(p.get("head"), with_user=True),
                    merge_to_repo=RepositoryRef.from_github(p.get("base"), with_user=False),
                ))
            except (KeyError, TypeError, ValueError) as exc:
                raise ProcessingError(f"malformed pull request: {exc}") from exc
        return records

    def process_issues(self, data: bytes) -> list[IssueRecord]:
        records = []
        for i in self._decode(data, "issue"):
            # GitHub lists pull requests as issues too
            if i.get("pull_request"):
                continue
            try:
                records.append(IssueRecord(
                    repo_name=self.repo_name,
                    repo_url=self.repo_url,
                    issue_no=int(i["number"]),
                    state=str(i.get("state") or ""),
                    title=str(i.get("title") or ""),
                    url=str(i.get("url") or ""),
                    created_at=_require_time(i.get("created_at"), "issue created_at"),
                    updated_at=_parse_time(i.get("updated_at")),
                    closed_at=_parse_time(i.get("closed_at")),
                    created_by=User.from_github(i.get("user")),
                    assignees=[User.from_github(a) for a in i.get("assignees") or []],
                ))
            except (KeyError, TypeError, ValueError) as exc:
                raise ProcessingError(f"malformed issue: {exc}") from exc
        return records

    def to_documents(
        self, records: Sequence[Record], tags: Optional[dict[str, str]] = None
    ) -> list[dict[str, Any]]:
        """Render records as output documents with formatting and tags applied."""
        docs = []
        for record in records:
            doc = self.formatter.customize(_jsonable(asdict(record)))
            doc.update(tags or {})
            docs.append(doc)
        return docs


def new_data_processor(
    host: str,
    repo_name: str,
    repo_url: str,
    formatter: Optional[MetricFormatter] = None,
) -> GitHubProcessor:
    if host.strip().lower() == "github":
        return GitHubProcessor(repo_name, repo_url, formatter)
    raise ProcessingError(f"no data processor for repository type {host!r}")
