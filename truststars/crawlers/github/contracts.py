"""Typed contracts for GitHub client responses."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Generic, Optional, TypeVar


T = TypeVar("T")


class FetchState(str, Enum):
    """Normalized response state for downstream ingestion stages."""

    OK = "ok"
    EMPTY = "empty"
    FAILED = "failed"


@dataclass(slots=True)
class FetchResult(Generic[T]):
    """Container that separates payload from fetch semantics."""

    state: FetchState
    data: Optional[T] = None
    status_code: Optional[int] = None
    error: Optional[str] = None
    credential: Optional[str] = None
    retry_after: Optional[float] = None

    @property
    def is_ok(self) -> bool:
        return self.state == FetchState.OK

    @property
    def is_empty(self) -> bool:
        return self.state == FetchState.EMPTY

    @property
    def is_failed(self) -> bool:
        return self.state == FetchState.FAILED


def parse_github_datetime(raw: Any) -> datetime | None:
    if not isinstance(raw, str) or not raw.strip():
        return None

    text = raw.strip().replace("Z", "+00:00")
    try:
        value = datetime.fromisoformat(text)
    except ValueError:
        return None

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


@dataclass(slots=True)
class RepoPermissions:
    """Permission block; GitHub omits it entirely for anonymous requests."""

    admin: bool = False
    maintain: bool = False
    push: bool = False

    @property
    def controls_repository(self) -> bool:
        return self.admin or self.maintain

    @classmethod
    def from_payload(cls, payload: Any) -> RepoPermissions | None:
        if not isinstance(payload, dict):
            return None
        return cls(
            admin=bool(payload.get("admin")),
            maintain=bool(payload.get("maintain")),
            push=bool(payload.get("push")),
        )


@dataclass(slots=True)
class RepoOwner:
    login: str
    id: int | None = None
    avatar_url: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> RepoOwner:
        data = payload if isinstance(payload, dict) else {}
        owner_id = data.get("id")
        return cls(
            login=str(data.get("login") or ""),
            id=owner_id if isinstance(owner_id, int) else None,
            avatar_url=data.get("avatar_url"),
        )


@dataclass(slots=True)
class RepoDetails:
    """Subset of `GET /repos/{owner}/{repo}` used for ingestion."""

    full_name: str
    name: str
    owner: RepoOwner
    description: str | None = None
    language: str | None = None
    homepage: str | None = None
    license_name: str | None = None
    topics: list[str] = field(default_factory=list)
    stars: int = 0
    forks: int = 0
    open_issues_count: int = 0
    subscribers_count: int = 0
    network_count: int = 0
    permissions: RepoPermissions | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> RepoDetails:
        owner = RepoOwner.from_payload(payload.get("owner"))
        full_name = str(payload.get("full_name") or "").strip()
        name = str(payload.get("name") or "").strip()
        if not name and "/" in full_name:
            name = full_name.split("/", 1)[1]

        license_payload = payload.get("license")
        license_name = None
        if isinstance(license_payload, dict):
            license_name = license_payload.get("name") or license_payload.get("spdx_id")

        topics = payload.get("topics") if isinstance(payload.get("topics"), list) else []

        return cls(
            full_name=full_name,
            name=name,
            owner=owner,
            description=payload.get("description"),
            language=payload.get("language"),
            homepage=payload.get("homepage") or None,
            license_name=license_name,
            topics=[str(topic) for topic in topics if str(topic).strip()],
            stars=_as_int(payload.get("stargazers_count")),
            forks=_as_int(payload.get("forks_count")),
            open_issues_count=_as_int(payload.get("open_issues_count")),
            subscribers_count=_as_int(payload.get("subscribers_count")),
            network_count=_as_int(payload.get("network_count")),
            permissions=RepoPermissions.from_payload(payload.get("permissions")),
        )


@dataclass(slots=True)
class RepoMetadata:
    """Repository details plus the owner's display name."""

    details: RepoDetails
    owner_display_name: str
    authenticated_with_caller: bool = False


@dataclass(slots=True)
class CommitEntry:
    """One element of `GET /repos/{owner}/{repo}/commits`."""

    sha: str
    author_login: str | None = None
    author_email: str | None = None
    committed_at: datetime | None = None

    @property
    def identity(self) -> str | None:
        """Platform login when linked, raw author email otherwise."""
        return self.author_login or self.author_email or None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> CommitEntry:
        author = payload.get("author") if isinstance(payload.get("author"), dict) else {}
        commit = payload.get("commit") if isinstance(payload.get("commit"), dict) else {}
        commit_author = commit.get("author") if isinstance(commit.get("author"), dict) else {}
        committer = commit.get("committer") if isinstance(commit.get("committer"), dict) else {}

        return cls(
            sha=str(payload.get("sha") or ""),
            author_login=author.get("login") or None,
            author_email=commit_author.get("email") or None,
            committed_at=parse_github_datetime(committer.get("date")),
        )


@dataclass(slots=True)
class ActivityPayload:
    """Raw activity inputs; `None` counts mean the search call failed."""

    commits: list[CommitEntry] = field(default_factory=list)
    prs_opened: int | None = None
    prs_merged: int | None = None
    failures: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ManageableRepository:
    """Caller repository the caller administers or maintains."""

    details: RepoDetails
    is_added: bool = False

