"""Persistence gateway for tracked repositories and their history."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
import logging
from typing import Any, Iterable, Protocol

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from truststars.exceptions import PersistenceError
from truststars.models import ActivitySnapshot, OwnershipLink, Repository, UserProfile
from truststars.utils.repo_names import natural_key

logger = logging.getLogger(__name__)


class RepositoryStore(Protocol):
    """Storage interface the ingestion pipeline depends on."""

    def get(self, repo_id: int) -> Repository | None: ...

    def get_by_full_name(self, full_name: str) -> Repository | None: ...

    def list_repositories(self) -> list[Repository]: ...

    def tracked_keys(self, full_names: Iterable[str]) -> set[str]: ...

    def upsert_repository(self, *, full_name: str, payload: dict[str, Any]) -> Repository: ...

    def append_snapshot(self, *, repo_id: int, payload: dict[str, Any]) -> ActivitySnapshot: ...

    def list_history(self, repo_id: int) -> list[ActivitySnapshot]: ...

    def upsert_user_profile(
        self,
        *,
        user_id: str,
        github_username: str | None,
        avatar_url: str | None,
        display_name: str | None,
    ) -> UserProfile: ...

    def get_link(self, *, user_id: str, repo_id: int) -> OwnershipLink | None: ...

    def link(self, *, user_id: str, repo_id: int, role: str) -> OwnershipLink: ...

    def remove_link(self, *, user_id: str, repo_id: int) -> bool: ...

    def count_links(self, repo_id: int) -> int: ...

    def delete_repository(self, repo_id: int) -> bool: ...


class SQLAlchemyRepositoryStore:
    """SQLAlchemy-backed store keyed by the case-insensitive natural key."""

    def __init__(self, session: Session) -> None:
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    def get(self, repo_id: int) -> Repository | None:
        return self._session.get(Repository, repo_id)

    def get_by_full_name(self, full_name: str) -> Repository | None:
        return (
            self._session.query(Repository)
            .filter(Repository.full_name_key == natural_key(full_name))
            .one_or_none()
        )

    def list_repositories(self) -> list[Repository]:
        return list(self._session.query(Repository).order_by(Repository.id).all())

    def tracked_keys(self, full_names: Iterable[str]) -> set[str]:
        keys = {natural_key(name) for name in full_names if name}
        if not keys:
            return set()
        rows = self._session.query(Repository.full_name_key).filter(Repository.full_name_key.in_(keys)).all()
        return {row[0] for row in rows}

    def upsert_repository(self, *, full_name: str, payload: dict[str, Any]) -> Repository:
        """Insert or update by natural key; the caller commits."""
        existing = self.get_by_full_name(full_name)
        try:
            if existing is None:
                existing = Repository(full_name=full_name, full_name_key=natural_key(full_name), **payload)
                self._session.add(existing)
            else:
                existing.full_name = full_name
                for key, value in payload.items():
                    setattr(existing, key, value)
            self._session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"upsert failed for {full_name}: {exc.__class__.__name__}") from exc
        return existing

    def append_snapshot(self, *, repo_id: int, payload: dict[str, Any]) -> ActivitySnapshot:
        snapshot = ActivitySnapshot(repo_id=repo_id, **payload)
        try:
            self._session.add(snapshot)
            self._session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"history append failed for repo {repo_id}: {exc.__class__.__name__}") from exc
        return snapshot

    def list_history(self, repo_id: int) -> list[ActivitySnapshot]:
        return list(
            self._session.query(ActivitySnapshot)
            .filter(ActivitySnapshot.repo_id == repo_id)
            .order_by(ActivitySnapshot.recorded_at.asc(), ActivitySnapshot.id.asc())
            .all()
        )

    def upsert_user_profile(
        self,
        *,
        user_id: str,
        github_username: str | None,
        avatar_url: str | None,
        display_name: str | None,
    ) -> UserProfile:
        profile = self._session.get(UserProfile, user_id)
        try:
            if profile is None:
                profile = UserProfile(id=user_id)
                self._session.add(profile)
            profile.github_username = github_username
            profile.avatar_url = avatar_url
            profile.display_name = display_name
            profile.updated_at = datetime.now(UTC)
            self._session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"profile upsert failed for {user_id}: {exc.__class__.__name__}") from exc
        return profile

    def get_link(self, *, user_id: str, repo_id: int) -> OwnershipLink | None:
        return (
            self._session.query(OwnershipLink)
            .filter(OwnershipLink.user_id == user_id, OwnershipLink.repo_id == repo_id)
            .one_or_none()
        )

    def link(self, *, user_id: str, repo_id: int, role: str) -> OwnershipLink:
        existing = self.get_link(user_id=user_id, repo_id=repo_id)
        try:
            if existing is None:
                existing = OwnershipLink(user_id=user_id, repo_id=repo_id, role=role)
                self._session.add(existing)
            else:
                existing.role = role
            self._session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"link failed for {user_id}->{repo_id}: {exc.__class__.__name__}") from exc
        return existing

    def remove_link(self, *, user_id: str, repo_id: int) -> bool:
        link = self.get_link(user_id=user_id, repo_id=repo_id)
        if link is None:
            return False
        try:
            self._session.delete(link)
            self._session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"unlink failed for {user_id}->{repo_id}: {exc.__class__.__name__}") from exc
        return True

    def count_links(self, repo_id: int) -> int:
        return int(
            self._session.query(func.count(OwnershipLink.id))
            .filter(OwnershipLink.repo_id == repo_id)
            .scalar()
            or 0
        )

    def delete_repository(self, repo_id: int) -> bool:
        repository = self.get(repo_id)
        if repository is None:
            return False
        self._session.delete(repository)
        self._session.flush()
        return True


def repository_payload(
    *,
    details: Any,
    owner_display_name: str,
    synced_at: datetime,
    description: str | None = None,
    image_url: str | None = None,
    include_display: bool = True,
) -> dict[str, Any]:
    """
    Column values written from a repository details payload

    Bulk sync passes include_display=False so user-supplied description and
    image overrides survive a refresh.
    """
    payload: dict[str, Any] = {
        "topics": list(details.topics),
        "license_name": details.license_name,
        "homepage": details.homepage,
        "stars": details.stars,
        "forks": details.forks,
        "open_issues_count": details.open_issues_count,
        "subscribers_count": details.subscribers_count,
        "network_count": details.network_count,
        "owner_avatar_url": details.owner.avatar_url,
        "owner_display_name": owner_display_name,
        "owner_id_github": details.owner.id,
        "last_synced_at": synced_at,
        "updated_at": synced_at,
    }
    if include_display:
        payload.update(
            {
                "owner": details.owner.login,
                "name": details.name,
                "description": description if description else details.description,
                "image_url": image_url if image_url else details.owner.avatar_url,
                "language": details.language,
            }
        )
    return payload


def snapshot_payload(
    *,
    stars: int | None,
    forks: int | None,
    contributors: int | None,
    activity_score: Decimal | None,
    recent_commits_count: int | None,
    recorded_at: datetime,
) -> dict[str, Any]:
    return {
        "stars": stars,
        "forks": forks,
        "contributors": contributors,
        "activity_score": activity_score,
        "recent_commits_count": recent_commits_count,
        "recorded_at": recorded_at,
    }
