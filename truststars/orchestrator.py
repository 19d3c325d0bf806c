"""Repository ingestion orchestrator: single-repository adds and bulk sync."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
import logging
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from truststars.config.database import SessionLocal
from truststars.config.settings import Settings, settings as default_settings
from truststars.crawlers.github.client import GitHubClient, sanitize_for_log, sanitize_log_extra
from truststars.crawlers.github.contracts import ManageableRepository, RepoDetails, RepoMetadata
from truststars.crawlers.github.credentials import CredentialPlan
from truststars.exceptions import (
    NotFoundError,
    PersistenceError,
    RateLimitedError,
    TrustStarsError,
    ValidationError,
)
from truststars.services.aggregator import ActivitySignals, SignalAggregator
from truststars.services.repository_store import (
    RepositoryStore,
    SQLAlchemyRepositoryStore,
    repository_payload,
    snapshot_payload,
)
from truststars.services.scorer import ActivityScorer, ScoreWeights
from truststars.utils.repo_names import parse_repository_name

ROLE_OWNER = "owner"
ROLE_MAINTAINER = "maintainer"

CHECK_RATE_LIMIT_MESSAGE = (
    "GitHub Rate limit reached. The app needs a 'Classic PAT' in .env to fetch public data more reliably."
)
CHECK_NOT_FOUND_MESSAGE = "Repository not found or private."
UNLINK_DENIED_MESSAGE = "Repository not found or access denied"
UNLINK_FAILED_MESSAGE = "Failed to remove repository from your account"


class IngestionStage(str, Enum):
    RESOLVE_CREDENTIAL = "resolve_credential"
    FETCH = "fetch"
    AGGREGATE = "aggregate"
    SCORE = "score"
    UPSERT = "upsert"
    APPEND_HISTORY = "append_history"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class AccountContext:
    """Already-authenticated account acting on a repository."""

    user_id: str
    github_username: Optional[str] = None
    avatar_url: Optional[str] = None
    display_name: Optional[str] = None

    @classmethod
    def from_auth_user(cls, user_id: str, metadata: dict[str, Any] | None = None, email: str | None = None) -> AccountContext:
        """Build from the auth provider's user metadata, falling back to the email local part."""
        metadata = metadata or {}
        email_name = email.split("@")[0] if email else None
        return cls(
            user_id=user_id,
            github_username=metadata.get("user_name") or email_name,
            avatar_url=metadata.get("avatar_url"),
            display_name=metadata.get("full_name") or metadata.get("name") or email_name,
        )


@dataclass(slots=True)
class IngestResult:
    success: bool
    full_name: Optional[str] = None
    repository_id: Optional[int] = None
    activity_score: Optional[Decimal] = None
    is_verified: bool = False
    stage: IngestionStage = IngestionStage.DONE
    failed_stage: Optional[IngestionStage] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        if not self.success:
            return {"success": False, "error": self.error}
        return {
            "success": True,
            "full_name": self.full_name,
            "repository_id": self.repository_id,
            "activity_score": str(self.activity_score) if self.activity_score is not None else None,
            "is_verified": self.is_verified,
        }


@dataclass(slots=True)
class SyncResult:
    total: int = 0
    success: int = 0
    failed: int = 0
    failures: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"total": self.total, "success": self.success, "failed": self.failed}


@dataclass(slots=True)
class UnlinkResult:
    success: bool
    repository_deleted: bool = False
    error: Optional[str] = None


@dataclass(slots=True)
class CheckResult:
    success: bool
    metadata: Optional[RepoMetadata] = None
    error: Optional[str] = None


@dataclass(slots=True)
class ManageableResult:
    success: bool
    repositories: list[ManageableRepository] = field(default_factory=list)
    error: Optional[str] = None


@dataclass(frozen=True, slots=True)
class HistoryPoint:
    recorded_at: datetime
    stars: Optional[int]
    forks: Optional[int]
    contributors: Optional[int]
    activity_score: Optional[Decimal]
    recent_commits_count: Optional[int]


class IngestionOrchestrator:
    """Runs fetch -> aggregate -> score -> upsert -> append history per repository."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Any] = SessionLocal,
        github_client_factory: Callable[[], Any] = GitHubClient,
        store_factory: Callable[[Any], RepositoryStore] = SQLAlchemyRepositoryStore,
        aggregator: SignalAggregator | None = None,
        scorer: ActivityScorer | None = None,
        settings: Settings | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._session_factory = session_factory
        self._github_client_factory = github_client_factory
        self._store_factory = store_factory
        self._aggregator = aggregator or SignalAggregator()
        self._scorer = scorer or ActivityScorer(ScoreWeights.from_settings(self._settings))
        self._logger = logger or logging.getLogger(__name__)
        self._clock = clock or (lambda: datetime.now(UTC))

    async def ingest_repository(
        self,
        repository: str,
        *,
        caller_token: Optional[str] = None,
        account: AccountContext | None = None,
        custom_description: Optional[str] = None,
        custom_image_url: Optional[str] = None,
    ) -> IngestResult:
        """
        Add or refresh one repository on behalf of an optional account

        Every fatal error is returned as a failed IngestResult carrying a short
        user-facing message; nothing is written for a failed fetch.

        Args:
            repository: "owner/name" or a GitHub URL
            caller_token: The caller's own GitHub token, tried first
            account: Acting account; its profile is upserted before any fetch
            custom_description: Overrides the GitHub description when set
            custom_image_url: Overrides the owner avatar when set

        Returns:
            IngestResult
        """
        stage = IngestionStage.RESOLVE_CREDENTIAL
        try:
            full_name = parse_repository_name(repository)
        except ValidationError as exc:
            return IngestResult(success=False, stage=IngestionStage.FAILED, failed_stage=stage, error=exc.user_message)

        db = self._session_factory()
        store = self._store_factory(db)
        try:
            if account is not None:
                store.upsert_user_profile(
                    user_id=account.user_id,
                    github_username=account.github_username,
                    avatar_url=account.avatar_url,
                    display_name=account.display_name,
                )
                db.commit()

            now = self._clock()
            async with self._github_client_factory() as client:
                plan = client.plan_for(caller_token)

                stage = IngestionStage.FETCH
                metadata = await client.fetch_repository(full_name, plan=plan)
                canonical_name = metadata.details.full_name or full_name
                activity = await client.fetch_activity(
                    canonical_name,
                    since=now - timedelta(days=self._settings.ACTIVITY_WINDOW_DAYS),
                    plan=plan,
                )

            stage = IngestionStage.AGGREGATE
            signals = self._aggregator.aggregate_payload(activity)

            stage = IngestionStage.SCORE
            score = self._scorer.compute_score(signals, now)

            is_verified = self._is_verified(metadata)
            role = self._classify_role(metadata.details, is_verified)

            stage = IngestionStage.UPSERT
            payload = repository_payload(
                details=metadata.details,
                owner_display_name=metadata.owner_display_name,
                synced_at=now,
                description=custom_description,
                image_url=custom_image_url,
            )
            payload.update(self._activity_columns(signals, score))
            if is_verified:
                payload["verified_at"] = now
            record = store.upsert_repository(full_name=canonical_name, payload=payload)

            if account is not None:
                store.link(user_id=account.user_id, repo_id=record.id, role=role)

            stage = IngestionStage.APPEND_HISTORY
            store.append_snapshot(
                repo_id=record.id,
                payload=snapshot_payload(
                    stars=metadata.details.stars,
                    forks=metadata.details.forks,
                    contributors=signals.active_contributors_count,
                    activity_score=score,
                    recent_commits_count=signals.recent_commits_count,
                    recorded_at=now,
                ),
            )
            db.commit()

            self._logger.info(
                "Repository ingested",
                extra=sanitize_log_extra(
                    repo=canonical_name,
                    repository_id=record.id,
                    activity_score=str(score),
                    verified=is_verified,
                ),
            )
            return IngestResult(
                success=True,
                full_name=canonical_name,
                repository_id=record.id,
                activity_score=score,
                is_verified=is_verified,
                stage=IngestionStage.DONE,
            )
        except TrustStarsError as exc:
            db.rollback()
            return self._failed_ingest(full_name, stage, exc)
        except SQLAlchemyError as exc:
            db.rollback()
            return self._failed_ingest(full_name, stage, PersistenceError(f"{exc.__class__.__name__}: {exc}"))
        finally:
            db.close()

    async def sync_all_repositories(self) -> SyncResult:
        """
        Refresh popularity counters of every tracked repository

        Uses the service credential only. A failing repository is counted and
        logged without stopping the batch.
        """
        db = self._session_factory()
        try:
            targets = [(record.id, record.full_name) for record in self._store_factory(db).list_repositories()]
        finally:
            db.close()

        result = SyncResult(total=len(targets))
        self._logger.info("Bulk sync started", extra=sanitize_log_extra(total=result.total))
        if not targets:
            return result

        concurrency = max(int(self._settings.SYNC_CONCURRENCY or 1), 1)
        semaphore = asyncio.Semaphore(concurrency)

        async with self._github_client_factory() as client:
            plan = CredentialPlan.service_only(client.service_token)

            async def _sync(repo_id: int, full_name: str) -> None:
                async with semaphore:
                    try:
                        await self._sync_one(client, plan, repo_id=repo_id, full_name=full_name)
                        result.success += 1
                    except Exception as exc:
                        result.failed += 1
                        error = sanitize_for_log(str(exc), key="error")
                        result.failures.append({"repo": full_name, "error": error})
                        self._logger.warning(
                            "Bulk sync failed for repository",
                            extra=sanitize_log_extra(repo=full_name, error=error),
                        )

            if concurrency == 1:
                for repo_id, full_name in targets:
                    await _sync(repo_id, full_name)
            else:
                await asyncio.gather(*(_sync(repo_id, full_name) for repo_id, full_name in targets))

        self._logger.info(
            "Bulk sync completed",
            extra=sanitize_log_extra(total=result.total, succeeded=result.success, failed=result.failed),
        )
        return result

    async def _sync_one(self, client: Any, plan: CredentialPlan, *, repo_id: int, full_name: str) -> None:
        metadata = await client.fetch_repository(full_name, plan=plan)
        now = self._clock()

        db = self._session_factory()
        store = self._store_factory(db)
        try:
            record = store.get(repo_id)
            if record is None:
                raise NotFoundError(f"repository {full_name} was removed during sync")

            payload = repository_payload(
                details=metadata.details,
                owner_display_name=metadata.owner_display_name,
                synced_at=now,
                include_display=False,
            )
            record = store.upsert_repository(full_name=record.full_name, payload=payload)
            store.append_snapshot(
                repo_id=record.id,
                payload=snapshot_payload(
                    stars=metadata.details.stars,
                    forks=metadata.details.forks,
                    contributors=record.contributors,
                    activity_score=record.activity_score,
                    recent_commits_count=record.recent_commits_count,
                    recorded_at=now,
                ),
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def unlink_repository(self, *, user_id: str, repo_id: int) -> UnlinkResult:
        """
        Remove an account's link and garbage-collect the repository when orphaned

        The remaining-link count is read only after the unlink commits.
        """
        db = self._session_factory()
        store = self._store_factory(db)
        try:
            if store.get_link(user_id=user_id, repo_id=repo_id) is None:
                return UnlinkResult(success=False, error=UNLINK_DENIED_MESSAGE)

            try:
                store.remove_link(user_id=user_id, repo_id=repo_id)
                db.commit()
            except (PersistenceError, SQLAlchemyError) as exc:
                db.rollback()
                self._logger.warning(
                    "Unlink failed",
                    extra=sanitize_log_extra(user_id=user_id, repository_id=repo_id, error=str(exc)),
                )
                return UnlinkResult(success=False, error=UNLINK_FAILED_MESSAGE)

            deleted = False
            if store.count_links(repo_id) == 0:
                deleted = store.delete_repository(repo_id)
                db.commit()
                self._logger.info(
                    "Orphaned repository removed",
                    extra=sanitize_log_extra(repository_id=repo_id),
                )
            return UnlinkResult(success=True, repository_deleted=deleted)
        except SQLAlchemyError as exc:
            db.rollback()
            self._logger.warning(
                "Orphan cleanup failed",
                extra=sanitize_log_extra(repository_id=repo_id, error=str(exc)),
            )
            return UnlinkResult(success=True, repository_deleted=False)
        finally:
            db.close()

    async def check_repository(self, repository: str, *, caller_token: Optional[str] = None) -> CheckResult:
        """Resolve a repository without persisting anything."""
        try:
            full_name = parse_repository_name(repository)
        except ValidationError as exc:
            return CheckResult(success=False, error=exc.user_message)

        async with self._github_client_factory() as client:
            try:
                metadata = await client.fetch_repository(full_name, plan=client.plan_for(caller_token))
            except RateLimitedError:
                return CheckResult(success=False, error=CHECK_RATE_LIMIT_MESSAGE)
            except TrustStarsError:
                return CheckResult(success=False, error=CHECK_NOT_FOUND_MESSAGE)
        return CheckResult(success=True, metadata=metadata)

    async def list_manageable_repositories(self, caller_token: Optional[str]) -> ManageableResult:
        """List the caller's repositories they administer or maintain, flagged when already tracked."""
        if not caller_token:
            return ManageableResult(success=False, error="No provider token found")

        async with self._github_client_factory() as client:
            response = await client.list_user_repos(plan=CredentialPlan.caller_only(caller_token))

        if response.is_failed:
            if response.status_code == 401:
                return ManageableResult(success=False, error="Bad credentials")
            return ManageableResult(success=False, error="Failed to fetch repositories from GitHub")

        candidates = [
            RepoDetails.from_payload(payload)
            for payload in (response.data or [])
            if isinstance(payload, dict)
        ]
        manageable = [details for details in candidates if details.permissions and details.permissions.controls_repository]

        db = self._session_factory()
        try:
            tracked = self._store_factory(db).tracked_keys(details.full_name for details in manageable)
        finally:
            db.close()

        return ManageableResult(
            success=True,
            repositories=[
                ManageableRepository(details=details, is_added=details.full_name.lower() in tracked)
                for details in manageable
            ],
        )

    def repository_history(self, repo_id: int) -> list[HistoryPoint]:
        """Chart series for one repository, oldest first."""
        db = self._session_factory()
        try:
            return [
                HistoryPoint(
                    recorded_at=row.recorded_at,
                    stars=row.stars,
                    forks=row.forks,
                    contributors=row.contributors,
                    activity_score=row.activity_score,
                    recent_commits_count=row.recent_commits_count,
                )
                for row in self._store_factory(db).list_history(repo_id)
            ]
        finally:
            db.close()

    @staticmethod
    def _is_verified(metadata: RepoMetadata) -> bool:
        # Permissions only describe the caller when the caller's own token answered.
        permissions = metadata.details.permissions
        return bool(metadata.authenticated_with_caller and permissions and permissions.controls_repository)

    @staticmethod
    def _classify_role(details: RepoDetails, is_verified: bool) -> str:
        if is_verified and details.permissions and details.permissions.admin:
            return ROLE_OWNER
        return ROLE_MAINTAINER

    @staticmethod
    def _activity_columns(signals: ActivitySignals, score: Decimal) -> dict[str, Any]:
        return {
            "contributors": signals.active_contributors_count,
            "activity_score": score,
            "recent_commits_count": signals.recent_commits_count,
            "recent_prs_opened_count": signals.recent_prs_opened,
            "recent_prs_merged_count": signals.recent_prs_merged,
            "recent_contributors_count": signals.active_contributors_count,
            "last_commit_at": signals.last_commit_at,
        }

    def _failed_ingest(self, full_name: str, stage: IngestionStage, exc: TrustStarsError) -> IngestResult:
        self._logger.warning(
            "Repository ingestion failed",
            extra=sanitize_log_extra(
                repo=full_name,
                stage=stage.value,
                error_type=exc.__class__.__name__,
                status_code=exc.status_code,
                error=str(exc),
            ),
        )
        return IngestResult(
            success=False,
            full_name=full_name,
            stage=IngestionStage.FAILED,
            failed_stage=stage,
            error=exc.user_message,
        )
