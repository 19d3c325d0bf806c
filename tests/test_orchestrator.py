"""End-to-end ingestion tests against the fake GitHub API and in-memory SQLite."""

from datetime import timedelta
from decimal import Decimal
from itertools import count

import pytest

from truststars.exceptions import NotFoundError, RateLimitedError
from truststars.models import ActivitySnapshot, OwnershipLink, Repository, UserProfile
from truststars.orchestrator import (
    CHECK_NOT_FOUND_MESSAGE,
    CHECK_RATE_LIMIT_MESSAGE,
    UNLINK_DENIED_MESSAGE,
    AccountContext,
    IngestionOrchestrator,
    IngestionStage,
)

from tests.fakes import CALLER_TOKEN, NOW, SERVICE_TOKEN, repo_payload

ADMIN = {"admin": True, "maintain": True, "push": True}


def _naive(value):
    return value.replace(tzinfo=None) if value is not None else None


def _ticking_clock():
    ticks = count()
    return lambda: NOW + timedelta(minutes=next(ticks))


@pytest.fixture
def make_orchestrator(test_settings, session_factory, github_api):
    def _make(**overrides) -> IngestionOrchestrator:
        config = test_settings.model_copy(update=overrides) if overrides else test_settings
        return IngestionOrchestrator(
            session_factory=session_factory,
            github_client_factory=github_api.client_factory(config),
            settings=config,
            clock=_ticking_clock(),
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator) -> IngestionOrchestrator:
    return make_orchestrator()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def account() -> AccountContext:
    return AccountContext(user_id="user-1", github_username="alice", display_name="Alice")


@pytest.mark.asyncio
async def test_ingest_persists_repository_link_and_snapshot(orchestrator, github_api, db, account, recent_commits) -> None:
    github_api.add_repo("octo/widgets", commits=recent_commits, prs_opened=1, prs_merged=2, permissions=ADMIN, stars=42)

    result = await orchestrator.ingest_repository("octo/widgets", caller_token=CALLER_TOKEN, account=account)

    # base = 2*10 + 3*0.5 + 2*5 + 1*1 = 32.5, last commit 10h old -> x1.2
    assert result.success
    assert result.activity_score == Decimal("39.00")
    assert result.is_verified
    assert result.stage == IngestionStage.DONE

    record = db.query(Repository).one()
    assert record.full_name == "octo/widgets"
    assert record.stars == 42
    assert record.contributors == 2
    assert record.recent_commits_count == 3
    assert record.recent_prs_merged_count == 2
    assert record.recent_prs_opened_count == 1
    assert record.activity_score == Decimal("39.00")
    assert _naive(record.last_commit_at) == _naive(NOW - timedelta(hours=10))
    assert _naive(record.verified_at) == _naive(NOW)

    link = db.query(OwnershipLink).one()
    assert (link.user_id, link.repo_id, link.role) == ("user-1", record.id, "owner")
    assert db.query(UserProfile).one().github_username == "alice"

    snapshot = db.query(ActivitySnapshot).one()
    assert snapshot.repo_id == record.id
    assert snapshot.stars == 42
    assert snapshot.contributors == 2
    assert snapshot.activity_score == Decimal("39.00")
    assert snapshot.recent_commits_count == 3


@pytest.mark.asyncio
async def test_ingest_is_idempotent_across_case_and_url_forms(orchestrator, github_api, db, account) -> None:
    github_api.add_repo("octo/widgets")

    first = await orchestrator.ingest_repository("Octo/Widgets", account=account)
    second = await orchestrator.ingest_repository("https://github.com/octo/widgets.git", account=account)

    assert first.repository_id == second.repository_id
    assert db.query(Repository).count() == 1
    assert db.query(OwnershipLink).count() == 1
    assert db.query(ActivitySnapshot).count() == 2


@pytest.mark.asyncio
async def test_fallback_credential_never_verifies(orchestrator, github_api, db, account) -> None:
    github_api.add_repo("octo/widgets", permissions=ADMIN)
    github_api.fail("/repos/octo/widgets", 401, token=CALLER_TOKEN)

    result = await orchestrator.ingest_repository("octo/widgets", caller_token=CALLER_TOKEN, account=account)

    assert result.success
    assert not result.is_verified
    record = db.query(Repository).one()
    assert record.verified_at is None
    assert db.query(OwnershipLink).one().role == "maintainer"
    assert github_api.tokens_for("/repos/octo/widgets") == [CALLER_TOKEN, SERVICE_TOKEN]


@pytest.mark.asyncio
async def test_maintain_permission_verifies_as_maintainer(orchestrator, github_api, db, account) -> None:
    github_api.add_repo("octo/widgets", permissions={"admin": False, "maintain": True, "push": True})

    result = await orchestrator.ingest_repository("octo/widgets", caller_token=CALLER_TOKEN, account=account)

    assert result.is_verified
    assert db.query(OwnershipLink).one().role == "maintainer"


@pytest.mark.asyncio
async def test_verification_is_never_cleared(orchestrator, github_api, db, account) -> None:
    github_api.add_repo("octo/widgets", permissions=ADMIN)
    await orchestrator.ingest_repository("octo/widgets", caller_token=CALLER_TOKEN, account=account)

    github_api.repos["octo/widgets"]["permissions"] = {"admin": False, "push": False}
    result = await orchestrator.ingest_repository("octo/widgets", caller_token=CALLER_TOKEN, account=account)

    assert not result.is_verified
    assert db.query(Repository).one().verified_at is not None


@pytest.mark.asyncio
async def test_not_found_writes_nothing_but_profile(orchestrator, db, account) -> None:
    result = await orchestrator.ingest_repository("octo/missing", caller_token=CALLER_TOKEN, account=account)

    assert not result.success
    assert result.failed_stage == IngestionStage.FETCH
    assert result.error == NotFoundError.default_user_message
    assert db.query(Repository).count() == 0
    assert db.query(ActivitySnapshot).count() == 0
    assert db.query(UserProfile).count() == 1


@pytest.mark.asyncio
async def test_rate_limit_surfaces_friendly_message(orchestrator, github_api) -> None:
    github_api.add_repo("octo/widgets")
    github_api.fail("/repos/octo/widgets", 403)

    result = await orchestrator.ingest_repository("octo/widgets", caller_token=CALLER_TOKEN)

    assert not result.success
    assert result.error == RateLimitedError.default_user_message
    assert result.to_dict() == {"success": False, "error": RateLimitedError.default_user_message}


@pytest.mark.asyncio
async def test_invalid_reference_is_rejected_before_fetching(orchestrator, github_api) -> None:
    result = await orchestrator.ingest_repository("not a repository")

    assert not result.success
    assert result.error == "Invalid GitHub URL format"
    assert github_api.requests == []


@pytest.mark.asyncio
async def test_failed_pr_searches_still_ingest(orchestrator, github_api, db, recent_commits) -> None:
    github_api.add_repo("octo/widgets", commits=recent_commits, prs_opened=7, prs_merged=7)
    github_api.fail("/search/issues", 503)

    result = await orchestrator.ingest_repository("octo/widgets")

    assert result.success
    record = db.query(Repository).one()
    assert record.recent_prs_opened_count == 0
    assert record.recent_prs_merged_count == 0
    assert record.recent_commits_count == 3


@pytest.mark.asyncio
async def test_custom_display_values_are_stored(orchestrator, github_api, db) -> None:
    github_api.add_repo("octo/widgets")

    await orchestrator.ingest_repository(
        "octo/widgets",
        custom_description="Hand-picked",
        custom_image_url="https://img.example/widgets.png",
    )

    record = db.query(Repository).one()
    assert record.description == "Hand-picked"
    assert record.image_url == "https://img.example/widgets.png"


async def _seed(orchestrator, github_api, names, account=None) -> None:
    for name in names:
        github_api.add_repo(name, permissions=ADMIN)
        result = await orchestrator.ingest_repository(name, caller_token=CALLER_TOKEN, account=account)
        assert result.success


@pytest.mark.asyncio
async def test_bulk_sync_counts_failures_without_stopping(orchestrator, github_api, db) -> None:
    names = [f"octo/r{index}" for index in range(1, 6)]
    await _seed(orchestrator, github_api, names)
    for name in names:
        github_api.repos[name]["stargazers_count"] = 100
    del github_api.repos["octo/r3"]
    seen = len(github_api.requests)

    result = await orchestrator.sync_all_repositories()

    assert result.to_dict() == {"total": 5, "success": 4, "failed": 1}
    assert [failure["repo"] for failure in result.failures] == ["octo/r3"]

    stars = {record.full_name: record.stars for record in db.query(Repository).all()}
    assert stars["octo/r3"] == 10
    assert all(stars[name] == 100 for name in names if name != "octo/r3")
    assert db.query(ActivitySnapshot).count() == 9

    sync_tokens = {github_api.token_of(request) for request in github_api.requests[seen:]}
    assert CALLER_TOKEN not in sync_tokens
    assert SERVICE_TOKEN in sync_tokens


@pytest.mark.asyncio
async def test_bulk_sync_preserves_display_overrides_and_activity(orchestrator, github_api, db, recent_commits) -> None:
    github_api.add_repo("octo/widgets", commits=recent_commits)
    await orchestrator.ingest_repository("octo/widgets", custom_description="Hand-picked")
    github_api.repos["octo/widgets"]["description"] = "changed upstream"
    github_api.commits["octo/widgets"] = []

    await orchestrator.sync_all_repositories()

    record = db.query(Repository).one()
    assert record.description == "Hand-picked"
    assert record.recent_commits_count == 3

    history = db.query(ActivitySnapshot).order_by(ActivitySnapshot.id).all()
    assert len(history) == 2
    assert history[1].recent_commits_count == 3
    assert history[1].activity_score == history[0].activity_score
    assert history[1].contributors == history[0].contributors


@pytest.mark.asyncio
async def test_bulk_sync_with_concurrency(make_orchestrator, github_api) -> None:
    orchestrator = make_orchestrator(SYNC_CONCURRENCY=3)
    names = [f"octo/r{index}" for index in range(1, 5)]
    await _seed(orchestrator, github_api, names)
    github_api.fail("/repos/octo/r2", 500)

    result = await orchestrator.sync_all_repositories()

    assert result.to_dict() == {"total": 4, "success": 3, "failed": 1}


@pytest.mark.asyncio
async def test_bulk_sync_with_no_repositories(orchestrator, github_api) -> None:
    result = await orchestrator.sync_all_repositories()

    assert result.to_dict() == {"total": 0, "success": 0, "failed": 0}
    assert github_api.requests == []


@pytest.mark.asyncio
async def test_unlink_removes_orphaned_repository(orchestrator, github_api, db, account) -> None:
    other = AccountContext(user_id="user-2", github_username="bob")
    github_api.add_repo("octo/widgets")
    first = await orchestrator.ingest_repository("octo/widgets", account=account)
    await orchestrator.ingest_repository("octo/widgets", account=other)

    kept = orchestrator.unlink_repository(user_id="user-1", repo_id=first.repository_id)
    assert kept.success
    assert not kept.repository_deleted
    assert db.query(Repository).count() == 1

    removed = orchestrator.unlink_repository(user_id="user-2", repo_id=first.repository_id)
    assert removed.success
    assert removed.repository_deleted
    assert db.query(Repository).count() == 0
    assert db.query(ActivitySnapshot).count() == 0
    assert db.query(OwnershipLink).count() == 0


def test_unlink_without_link_is_denied(orchestrator) -> None:
    result = orchestrator.unlink_repository(user_id="user-1", repo_id=999)

    assert not result.success
    assert result.error == UNLINK_DENIED_MESSAGE


@pytest.mark.asyncio
async def test_check_repository_does_not_persist(orchestrator, github_api, db) -> None:
    github_api.add_repo("octo/widgets", stars=7)

    result = await orchestrator.check_repository("github.com/octo/widgets")

    assert result.success
    assert result.metadata.details.stars == 7
    assert db.query(Repository).count() == 0


@pytest.mark.asyncio
async def test_check_repository_messages(orchestrator, github_api) -> None:
    github_api.add_repo("octo/limited")
    github_api.fail("/repos/octo/limited", 403)

    missing = await orchestrator.check_repository("octo/missing")
    limited = await orchestrator.check_repository("octo/limited")

    assert missing.error == CHECK_NOT_FOUND_MESSAGE
    assert limited.error == CHECK_RATE_LIMIT_MESSAGE


@pytest.mark.asyncio
async def test_manageable_repositories_filters_and_flags(orchestrator, github_api) -> None:
    github_api.add_repo("octo/tracked")
    await orchestrator.ingest_repository("octo/tracked")
    github_api.user_repos = [
        repo_payload("Octo/Tracked", permissions={"admin": True}),
        repo_payload("octo/maintained", permissions={"admin": False, "maintain": True}),
        repo_payload("octo/contributor", permissions={"admin": False, "maintain": False, "push": True}),
    ]

    result = await orchestrator.list_manageable_repositories(CALLER_TOKEN)

    assert result.success
    assert [(item.details.full_name, item.is_added) for item in result.repositories] == [
        ("Octo/Tracked", True),
        ("octo/maintained", False),
    ]
    assert set(github_api.tokens_for("/user/repos")) == {CALLER_TOKEN}


@pytest.mark.asyncio
async def test_manageable_repositories_errors(orchestrator, github_api) -> None:
    assert (await orchestrator.list_manageable_repositories(None)).error == "No provider token found"

    github_api.fail("/user/repos", 401)
    assert (await orchestrator.list_manageable_repositories(CALLER_TOKEN)).error == "Bad credentials"

    github_api.fail("/user/repos", 502)
    assert (
        await orchestrator.list_manageable_repositories(CALLER_TOKEN)
    ).error == "Failed to fetch repositories from GitHub"


@pytest.mark.asyncio
async def test_repository_history_is_oldest_first(orchestrator, github_api) -> None:
    github_api.add_repo("octo/widgets", stars=1)
    first = await orchestrator.ingest_repository("octo/widgets")
    github_api.repos["octo/widgets"]["stargazers_count"] = 5
    await orchestrator.ingest_repository("octo/widgets")

    history = orchestrator.repository_history(first.repository_id)

    assert [point.stars for point in history] == [1, 5]
    assert _naive(history[0].recorded_at) < _naive(history[1].recorded_at)
    assert orchestrator.repository_history(999) == []


def test_account_context_from_auth_metadata() -> None:
    context = AccountContext.from_auth_user(
        "user-9", {"user_name": "octocat", "avatar_url": "https://a.example/o.png", "full_name": "The Octocat"}
    )
    fallback = AccountContext.from_auth_user("user-10", {}, email="dev@example.com")

    assert (context.github_username, context.display_name) == ("octocat", "The Octocat")
    assert (fallback.github_username, fallback.display_name) == ("dev", "dev")
