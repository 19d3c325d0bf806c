from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import truststars.models  # noqa: F401  (registers mappers)
from truststars.config.database import Base
from truststars.config.settings import Settings

from tests.fakes import NOW, SERVICE_TOKEN, FakeGitHubAPI, commit_payload


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        GITHUB_ACCESS_TOKEN=SERVICE_TOKEN,
        CRON_SECRET=None,
        SYNC_CONCURRENCY=1,
    )


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def github_api() -> FakeGitHubAPI:
    return FakeGitHubAPI()


@pytest.fixture
def recent_commits() -> list[dict[str, Any]]:
    return [
        commit_payload(login="alice", committed_at=NOW - timedelta(hours=10)),
        commit_payload(login="alice", committed_at=NOW - timedelta(hours=30)),
        commit_payload(email="bot@example.com", committed_at=NOW - timedelta(days=3)),
    ]
