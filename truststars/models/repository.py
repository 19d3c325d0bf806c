"""Tracked repository model"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from truststars.config.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Repository(Base):
    """
    Tracked GitHub repository with its latest activity block

    `full_name_key` is the lower-cased natural key; upserts go through it so
    "Owner/Repo" and "owner/repo" resolve to the same row.
    """
    __tablename__ = "repositories"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    # Natural key
    full_name = Column(String(500), nullable=False)  # e.g., "vercel/next.js"
    full_name_key = Column(String(500), nullable=False, index=True)
    owner = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)

    # Display metadata
    description = Column(Text)
    image_url = Column(String(1000))
    language = Column(String(100))
    topics = Column(JSON, nullable=False, default=list)
    license_name = Column(String(255))
    homepage = Column(String(1000))

    # Popularity counters
    stars = Column(Integer, default=0)
    forks = Column(Integer, default=0)
    open_issues_count = Column(Integer, default=0)
    subscribers_count = Column(Integer, default=0)
    network_count = Column(Integer, default=0)
    contributors = Column(Integer, default=0)

    # Owner display fields
    owner_avatar_url = Column(String(1000))
    owner_display_name = Column(String(255))
    owner_id_github = Column(BigInteger)

    # Activity block
    activity_score = Column(Numeric(10, 2), nullable=False, default=0)
    recent_commits_count = Column(Integer, nullable=False, default=0)
    recent_prs_opened_count = Column(Integer, nullable=False, default=0)
    recent_prs_merged_count = Column(Integer, nullable=False, default=0)
    recent_contributors_count = Column(Integer, nullable=False, default=0)
    last_commit_at = Column(DateTime(timezone=True))

    # Timestamps
    verified_at = Column(DateTime(timezone=True))
    last_synced_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    history = relationship(
        "ActivitySnapshot",
        back_populates="repository",
        cascade="all, delete-orphan",
        order_by="ActivitySnapshot.recorded_at",
    )
    links = relationship("OwnershipLink", back_populates="repository")

    __table_args__ = (
        UniqueConstraint("full_name_key", name="uk_repositories_full_name"),
    )

    def __repr__(self):
        return f"<Repository {self.full_name} ({self.stars} stars, score={self.activity_score})>"
