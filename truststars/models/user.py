"""Account profile and ownership link models"""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from truststars.config.database import Base


class UserProfile(Base):
    """
    Public profile row for an authenticated account

    The id is issued by the hosted auth provider; this table only mirrors the
    display fields needed by leaderboards and ownership links.
    """
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    github_username = Column(String(255))
    avatar_url = Column(String(1000))
    display_name = Column(String(255))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    links = relationship("OwnershipLink", back_populates="user")

    def __repr__(self):
        return f"<UserProfile {self.id}: {self.github_username}>"


class OwnershipLink(Base):
    """Many-to-many link between an account and a tracked repository."""

    __tablename__ = "user_repositories"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    repo_id = Column(BigInteger, ForeignKey("repositories.id"), nullable=False, index=True)
    role = Column(String(20), nullable=False, default="maintainer")  # "owner" | "maintainer"

    user = relationship("UserProfile", back_populates="links")
    repository = relationship("Repository", back_populates="links")

    __table_args__ = (
        UniqueConstraint("user_id", "repo_id", name="uk_user_repositories"),
    )

    def __repr__(self):
        return f"<OwnershipLink {self.user_id}->{self.repo_id} ({self.role})>"
