"""Repository stats history model"""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, Numeric
from sqlalchemy.orm import relationship

from truststars.config.database import Base


class ActivitySnapshot(Base):
    """Append-only point-in-time measurement mapped to `repo_stats_history`."""

    __tablename__ = "repo_stats_history"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    repo_id = Column(BigInteger, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False, index=True)

    stars = Column(Integer, nullable=True)
    forks = Column(Integer, nullable=True)
    contributors = Column(Integer, nullable=True)
    activity_score = Column(Numeric(10, 2), nullable=True)
    recent_commits_count = Column(Integer, nullable=True)

    recorded_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )

    repository = relationship("Repository", back_populates="history")

    def __repr__(self):
        return f"<ActivitySnapshot {self.repo_id}:{self.recorded_at}>"
