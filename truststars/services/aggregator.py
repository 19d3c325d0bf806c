"""Signal aggregation for repository activity."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Iterable, Optional

from truststars.crawlers.github.contracts import ActivityPayload, CommitEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ActivitySignals:
    """The five activity measurements feeding the score."""

    recent_commits_count: int = 0
    active_contributors_count: int = 0
    recent_prs_opened: int = 0
    recent_prs_merged: int = 0
    last_commit_at: Optional[datetime] = None


class SignalAggregator:
    """Reduce raw commit and search responses into `ActivitySignals`."""

    def aggregate(
        self,
        commits: Iterable[CommitEntry],
        prs_opened: int | None,
        prs_merged: int | None,
    ) -> ActivitySignals:
        """
        Aggregate one activity window

        The commits list is assumed to be already filtered server-side to the
        window; it is counted as-is.

        Args:
            commits: Commit entries for the window
            prs_opened: Total count from the created-since search, None if unavailable
            prs_merged: Total count from the merged-since search, None if unavailable

        Returns:
            ActivitySignals
        """
        entries = list(commits)

        identities = {entry.identity for entry in entries if entry.identity}

        return ActivitySignals(
            recent_commits_count=len(entries),
            active_contributors_count=len(identities),
            recent_prs_opened=max(int(prs_opened or 0), 0),
            recent_prs_merged=max(int(prs_merged or 0), 0),
            last_commit_at=self._last_commit_at(entries),
        )

    def aggregate_payload(self, payload: ActivityPayload) -> ActivitySignals:
        return self.aggregate(payload.commits, payload.prs_opened, payload.prs_merged)

    @staticmethod
    def _last_commit_at(entries: list[CommitEntry]) -> Optional[datetime]:
        # Newest timestamp rather than entries[0]; identical for GitHub's
        # reverse-chronological order.
        timestamps = [entry.committed_at for entry in entries if entry.committed_at is not None]
        if not timestamps:
            return None

        latest = max(timestamps)
        if entries[0].committed_at is not None and entries[0].committed_at != latest:
            logger.debug(
                "Commit list not in reverse-chronological order",
                extra={"first": entries[0].committed_at.isoformat(), "latest": latest.isoformat()},
            )
        return latest
