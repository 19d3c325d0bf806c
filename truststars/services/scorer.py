"""Activity score calculation"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
import logging
from typing import Optional

from truststars.config.settings import Settings, settings as default_settings
from truststars.services.aggregator import ActivitySignals

logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")


@dataclass(frozen=True, slots=True)
class ScoreWeights:
    """
    Weights and recency thresholds of the activity score

    These are product decisions, not derived constants. Defaults reproduce the
    published leaderboard formula.
    """

    contributor: Decimal = Decimal("10")
    commit: Decimal = Decimal("0.5")
    pr_merged: Decimal = Decimal("5")
    pr_opened: Decimal = Decimal("1")
    recent_hours: float = 48.0
    recent_multiplier: Decimal = Decimal("1.2")
    stale_hours: float = 14 * 24.0
    stale_multiplier: Decimal = Decimal("0.5")

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> ScoreWeights:
        config = config or default_settings
        return cls(
            contributor=Decimal(str(config.SCORE_CONTRIBUTOR_WEIGHT)),
            commit=Decimal(str(config.SCORE_COMMIT_WEIGHT)),
            pr_merged=Decimal(str(config.SCORE_PR_MERGED_WEIGHT)),
            pr_opened=Decimal(str(config.SCORE_PR_OPENED_WEIGHT)),
            recent_hours=float(config.SCORE_RECENT_HOURS),
            recent_multiplier=Decimal(str(config.SCORE_RECENT_MULTIPLIER)),
            stale_hours=float(config.SCORE_STALE_HOURS),
            stale_multiplier=Decimal(str(config.SCORE_STALE_MULTIPLIER)),
        )


class ActivityScorer:
    """Combine activity signals into a comparable, recency-weighted score"""

    def __init__(self, weights: ScoreWeights | None = None) -> None:
        self.weights = weights or ScoreWeights.from_settings()

    def compute_score(self, signals: ActivitySignals, now: Optional[datetime] = None) -> Decimal:
        """
        Calculate the activity score

        base = contributors*10 + commits*0.5 + merged PRs*5 + opened PRs*1,
        then x1.2 when the last commit is under 48h old, x0.5 when it is older
        than 14 days. No multiplier without a last commit.

        Args:
            signals: Aggregated activity signals
            now: Reference time (defaults to current UTC time)

        Returns:
            Non-negative Decimal rounded half-up to 2 places
        """
        base = self.base_score(signals)
        multiplier = self.recency_multiplier(signals.last_commit_at, now)
        score = (base * multiplier).quantize(_CENTS, rounding=ROUND_HALF_UP)

        logger.debug(
            f"Scored signals: base={base}, multiplier={multiplier}, final={score}"
        )

        return max(score, Decimal("0.00"))

    def base_score(self, signals: ActivitySignals) -> Decimal:
        w = self.weights
        return (
            w.contributor * signals.active_contributors_count
            + w.commit * signals.recent_commits_count
            + w.pr_merged * signals.recent_prs_merged
            + w.pr_opened * signals.recent_prs_opened
        )

    def recency_multiplier(self, last_commit_at: Optional[datetime], now: Optional[datetime] = None) -> Decimal:
        if last_commit_at is None:
            return Decimal("1")

        now = now or datetime.now(UTC)
        if last_commit_at.tzinfo is None:
            last_commit_at = last_commit_at.replace(tzinfo=UTC)
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)

        hours = (now - last_commit_at).total_seconds() / 3600
        if hours < self.weights.recent_hours:
            return self.weights.recent_multiplier
        if hours > self.weights.stale_hours:
            return self.weights.stale_multiplier
        return Decimal("1")
