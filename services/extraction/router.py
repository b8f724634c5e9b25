"""Tier router: decides which extractor to try next.

Policy:
- XML starts at XML_LOCAL and escalates to the cloud tiers only when the
  XML is structurally unusable. PDF_REGEX never applies to XML.
- PDF starts at PDF_REGEX, escalating to CLOUD_COST_EFFECTIVE when its
  confidence is below the cheap-tier threshold, then to CLOUD_AGENTIC.
- Escalation stops as soon as an attempt reaches the approval threshold,
  and tiers only ever move up in cost (at most one attempt per tier).
- Tiers whose extractor is unavailable (e.g. no cloud credentials) are
  skipped; the ladder then ends at the last available tier.
"""

import logging
from collections.abc import Collection

from services.extraction.schema import ExtractionAttempt, MediaType, Tier
from services.extraction.scoring import ConfidenceScorer
from services.shared.config import Settings

logger = logging.getLogger(__name__)

_LADDERS: dict[MediaType, tuple[Tier, ...]] = {
    MediaType.XML: (Tier.XML_LOCAL, Tier.CLOUD_COST_EFFECTIVE, Tier.CLOUD_AGENTIC),
    MediaType.PDF: (Tier.PDF_REGEX, Tier.CLOUD_COST_EFFECTIVE, Tier.CLOUD_AGENTIC),
}

MAX_ATTEMPTS = len(Tier)


class TierRouter:
    """Chooses the next extraction tier from the attempts made so far."""

    def __init__(self, settings: Settings, scorer: ConfidenceScorer) -> None:
        self._scorer = scorer
        self._approval_threshold = settings.approval_threshold
        self._cheap_tier_thresholds = {
            Tier.PDF_REGEX: settings.pdf_cheap_tier_threshold,
        }

    def next_tier(
        self,
        media_type: MediaType,
        attempts: list[ExtractionAttempt],
        available: Collection[Tier] | None = None,
    ) -> Tier | None:
        """Next tier to try, or None when escalation should stop.

        Args:
            media_type: Declared media type of the document
            attempts: Attempts made so far, oldest first
            available: Tiers that can currently run, all tiers if None

        Returns:
            Tier strictly more expensive than any attempted so far, or None
        """
        ladder = _LADDERS[media_type]
        if available is not None:
            ladder = tuple(tier for tier in ladder if tier in available)
        if not ladder:
            return None
        if not attempts:
            return ladder[0]
        if len(attempts) >= MAX_ATTEMPTS:
            return None

        last = attempts[-1]
        if last.success:
            confidence = self._scorer.score_attempt(last)
            if confidence >= self._approval_threshold:
                return None
            if last.tier == Tier.XML_LOCAL:
                return None
            cheap_threshold = self._cheap_tier_thresholds.get(last.tier)
            if cheap_threshold is not None and confidence >= cheap_threshold:
                return None
            reason = f"confidence {confidence:.2f}"
        else:
            reason = last.error or "failure"

        highest = max(attempt.tier for attempt in attempts)
        remaining = [tier for tier in ladder if tier > highest]
        if not remaining:
            return None

        logger.info(f"Escalating from {last.tier.name} to {remaining[0].name} ({reason})")
        return remaining[0]
