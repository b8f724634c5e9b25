"""Unit tests for tier escalation policy."""

from decimal import Decimal

import pytest

from services.extraction.router import MAX_ATTEMPTS, TierRouter
from services.extraction.schema import (
    ExtractionAttempt,
    FieldValue,
    InvoiceField,
    MediaType,
    Tier,
)
from services.extraction.scoring import ConfidenceScorer
from services.shared.config import Settings


def _attempt(tier: Tier, confidence: float) -> ExtractionAttempt:
    values = {
        InvoiceField.ISSUER_TAX_ID: "AAA010101AAA",
        InvoiceField.RECEIVER_TAX_ID: "BBB020202BBB",
        InvoiceField.UUID: "5E2D6AFF-2DD7-43D1-83D3-14C1ACA396D9",
        InvoiceField.TOTAL: Decimal("116.00"),
    }
    return ExtractionAttempt(
        tier=tier,
        fields={f: FieldValue(value=v, confidence=confidence) for f, v in values.items()},
    )


@pytest.fixture
def router() -> TierRouter:
    settings = Settings(_env_file=None)
    return TierRouter(settings, ConfidenceScorer(settings))


class TestXmlRouting:
    """XML escalates only on structural failure."""

    def test_starts_local(self, router: TierRouter) -> None:
        assert router.next_tier(MediaType.XML, []) == Tier.XML_LOCAL

    def test_successful_xml_never_escalates(self, router: TierRouter) -> None:
        assert router.next_tier(MediaType.XML, [_attempt(Tier.XML_LOCAL, 1.0)]) is None

    def test_incomplete_xml_does_not_escalate(self, router: TierRouter) -> None:
        assert router.next_tier(MediaType.XML, [_attempt(Tier.XML_LOCAL, 0.3)]) is None

    def test_malformed_xml_escalates_to_cloud(self, router: TierRouter) -> None:
        attempts = [ExtractionAttempt.failed(Tier.XML_LOCAL, "XML is not well-formed")]

        assert router.next_tier(MediaType.XML, attempts) == Tier.CLOUD_COST_EFFECTIVE

    def test_pdf_regex_never_used_for_xml(self, router: TierRouter) -> None:
        attempts = [
            ExtractionAttempt.failed(Tier.XML_LOCAL, "malformed"),
            _attempt(Tier.CLOUD_COST_EFFECTIVE, 0.4),
        ]

        assert router.next_tier(MediaType.XML, attempts) == Tier.CLOUD_AGENTIC


class TestPdfRouting:
    """PDF climbs the ladder until confident enough."""

    def test_starts_with_regex(self, router: TierRouter) -> None:
        assert router.next_tier(MediaType.PDF, []) == Tier.PDF_REGEX

    def test_low_regex_confidence_escalates(self, router: TierRouter) -> None:
        attempts = [_attempt(Tier.PDF_REGEX, 0.2)]

        assert router.next_tier(MediaType.PDF, attempts) == Tier.CLOUD_COST_EFFECTIVE

    def test_regex_above_cheap_threshold_stops(self, router: TierRouter) -> None:
        assert router.next_tier(MediaType.PDF, [_attempt(Tier.PDF_REGEX, 0.75)]) is None

    def test_cost_effective_below_threshold_escalates(self, router: TierRouter) -> None:
        attempts = [_attempt(Tier.PDF_REGEX, 0.2), _attempt(Tier.CLOUD_COST_EFFECTIVE, 0.6)]

        assert router.next_tier(MediaType.PDF, attempts) == Tier.CLOUD_AGENTIC

    def test_failed_cost_effective_escalates(self, router: TierRouter) -> None:
        attempts = [
            _attempt(Tier.PDF_REGEX, 0.2),
            ExtractionAttempt.failed(Tier.CLOUD_COST_EFFECTIVE, "HTTP 503"),
        ]

        assert router.next_tier(MediaType.PDF, attempts) == Tier.CLOUD_AGENTIC

    def test_approval_threshold_stops_early(self, router: TierRouter) -> None:
        attempts = [_attempt(Tier.PDF_REGEX, 0.2), _attempt(Tier.CLOUD_COST_EFFECTIVE, 0.9)]

        assert router.next_tier(MediaType.PDF, attempts) is None

    def test_agentic_is_last(self, router: TierRouter) -> None:
        attempts = [
            _attempt(Tier.PDF_REGEX, 0.2),
            _attempt(Tier.CLOUD_COST_EFFECTIVE, 0.6),
            _attempt(Tier.CLOUD_AGENTIC, 0.7),
        ]

        assert router.next_tier(MediaType.PDF, attempts) is None

    def test_malformed_pdf_escalates(self, router: TierRouter) -> None:
        attempts = [ExtractionAttempt.failed(Tier.PDF_REGEX, "missing %PDF- header")]

        assert router.next_tier(MediaType.PDF, attempts) == Tier.CLOUD_COST_EFFECTIVE


class TestUnavailableTiers:
    """Tiers without a usable extractor are skipped."""

    LOCAL_ONLY = {Tier.XML_LOCAL, Tier.PDF_REGEX}

    def test_low_regex_confidence_stops_without_cloud(self, router: TierRouter) -> None:
        attempts = [_attempt(Tier.PDF_REGEX, 0.2)]

        assert router.next_tier(MediaType.PDF, attempts, self.LOCAL_ONLY) is None

    def test_unavailable_cost_effective_skipped(self, router: TierRouter) -> None:
        attempts = [_attempt(Tier.PDF_REGEX, 0.2)]
        available = {Tier.PDF_REGEX, Tier.CLOUD_AGENTIC}

        assert router.next_tier(MediaType.PDF, attempts, available) == Tier.CLOUD_AGENTIC

    def test_malformed_xml_without_cloud_stops(self, router: TierRouter) -> None:
        attempts = [ExtractionAttempt.failed(Tier.XML_LOCAL, "XML is not well-formed")]

        assert router.next_tier(MediaType.XML, attempts, self.LOCAL_ONLY) is None

    def test_nothing_available(self, router: TierRouter) -> None:
        assert router.next_tier(MediaType.PDF, [], set()) is None


class TestEscalationInvariants:
    """Tiers never go down in cost and attempts are capped."""

    @pytest.mark.parametrize("media_type", [MediaType.XML, MediaType.PDF])
    def test_always_failing_sequence_is_monotonic_and_bounded(
        self, router: TierRouter, media_type: MediaType
    ) -> None:
        attempts: list[ExtractionAttempt] = []
        while (tier := router.next_tier(media_type, attempts)) is not None:
            if attempts:
                assert tier > attempts[-1].tier
            attempts.append(ExtractionAttempt.failed(tier, "failed"))

        assert len(attempts) == 3
        assert len(attempts) <= MAX_ATTEMPTS
        assert attempts[-1].tier == Tier.CLOUD_AGENTIC

    def test_never_returns_cheaper_tier_after_costlier(self, router: TierRouter) -> None:
        attempts = [_attempt(Tier.CLOUD_AGENTIC, 0.2)]

        assert router.next_tier(MediaType.PDF, attempts) is None
