"""Unit tests for aggregate confidence scoring."""

from decimal import Decimal

import pytest

from services.extraction.schema import ExtractionAttempt, FieldValue, InvoiceField, Tier
from services.extraction.scoring import FIELD_WEIGHTS, ConfidenceScorer
from services.shared.config import Settings

VALID_VALUES = {
    InvoiceField.ISSUER_TAX_ID: "AAA010101AAA",
    InvoiceField.RECEIVER_TAX_ID: "BBB020202BBB",
    InvoiceField.UUID: "5E2D6AFF-2DD7-43D1-83D3-14C1ACA396D9",
    InvoiceField.TOTAL: Decimal("116.00"),
    InvoiceField.SUBTOTAL: Decimal("100.00"),
    InvoiceField.TAX: Decimal("16.00"),
    InvoiceField.LINE_ITEMS: ["Teclado"],
}


def _attempt(
    tier: Tier = Tier.PDF_REGEX,
    confidence: float = 1.0,
    overrides: dict[InvoiceField, FieldValue] | None = None,
) -> ExtractionAttempt:
    fields = {
        field: FieldValue(value=value, confidence=confidence)
        for field, value in VALID_VALUES.items()
    }
    fields.update(overrides or {})
    return ExtractionAttempt(tier=tier, fields=fields)


@pytest.fixture
def scorer() -> ConfidenceScorer:
    return ConfidenceScorer(Settings(_env_file=None))


class TestScoreAttempt:
    """Test the weighted aggregate for one attempt."""

    @pytest.mark.parametrize("confidence", [0.2, 0.6, 0.95, 1.0])
    def test_uniform_confidence_is_preserved(
        self, scorer: ConfidenceScorer, confidence: float
    ) -> None:
        assert scorer.score_attempt(_attempt(confidence=confidence)) == confidence

    def test_required_fields_weigh_more(self, scorer: ConfidenceScorer) -> None:
        weak_required = _attempt(
            overrides={InvoiceField.TOTAL: FieldValue(value=Decimal("116"), confidence=0.5)}
        )
        weak_optional = _attempt(
            overrides={InvoiceField.LINE_ITEMS: FieldValue(value=["Teclado"], confidence=0.5)}
        )

        assert scorer.score_attempt(weak_required) < scorer.score_attempt(weak_optional)
        assert FIELD_WEIGHTS[InvoiceField.TOTAL] > FIELD_WEIGHTS[InvoiceField.LINE_ITEMS]

    def test_missing_required_field_caps_at_half(self, scorer: ConfidenceScorer) -> None:
        attempt = _attempt(
            overrides={InvoiceField.UUID: FieldValue(value=None, confidence=0.0)}
        )

        assert scorer.score_attempt(attempt) == 0.5

    def test_absent_required_field_counts_as_missing(self, scorer: ConfidenceScorer) -> None:
        attempt = ExtractionAttempt(
            tier=Tier.CLOUD_AGENTIC,
            fields={
                InvoiceField.TOTAL: FieldValue(value=Decimal("1"), confidence=1.0),
                InvoiceField.LINE_ITEMS: FieldValue(value=["x"], confidence=1.0),
            },
        )

        assert scorer.score_attempt(attempt) <= 0.5

    def test_invalid_tax_id_format_halves_field(self, scorer: ConfidenceScorer) -> None:
        attempt = _attempt(
            overrides={
                InvoiceField.ISSUER_TAX_ID: FieldValue(value="NOT-AN-RFC", confidence=1.0)
            }
        )

        score = scorer.score_attempt(attempt)
        total_weight = sum(FIELD_WEIGHTS[field] for field in VALID_VALUES)
        penalty = 0.5 * FIELD_WEIGHTS[InvoiceField.ISSUER_TAX_ID] / total_weight
        assert score == round(1.0 - penalty, 4)

    def test_negative_amount_is_inconsistent(self, scorer: ConfidenceScorer) -> None:
        attempt = _attempt(
            overrides={InvoiceField.TAX: FieldValue(value=Decimal("-16.00"), confidence=1.0)}
        )

        assert scorer.score_attempt(attempt) < 1.0

    def test_failed_attempt_scores_zero(self, scorer: ConfidenceScorer) -> None:
        assert scorer.score_attempt(ExtractionAttempt.failed(Tier.CLOUD_AGENTIC, "boom")) == 0.0


class TestSelect:
    """Test winner selection across attempts."""

    def test_highest_score_wins(self, scorer: ConfidenceScorer) -> None:
        low = _attempt(Tier.PDF_REGEX, 0.2)
        high = _attempt(Tier.CLOUD_COST_EFFECTIVE, 0.6)

        assert scorer.select([low, high]) is high
        assert scorer.score([low, high]) == 0.6

    def test_tie_prefers_later_tier(self, scorer: ConfidenceScorer) -> None:
        first = _attempt(Tier.CLOUD_COST_EFFECTIVE, 0.8)
        second = _attempt(Tier.CLOUD_AGENTIC, 0.8)

        assert scorer.select([first, second]) is second

    def test_failed_attempts_never_win(self, scorer: ConfidenceScorer) -> None:
        failed = ExtractionAttempt.failed(Tier.CLOUD_AGENTIC, "timeout")
        weak = _attempt(Tier.PDF_REGEX, 0.1)

        assert scorer.select([weak, failed]) is weak

    def test_no_successful_attempt(self, scorer: ConfidenceScorer) -> None:
        failed = ExtractionAttempt.failed(Tier.XML_LOCAL, "malformed")

        assert scorer.select([failed]) is None
        assert scorer.score([failed]) == 0.0
