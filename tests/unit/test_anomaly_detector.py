"""Unit tests for the anomaly rule engine."""

from datetime import datetime
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock

import pytest

from services.anomaly.detector import (
    AnomalyDetector,
    AnomalyKind,
    Severity,
    blacklist_finding,
)
from services.contacts.models import BlacklistStatus
from services.extraction.schema import ParsedInvoice, Tier
from services.shared.config import Settings

NOW = datetime(2025, 10, 15, 12, 0, 0)


def _invoice(**overrides: Any) -> ParsedInvoice:
    values: dict[str, Any] = {
        "issuer_tax_id": "AAA010101AAA",
        "receiver_tax_id": "BBB020202BBB",
        "uuid": "5E2D6AFF-2DD7-43D1-83D3-14C1ACA396D9",
        "issue_date": datetime(2025, 10, 3, 11, 59, 17),
        "subtotal": Decimal("100.00"),
        "tax": Decimal("16.00"),
        "total": Decimal("116.00"),
        "tier": Tier.XML_LOCAL,
        "confidence": 1.0,
    }
    values.update(overrides)
    return ParsedInvoice(**values)


@pytest.fixture
def history() -> MagicMock:
    mock = MagicMock()
    mock.has_folio.return_value = False
    return mock


@pytest.fixture
def detector(history: MagicMock) -> AnomalyDetector:
    return AnomalyDetector(Settings(_env_file=None), history, now=lambda: NOW)


def _kinds(findings: list) -> list[AnomalyKind]:
    return [finding.kind for finding in findings]


class TestAmountMismatch:
    """Test total vs subtotal + tax arithmetic."""

    def test_consistent_totals(self, detector: AnomalyDetector) -> None:
        assert detector.detect(_invoice(), "tenant-1") == []

    def test_one_cent_off_is_a_warning(self, detector: AnomalyDetector) -> None:
        findings = detector.detect(_invoice(total=Decimal("116.01")), "tenant-1")

        assert _kinds(findings) == [AnomalyKind.AMOUNT_MISMATCH]
        assert findings[0].severity == Severity.WARNING
        assert findings[0].details["difference"] == "0.01"

    def test_rounding_within_tolerance(self, detector: AnomalyDetector) -> None:
        findings = detector.detect(_invoice(total=Decimal("116.004")), "tenant-1")

        assert AnomalyKind.AMOUNT_MISMATCH not in _kinds(findings)

    def test_gross_mismatch_is_blocking(self, detector: AnomalyDetector) -> None:
        findings = detector.detect(_invoice(total=Decimal("150.00")), "tenant-1")

        assert findings[0].kind == AnomalyKind.AMOUNT_MISMATCH
        assert findings[0].severity == Severity.BLOCKING

    def test_missing_amount_skips_rule(self, detector: AnomalyDetector) -> None:
        findings = detector.detect(_invoice(tax=None, total=Decimal("999")), "tenant-1")

        assert AnomalyKind.AMOUNT_MISMATCH not in _kinds(findings)


class TestDuplicateFolio:
    """Test duplicate detection through the folio history."""

    def test_duplicate_reported(self, detector: AnomalyDetector, history: MagicMock) -> None:
        history.has_folio.return_value = True

        findings = detector.detect(_invoice(), "tenant-1")

        assert _kinds(findings) == [AnomalyKind.DUPLICATE_FOLIO]
        history.has_folio.assert_called_once_with(
            "tenant-1", "AAA010101AAA", "5E2D6AFF-2DD7-43D1-83D3-14C1ACA396D9"
        )

    def test_no_uuid_skips_lookup(self, detector: AnomalyDetector, history: MagicMock) -> None:
        detector.detect(_invoice(uuid=None), "tenant-1")

        history.has_folio.assert_not_called()


class TestDateRange:
    """Test issue date bounds."""

    def test_future_date(self, detector: AnomalyDetector) -> None:
        findings = detector.detect(_invoice(issue_date=datetime(2025, 10, 16)), "tenant-1")

        assert _kinds(findings) == [AnomalyKind.DATE_OUT_OF_RANGE]
        assert "future" in findings[0].message

    def test_later_today_is_not_future(self, detector: AnomalyDetector) -> None:
        findings = detector.detect(_invoice(issue_date=datetime(2025, 10, 15, 18, 0)), "tenant-1")

        assert findings == []

    def test_older_than_retention(self, detector: AnomalyDetector) -> None:
        findings = detector.detect(_invoice(issue_date=datetime(2019, 1, 1)), "tenant-1")

        assert _kinds(findings) == [AnomalyKind.DATE_OUT_OF_RANGE]


class TestConfidenceAndFormat:
    """Test confidence bands and the supplementary rules."""

    def test_low_confidence(self, detector: AnomalyDetector) -> None:
        findings = detector.detect(_invoice(confidence=0.7), "tenant-1")

        assert _kinds(findings) == [AnomalyKind.LOW_CONFIDENCE]
        assert findings[0].severity == Severity.WARNING

    def test_threshold_is_not_low(self, detector: AnomalyDetector) -> None:
        assert detector.detect(_invoice(confidence=0.9), "tenant-1") == []

    def test_below_reject_floor(self, detector: AnomalyDetector) -> None:
        findings = detector.detect(_invoice(confidence=0.3), "tenant-1")

        assert _kinds(findings) == [AnomalyKind.OTHER]
        assert "reject floor" in findings[0].message

    def test_invalid_rfc_format(self, detector: AnomalyDetector) -> None:
        findings = detector.detect(_invoice(receiver_tax_id="12345"), "tenant-1")

        assert _kinds(findings) == [AnomalyKind.OTHER]
        assert "12345" in findings[0].message

    def test_high_amount(self, detector: AnomalyDetector) -> None:
        findings = detector.detect(
            _invoice(
                subtotal=Decimal("200000.00"), tax=Decimal("32000.00"), total=Decimal("232000.00")
            ),
            "tenant-1",
        )

        assert _kinds(findings) == [AnomalyKind.OTHER]
        assert findings[0].severity == Severity.WARNING

    def test_rules_are_not_short_circuited(
        self, detector: AnomalyDetector, history: MagicMock
    ) -> None:
        history.has_folio.return_value = True

        findings = detector.detect(
            _invoice(total=Decimal("116.01"), issue_date=datetime(2030, 1, 1), confidence=0.6),
            "tenant-1",
        )

        assert set(_kinds(findings)) == {
            AnomalyKind.AMOUNT_MISMATCH,
            AnomalyKind.DUPLICATE_FOLIO,
            AnomalyKind.DATE_OUT_OF_RANGE,
            AnomalyKind.LOW_CONFIDENCE,
        }


class TestBlacklistFinding:
    """Test the finding merged in from contact reconciliation."""

    @pytest.mark.parametrize("status", [BlacklistStatus.EFOS, BlacklistStatus.EDOS])
    def test_listed_issuer_is_blocking(self, status: BlacklistStatus) -> None:
        finding = blacklist_finding(status, "AAA010101AAA")

        assert finding is not None
        assert finding.kind == AnomalyKind.BLACKLISTED_COUNTERPARTY
        assert finding.severity == Severity.BLOCKING

    def test_unknown_is_recorded_but_not_blocking(self) -> None:
        finding = blacklist_finding(BlacklistStatus.UNKNOWN, "AAA010101AAA")

        assert finding is not None
        assert finding.kind != AnomalyKind.BLACKLISTED_COUNTERPARTY
        assert finding.severity == Severity.INFO

    def test_clean_issuer(self) -> None:
        assert blacklist_finding(BlacklistStatus.NONE, "AAA010101AAA") is None
