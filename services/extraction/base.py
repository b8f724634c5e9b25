"""Abstract base class for invoice field extractors.

Every tier of the escalation ladder implements the same contract, so the
pipeline can try them in cost order without knowing how each one works.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python

Contract:
- ``extract`` never raises for "no match"; missing fields get low confidence
- ``extract`` raises MalformedInputError only when the document is
  structurally unusable for that tier (e.g. non-well-formed XML)
"""

from abc import ABC, abstractmethod

from services.extraction.schema import ExtractionAttempt, RawDocument, Tier
from services.shared.config import Settings


class FieldExtractor(ABC):
    """Abstract base class for invoice field extractors.

    Implementations:
    - ExactExtractor: CFDI XML, lossless (XML_LOCAL)
    - HeuristicExtractor: pattern rules over the PDF text layer (PDF_REGEX)
    - CloudExtractor: external parsing service (CLOUD_COST_EFFECTIVE, CLOUD_AGENTIC)
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize extractor with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    @abstractmethod
    def extract(self, document: RawDocument) -> ExtractionAttempt:
        """Extract invoice fields from a document.

        Args:
            document: Document to read (never modified)

        Returns:
            ExtractionAttempt tagged with this extractor's tier

        Raises:
            MalformedInputError: If the document cannot be parsed by this tier
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this extractor is configured and usable.

        Returns:
            True if extractor can be used, False otherwise
        """
        pass

    @property
    @abstractmethod
    def tier(self) -> Tier:
        """Tier this extractor implements, used for routing, logging and metrics."""
        pass
