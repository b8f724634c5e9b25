"""Factory for creating the extractor of each tier.

Implements Factory Pattern for extractor selection with registry pattern for extensibility.

Based on:
- Factory Pattern: https://refactoring.guru/design-patterns/factory-method/python
- Registry Pattern: Python Cookbook 3rd Edition, Recipe 9.22
"""

import logging

from services.extraction.base import FieldExtractor
from services.extraction.cloud_extractor import CloudExtractor
from services.extraction.cloud_service import CloudParseService, HttpCloudParseService
from services.extraction.pdf_extractor import HeuristicExtractor
from services.extraction.schema import Tier
from services.extraction.xml_extractor import ExactExtractor
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class ExtractorRegistry:
    """Registry of local extractor classes by tier.

    Cloud tiers share CloudExtractor and are built with the parse service.
    """

    _extractors: dict[Tier, type[FieldExtractor]] = {
        Tier.XML_LOCAL: ExactExtractor,
        Tier.PDF_REGEX: HeuristicExtractor,
    }

    @classmethod
    def register(cls, tier: Tier, extractor_class: type[FieldExtractor]) -> None:
        """Register an extractor class for a local tier.

        Raises:
            ValueError: If tier is a cloud tier
        """
        if not tier.is_local:
            raise ValueError(f"Cloud tier {tier.name} is served by CloudExtractor")
        cls._extractors[tier] = extractor_class
        logger.info(f"Registered extractor for tier {tier.name}: {extractor_class.__name__}")

    @classmethod
    def get_extractor_class(cls, tier: Tier) -> type[FieldExtractor]:
        """Get extractor class for a local tier.

        Raises:
            ValueError: If no extractor is registered for the tier
        """
        if tier not in cls._extractors:
            available = ", ".join(t.name for t in cls._extractors)
            raise ValueError(f"No extractor for tier '{tier.name}'. Available tiers: {available}")
        return cls._extractors[tier]

    @classmethod
    def list_tiers(cls) -> list[Tier]:
        return sorted(cls._extractors)


def create_extractors(
    settings: Settings, cloud_service: CloudParseService | None = None
) -> dict[Tier, FieldExtractor]:
    """Create one extractor per tier.

    Args:
        settings: Application settings
        cloud_service: Parse service for the cloud tiers, HTTP client by default

    Returns:
        Mapping of every tier to its extractor
    """
    extractors: dict[Tier, FieldExtractor] = {
        tier: ExtractorRegistry.get_extractor_class(tier)(settings)
        for tier in ExtractorRegistry.list_tiers()
    }

    service = cloud_service or HttpCloudParseService(settings)
    for tier in (Tier.CLOUD_COST_EFFECTIVE, Tier.CLOUD_AGENTIC):
        extractors[tier] = CloudExtractor(settings, service, tier)

    for tier, extractor in extractors.items():
        if not extractor.is_available():
            logger.warning(
                f"Extractor for tier {tier.name} is not available. "
                f"Check configuration (e.g., APP_CLOUD_PARSE_API_KEY)."
            )

    logger.info(f"Created extractors for tiers: {', '.join(t.name for t in extractors)}")
    return extractors
