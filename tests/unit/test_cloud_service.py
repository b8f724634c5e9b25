"""Unit tests for the cloud parse HTTP client, using httpx's mock transport."""

from collections.abc import Callable

import httpx
import pytest

from services.extraction.cloud_service import HttpCloudParseService
from services.extraction.schema import MediaType, RawDocument, Tier
from services.shared.config import Settings
from services.shared.errors import CloudServiceError

Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        cloud_parse_base_url="https://parse.test/api/",
        cloud_parse_api_key="secret",
    )


@pytest.fixture
def document() -> RawDocument:
    return RawDocument(
        content=b"%PDF-1.4",
        media_type=MediaType.PDF,
        tenant_id="tenant-1",
        document_id="doc-1",
        filename="factura.pdf",
    )


def _service(settings: Settings, handler: Handler) -> HttpCloudParseService:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpCloudParseService(settings, client=client)


class TestHttpCloudParseService:
    """Test request shape and error mapping."""

    def test_successful_parse(self, settings: Settings, document: RawDocument) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={"fields": {"total": {"value": "116.00", "confidence": 0.9}}, "pages": 2},
            )

        response = _service(settings, handler).parse(document, Tier.CLOUD_AGENTIC)

        assert response.pages == 2
        assert response.fields["total"].value == "116.00"
        request = seen[0]
        assert str(request.url) == "https://parse.test/api/extract"
        assert request.headers["Authorization"] == "Bearer secret"
        assert b'name="mode"' in request.content
        assert b"agentic" in request.content
        assert b"factura.pdf" in request.content

    def test_is_configured_requires_api_key(self, settings: Settings) -> None:
        assert HttpCloudParseService(settings, client=httpx.Client()).is_configured()
        unconfigured = settings.model_copy(update={"cloud_parse_api_key": ""})
        assert not HttpCloudParseService(unconfigured, client=httpx.Client()).is_configured()

    @pytest.mark.parametrize(("status_code", "retryable"), [(429, True), (503, True), (400, False)])
    def test_http_errors(
        self, settings: Settings, document: RawDocument, status_code: int, retryable: bool
    ) -> None:
        service = _service(settings, lambda request: httpx.Response(status_code))

        with pytest.raises(CloudServiceError) as exc_info:
            service.parse(document, Tier.CLOUD_COST_EFFECTIVE)

        assert exc_info.value.status_code == status_code
        assert exc_info.value.retryable is retryable

    def test_timeout_is_retryable(self, settings: Settings, document: RawDocument) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(CloudServiceError, match="timed out") as exc_info:
            _service(settings, handler).parse(document, Tier.CLOUD_COST_EFFECTIVE)

        assert exc_info.value.retryable

    def test_connection_error_is_retryable(
        self, settings: Settings, document: RawDocument
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(CloudServiceError) as exc_info:
            _service(settings, handler).parse(document, Tier.CLOUD_COST_EFFECTIVE)

        assert exc_info.value.retryable

    @pytest.mark.parametrize(
        "error", [httpx.TooManyRedirects, httpx.DecodingError], ids=["redirects", "decoding"]
    )
    def test_other_request_errors_not_retryable(
        self, settings: Settings, document: RawDocument, error: type[httpx.RequestError]
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise error("request failed", request=request)

        with pytest.raises(CloudServiceError, match="request failed") as exc_info:
            _service(settings, handler).parse(document, Tier.CLOUD_COST_EFFECTIVE)

        assert not exc_info.value.retryable

    def test_invalid_payload_not_retryable(
        self, settings: Settings, document: RawDocument
    ) -> None:
        service = _service(settings, lambda request: httpx.Response(200, content=b"<html>"))

        with pytest.raises(CloudServiceError, match="invalid payload") as exc_info:
            service.parse(document, Tier.CLOUD_COST_EFFECTIVE)

        assert not exc_info.value.retryable

    def test_local_tier_rejected(self, settings: Settings, document: RawDocument) -> None:
        service = _service(settings, lambda request: httpx.Response(200, json={}))

        with pytest.raises(ValueError, match="not a cloud tier"):
            service.parse(document, Tier.PDF_REGEX)
