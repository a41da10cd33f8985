import json

import httpx
import pytest

from config import Settings
from services.metrics import (
    GraphMetricsProvider,
    Metrics,
    ProviderError,
    StubMetricsProvider,
    get_metrics_provider,
)


def _provider(handler) -> GraphMetricsProvider:
    return GraphMetricsProvider(
        api_version="v24.0",
        access_token="secret-token",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_graph_provider_requests_fields_and_parses_counts():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = request.url
        return httpx.Response(
            200,
            json={
                "id": "m1",
                "like_count": 10,
                "comments_count": 5,
                "permalink": "https://instagram.com/p/abc",
                "impressions": 400,
                "reach": 350,
            },
        )

    provider = _provider(handler)
    metrics = await provider.fetch_metrics("m1")
    await provider.aclose()

    assert metrics == Metrics(
        like_count=10,
        comment_count=5,
        permalink="https://instagram.com/p/abc",
        impressions=400,
        reach=350,
        source="graph",
    )
    url = seen["url"]
    assert url.host == "graph.facebook.com"
    assert url.path == "/v24.0/m1"
    assert url.params["fields"] == "like_count,comments_count,permalink,impressions,reach"
    assert url.params["access_token"] == "secret-token"


@pytest.mark.asyncio
async def test_graph_provider_defaults_missing_counters():
    provider = _provider(lambda request: httpx.Response(200, json={"like_count": "3"}))
    metrics = await provider.fetch_metrics("m2")

    assert metrics.like_count == 3
    assert metrics.comment_count == 0
    assert metrics.impressions is None
    assert metrics.reach is None
    assert metrics.to_payload() == {"like_count": 3, "comments_count": 0, "source": "graph"}


@pytest.mark.asyncio
async def test_graph_provider_non_success_status_carries_diagnostics():
    body = {"error": {"message": "Invalid OAuth access token", "code": 190}}
    provider = _provider(lambda request: httpx.Response(400, json=body))

    with pytest.raises(ProviderError) as exc_info:
        await provider.fetch_metrics("m3")

    assert exc_info.value.status_code == 400
    assert json.loads(exc_info.value.body) == body


@pytest.mark.asyncio
async def test_graph_provider_rejects_non_json_body():
    provider = _provider(lambda request: httpx.Response(200, text="<html>maintenance</html>"))

    with pytest.raises(ProviderError) as exc_info:
        await provider.fetch_metrics("m4")

    assert exc_info.value.status_code == 200
    assert "maintenance" in exc_info.value.body


@pytest.mark.asyncio
async def test_graph_provider_rejects_unexpected_structure():
    provider = _provider(lambda request: httpx.Response(200, json=[1, 2, 3]))
    with pytest.raises(ProviderError):
        await provider.fetch_metrics("m5")

    provider = _provider(lambda request: httpx.Response(200, json={"like_count": "lots"}))
    with pytest.raises(ProviderError):
        await provider.fetch_metrics("m6")


@pytest.mark.asyncio
async def test_graph_provider_wraps_transport_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    provider = _provider(handler)
    with pytest.raises(ProviderError) as exc_info:
        await provider.fetch_metrics("m7")
    assert exc_info.value.status_code is None


@pytest.mark.asyncio
async def test_stub_provider_returns_cold_start_observation():
    metrics = await StubMetricsProvider().fetch_metrics("anything")
    assert metrics.like_count == 1
    assert metrics.comment_count == 0
    assert metrics.source == "stub"


def test_provider_selection_follows_credential():
    assert isinstance(get_metrics_provider(Settings(META_ACCESS_TOKEN="")), StubMetricsProvider)
    assert isinstance(get_metrics_provider(Settings(META_ACCESS_TOKEN="   ")), StubMetricsProvider)

    provider = get_metrics_provider(Settings(META_ACCESS_TOKEN="tok", META_GRAPH_VERSION="v21.0"))
    assert isinstance(provider, GraphMetricsProvider)
    assert provider.base_url == "https://graph.facebook.com/v21.0"
    assert provider.throttled is True


def test_graph_provider_requires_a_credential():
    with pytest.raises(ValueError):
        GraphMetricsProvider(api_version="v24.0", access_token="")
