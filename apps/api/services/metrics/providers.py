"""Metrics provider abstraction with a credential-gated stub."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from config import Settings
from services.metrics.types import Metrics, ProviderError, stub_metrics

logger = logging.getLogger(__name__)

GRAPH_METRIC_FIELDS = ("like_count", "comments_count", "permalink", "impressions", "reach")
MAX_ERROR_BODY_CHARS = 2000


class BaseMetricsProvider(ABC):
    name: str
    # Remote providers are rate limited upstream; the pipeline pauses between their calls.
    throttled: bool = False

    @abstractmethod
    async def fetch_metrics(self, media_id: str) -> Metrics:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class StubMetricsProvider(BaseMetricsProvider):
    """Cold-start provider used when no credential is configured; never does I/O."""

    name = "stub"

    async def fetch_metrics(self, media_id: str) -> Metrics:
        return stub_metrics()


def _count(payload: Dict[str, Any], field: str, *, required: bool) -> Optional[int]:
    value = payload.get(field)
    if value is None:
        return 0 if required else None
    if isinstance(value, bool):
        raise ProviderError(f"Graph field {field} is not numeric: {value!r}")
    try:
        number = int(float(value))
    except (TypeError, ValueError) as exc:
        raise ProviderError(f"Graph field {field} is not numeric: {value!r}") from exc
    return max(number, 0)


class GraphMetricsProvider(BaseMetricsProvider):
    """Reads engagement counters for one media object from the Meta Graph API."""

    name = "graph"
    throttled = True

    def __init__(
        self,
        *,
        api_version: str,
        access_token: str,
        graph_host: str = "graph.facebook.com",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not access_token:
            raise ValueError("GraphMetricsProvider requires an access token")
        self.api_version = api_version.strip("/")
        self.access_token = access_token
        self.base_url = f"https://{graph_host}/{self.api_version}"
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch_metrics(self, media_id: str) -> Metrics:
        media_id = str(media_id or "").strip()
        if not media_id:
            raise ProviderError("Media id is required")

        params = {
            "fields": ",".join(GRAPH_METRIC_FIELDS),
            "access_token": self.access_token,
        }
        try:
            response = await self._get_client().get(f"/{media_id}", params=params)
        except httpx.HTTPError as exc:
            raise ProviderError(f"Graph request for media {media_id} failed: {exc.__class__.__name__}: {exc}") from exc

        body = response.text
        if not response.is_success:
            raise ProviderError(
                f"Graph error {response.status_code} for media {media_id}",
                status_code=response.status_code,
                body=body[:MAX_ERROR_BODY_CHARS],
            )

        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise ProviderError(
                f"Graph returned non-JSON for media {media_id}",
                status_code=response.status_code,
                body=body[:MAX_ERROR_BODY_CHARS],
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderError(
                f"Graph returned unexpected payload for media {media_id}",
                status_code=response.status_code,
                body=body[:MAX_ERROR_BODY_CHARS],
            )

        permalink = payload.get("permalink")
        return Metrics(
            like_count=_count(payload, "like_count", required=True),
            comment_count=_count(payload, "comments_count", required=True),
            permalink=str(permalink) if permalink else None,
            impressions=_count(payload, "impressions", required=False),
            reach=_count(payload, "reach", required=False),
            source="graph",
        )


def get_metrics_provider(
    config: Settings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> BaseMetricsProvider:
    access_token = (config.META_ACCESS_TOKEN or "").strip()
    if not access_token:
        logger.warning("META_ACCESS_TOKEN is empty; feedback loop will use stub metrics")
        return StubMetricsProvider()
    return GraphMetricsProvider(
        api_version=config.META_GRAPH_VERSION,
        access_token=access_token,
        graph_host=config.META_GRAPH_HOST,
        timeout=float(config.META_REQUEST_TIMEOUT_SECONDS),
        transport=transport,
    )
