"""Metrics provider contracts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional


MetricsSource = Literal["graph", "stub"]

STUB_LIKE_COUNT = 1
STUB_COMMENT_COUNT = 0


class ProviderError(RuntimeError):
    """Raised when engagement metrics cannot be fetched or parsed."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass(frozen=True)
class Metrics:
    like_count: int
    comment_count: int
    permalink: Optional[str] = None
    impressions: Optional[int] = None
    reach: Optional[int] = None
    source: MetricsSource = "graph"

    def to_payload(self) -> Dict[str, Any]:
        """Serialize using Graph API field names for storage."""
        payload: Dict[str, Any] = {
            "like_count": self.like_count,
            "comments_count": self.comment_count,
            "source": self.source,
        }
        if self.permalink:
            payload["permalink"] = self.permalink
        if self.impressions is not None:
            payload["impressions"] = self.impressions
        if self.reach is not None:
            payload["reach"] = self.reach
        return payload

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> "Metrics":
        data = payload or {}

        def _optional_int(key: str) -> Optional[int]:
            value = data.get(key)
            return None if value is None else int(value)

        return cls(
            like_count=int(data.get("like_count") or 0),
            comment_count=int(data.get("comments_count") or 0),
            permalink=data.get("permalink") or None,
            impressions=_optional_int("impressions"),
            reach=_optional_int("reach"),
            source="stub" if data.get("source") == "stub" else "graph",
        )


def stub_metrics() -> Metrics:
    """Placeholder observation used when real metrics are disabled or unavailable."""
    return Metrics(like_count=STUB_LIKE_COUNT, comment_count=STUB_COMMENT_COUNT, source="stub")
