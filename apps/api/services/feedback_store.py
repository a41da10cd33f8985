"""Feedback store contract, record types and an in-memory implementation.

The store owns persistence of the eligible-post view, feedback records and
the two aggregate tables. Aggregate writes are compare-and-swap on a
``version`` counter: callers read the current row, merge, and write back
with the version they read. A lost race raises ``AggregateConflictError``
and the caller re-reads.
"""

from __future__ import annotations

import dataclasses
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from config import SELECTION_MODES, SELECTION_RECENT, SELECTION_UNCOLLECTED
from services.metrics.types import Metrics


PUBLISHED_STATUS = "PUBLISHED"

AggregateKind = Literal["product", "style"]
AGGREGATE_CONFLICT_KEYS: Dict[str, Tuple[str, ...]] = {
    "product": ("product_id",),
    "style": ("style", "channel"),
}


class StoreError(Exception):
    """Base class for feedback store failures."""


class SelectionError(StoreError):
    """Eligible posts could not be listed; fatal to a run."""


class PersistenceError(StoreError):
    """A feedback or aggregate write did not complete."""


class AggregateConflictError(PersistenceError):
    """The aggregate row changed between read and write."""


class PostLookupError(StoreError):
    """The post's owning product/style could not be resolved."""


@dataclass(frozen=True)
class EligiblePost:
    id: str
    product_id: int
    style: Optional[str]
    channel: str
    external_media_id: str
    published_at: Optional[datetime]


@dataclass(frozen=True)
class PostOwner:
    product_id: int
    style: Optional[str]
    channel: str


@dataclass(frozen=True)
class FeedbackRecord:
    post_id: str
    channel: str
    external_media_id: str
    metrics: Metrics
    collected_at: datetime
    note: Optional[str] = None


@dataclass(frozen=True)
class ProductAggregate:
    product_id: int
    perf_score: float
    last_updated: datetime
    version: int = 0


@dataclass(frozen=True)
class StyleAggregate:
    style: str
    channel: str
    impressions: float
    perf_score: float
    engagement: float
    last_updated: datetime
    version: int = 0


Aggregate = Union[ProductAggregate, StyleAggregate]
AggregateKey = Union[int, Tuple[str, str]]


def aggregate_key(kind: AggregateKind, record: Aggregate) -> AggregateKey:
    """Return the conflict key of ``record``: a scalar for one column, else a tuple."""
    fields = AGGREGATE_CONFLICT_KEYS.get(kind)
    if fields is None:
        raise ValueError(f"Unknown aggregate kind: {kind!r}")
    values = tuple(getattr(record, name) for name in fields)
    return values[0] if len(values) == 1 else values


class FeedbackStore(ABC):
    @abstractmethod
    async def list_eligible_posts(self, *, limit: int, since: datetime, mode: str) -> List[EligiblePost]:
        """Return up to ``limit`` posts eligible for collection, oldest first."""
        raise NotImplementedError

    @abstractmethod
    async def get_post_owner(self, post_id: str) -> PostOwner:
        raise NotImplementedError

    @abstractmethod
    async def upsert_feedback(self, record: FeedbackRecord) -> None:
        """Insert or overwrite the feedback record keyed by ``post_id``."""
        raise NotImplementedError

    @abstractmethod
    async def get_feedback(self, post_id: str) -> Optional[FeedbackRecord]:
        raise NotImplementedError

    @abstractmethod
    async def read_aggregate(self, kind: AggregateKind, key: AggregateKey) -> Optional[Aggregate]:
        raise NotImplementedError

    @abstractmethod
    async def upsert_aggregate(
        self,
        kind: AggregateKind,
        record: Aggregate,
        *,
        expected_version: Optional[int],
    ) -> int:
        """Write ``record`` if the stored version still equals ``expected_version``.

        ``expected_version=None`` means the row was absent when read. Returns
        the new version; raises ``AggregateConflictError`` on a lost race.
        """
        raise NotImplementedError


@dataclass
class StoredPost:
    id: str
    product_id: int
    style: Optional[str] = None
    channel_published: Optional[str] = None
    status: str = PUBLISHED_STATUS
    meta_post_id: Optional[str] = None
    published_at: Optional[datetime] = None


class InMemoryFeedbackStore(FeedbackStore):
    """Dict-backed store with the same semantics as the SQL store; used by tests."""

    def __init__(self, *, default_channel: str = "IG") -> None:
        self.default_channel = default_channel
        self.posts: Dict[str, StoredPost] = {}
        self.feedback: Dict[str, FeedbackRecord] = {}
        self.product_aggregates: Dict[int, ProductAggregate] = {}
        self.style_aggregates: Dict[Tuple[str, str], StyleAggregate] = {}
        self.writes: List[Tuple[str, Any]] = []

    def add_post(self, post_id: str, product_id: int, **fields: Any) -> StoredPost:
        post = StoredPost(id=post_id, product_id=product_id, **fields)
        self.posts[post_id] = post
        return post

    def _channel(self, post: StoredPost) -> str:
        return post.channel_published or self.default_channel

    async def list_eligible_posts(self, *, limit: int, since: datetime, mode: str) -> List[EligiblePost]:
        if mode not in SELECTION_MODES:
            raise SelectionError(f"Unknown selection mode: {mode!r}")

        candidates = []
        for post in self.posts.values():
            if post.status != PUBLISHED_STATUS or not post.meta_post_id:
                continue
            if mode == SELECTION_UNCOLLECTED:
                existing = self.feedback.get(post.id)
                if existing is not None and existing.collected_at is not None:
                    continue
            elif post.published_at is None or post.published_at < since:
                continue
            candidates.append(post)

        candidates.sort(key=lambda p: (p.published_at is None, p.published_at or since, p.id))
        return [
            EligiblePost(
                id=post.id,
                product_id=post.product_id,
                style=post.style,
                channel=self._channel(post),
                external_media_id=str(post.meta_post_id),
                published_at=post.published_at,
            )
            for post in candidates[: max(int(limit), 0)]
        ]

    async def get_post_owner(self, post_id: str) -> PostOwner:
        post = self.posts.get(post_id)
        if post is None:
            raise PostLookupError(f"generated post {post_id} not found")
        return PostOwner(product_id=post.product_id, style=post.style, channel=self._channel(post))

    async def upsert_feedback(self, record: FeedbackRecord) -> None:
        self.feedback[record.post_id] = record
        self.writes.append(("feedback", record.post_id))

    async def get_feedback(self, post_id: str) -> Optional[FeedbackRecord]:
        return self.feedback.get(post_id)

    def _table(self, kind: AggregateKind) -> Dict[Any, Any]:
        if kind == "product":
            return self.product_aggregates
        if kind == "style":
            return self.style_aggregates
        raise ValueError(f"Unknown aggregate kind: {kind!r}")

    async def read_aggregate(self, kind: AggregateKind, key: AggregateKey) -> Optional[Aggregate]:
        return self._table(kind).get(key)

    async def upsert_aggregate(
        self,
        kind: AggregateKind,
        record: Aggregate,
        *,
        expected_version: Optional[int],
    ) -> int:
        table = self._table(kind)
        key = aggregate_key(kind, record)
        current = table.get(key)
        current_version = current.version if current is not None else None
        if current_version != expected_version:
            raise AggregateConflictError(
                f"{kind} aggregate {key!r} is at version {current_version}, expected {expected_version}"
            )
        new_version = (expected_version or 0) + 1
        table[key] = dataclasses.replace(record, version=new_version)
        self.writes.append((kind, key))
        return new_version
