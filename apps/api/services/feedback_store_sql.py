"""SQLAlchemy-backed feedback store."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import insert, or_, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from models.generated_post import GeneratedPost
from models.post_feedback import PostFeedback
from models.product_performance import ProductPerformance
from models.style_performance import StylePerformance
from services.feedback_store import (
    AGGREGATE_CONFLICT_KEYS,
    PUBLISHED_STATUS,
    SELECTION_MODES,
    SELECTION_RECENT,
    SELECTION_UNCOLLECTED,
    Aggregate,
    AggregateConflictError,
    AggregateKey,
    AggregateKind,
    EligiblePost,
    FeedbackRecord,
    FeedbackStore,
    PersistenceError,
    PostLookupError,
    PostOwner,
    ProductAggregate,
    SelectionError,
    StoreError,
    StyleAggregate,
)
from services.metrics.types import Metrics

_NATIVE_UPSERT = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_product(row: ProductPerformance) -> ProductAggregate:
    return ProductAggregate(
        product_id=int(row.product_id),
        perf_score=float(row.perf_score or 0.0),
        last_updated=_as_utc(row.last_updated),
        version=int(row.version or 0),
    )


def _to_style(row: StylePerformance) -> StyleAggregate:
    return StyleAggregate(
        style=row.style,
        channel=row.channel,
        impressions=float(row.impressions or 0.0),
        perf_score=float(row.perf_score or 0.0),
        engagement=float(row.engagement or 0.0),
        last_updated=_as_utc(row.last_updated),
        version=int(row.version or 0),
    )


class SqlFeedbackStore(FeedbackStore):
    def __init__(self, session_maker: async_sessionmaker[AsyncSession], *, default_channel: str = "IG") -> None:
        self._session_maker = session_maker
        self.default_channel = default_channel

    def _channel(self, post: GeneratedPost) -> str:
        return post.channel_published or self.default_channel

    async def list_eligible_posts(self, *, limit: int, since: datetime, mode: str) -> List[EligiblePost]:
        if mode not in SELECTION_MODES:
            raise SelectionError(f"Unknown selection mode: {mode!r}")

        stmt = select(GeneratedPost).where(
            GeneratedPost.status == PUBLISHED_STATUS,
            GeneratedPost.meta_post_id.is_not(None),
            GeneratedPost.meta_post_id != "",
        )
        if mode == SELECTION_UNCOLLECTED:
            stmt = stmt.outerjoin(PostFeedback, PostFeedback.generated_post_id == GeneratedPost.id).where(
                or_(PostFeedback.id.is_(None), PostFeedback.collected_at.is_(None))
            )
        elif mode == SELECTION_RECENT:
            stmt = stmt.where(GeneratedPost.published_at >= since)
        stmt = stmt.order_by(GeneratedPost.published_at.asc().nulls_last(), GeneratedPost.id.asc()).limit(int(limit))

        try:
            async with self._session_maker() as db:
                result = await db.execute(stmt)
                posts = result.scalars().all()
        except SQLAlchemyError as exc:
            raise SelectionError(f"Error reading published posts: {exc}") from exc

        return [
            EligiblePost(
                id=post.id,
                product_id=int(post.product_id),
                style=post.style,
                channel=self._channel(post),
                external_media_id=str(post.meta_post_id),
                published_at=_as_utc(post.published_at),
            )
            for post in posts
        ]

    async def get_post_owner(self, post_id: str) -> PostOwner:
        try:
            async with self._session_maker() as db:
                result = await db.execute(select(GeneratedPost).where(GeneratedPost.id == post_id))
                post = result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise PostLookupError(f"Error loading generated post {post_id}: {exc}") from exc
        if post is None:
            raise PostLookupError(f"generated post {post_id} not found")
        return PostOwner(product_id=int(post.product_id), style=post.style, channel=self._channel(post))

    async def upsert_feedback(self, record: FeedbackRecord) -> None:
        values = {
            "generated_post_id": record.post_id,
            "channel": record.channel,
            "ig_media_id": record.external_media_id,
            "metrics": record.metrics.to_payload(),
            "note": record.note,
            "collected_at": record.collected_at,
        }
        try:
            async with self._session_maker() as db:
                dialect = db.bind.dialect.name
                native_insert = _NATIVE_UPSERT.get(dialect)
                if native_insert is None:
                    raise PersistenceError(f"Unsupported database dialect for post_feedback upsert: {dialect}")
                stmt = native_insert(PostFeedback).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[PostFeedback.generated_post_id],
                    set_={
                        "channel": stmt.excluded.channel,
                        "ig_media_id": stmt.excluded.ig_media_id,
                        "metrics": stmt.excluded.metrics,
                        "note": stmt.excluded.note,
                        "collected_at": stmt.excluded.collected_at,
                    },
                )
                await db.execute(stmt)
                await db.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Error upserting post_feedback for {record.post_id}: {exc}") from exc

    async def get_feedback(self, post_id: str) -> Optional[FeedbackRecord]:
        try:
            async with self._session_maker() as db:
                result = await db.execute(select(PostFeedback).where(PostFeedback.generated_post_id == post_id))
                row = result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StoreError(f"Error reading post_feedback for {post_id}: {exc}") from exc
        if row is None or row.collected_at is None:
            return None
        return FeedbackRecord(
            post_id=row.generated_post_id,
            channel=row.channel,
            external_media_id=row.ig_media_id,
            metrics=Metrics.from_payload(row.metrics),
            collected_at=_as_utc(row.collected_at),
            note=row.note,
        )

    async def read_aggregate(self, kind: AggregateKind, key: AggregateKey) -> Optional[Aggregate]:
        try:
            async with self._session_maker() as db:
                if kind == "product":
                    result = await db.execute(
                        select(ProductPerformance).where(ProductPerformance.product_id == key)
                    )
                    row = result.scalar_one_or_none()
                    return _to_product(row) if row is not None else None
                if kind == "style":
                    style, channel = key
                    result = await db.execute(
                        select(StylePerformance).where(
                            StylePerformance.style == style,
                            StylePerformance.channel == channel,
                        )
                    )
                    row = result.scalar_one_or_none()
                    return _to_style(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise StoreError(f"Error reading {kind} aggregate {key!r}: {exc}") from exc
        raise ValueError(f"Unknown aggregate kind: {kind!r}")

    async def upsert_aggregate(
        self,
        kind: AggregateKind,
        record: Aggregate,
        *,
        expected_version: Optional[int],
    ) -> int:
        if kind == "product":
            model = ProductPerformance
            values = {
                "product_id": record.product_id,
                "perf_score": record.perf_score,
                "last_updated": record.last_updated,
            }
        elif kind == "style":
            model = StylePerformance
            values = {
                "style": record.style,
                "channel": record.channel,
                "impressions": record.impressions,
                "perf_score": record.perf_score,
                "engagement": record.engagement,
                "last_updated": record.last_updated,
            }
        else:
            raise ValueError(f"Unknown aggregate kind: {kind!r}")

        key_clause = [getattr(model, name) == getattr(record, name) for name in AGGREGATE_CONFLICT_KEYS[kind]]
        new_version = (expected_version or 0) + 1
        try:
            async with self._session_maker() as db:
                if expected_version is None:
                    await db.execute(insert(model).values(version=new_version, **values))
                else:
                    result = await db.execute(
                        update(model)
                        .where(*key_clause, model.version == expected_version)
                        .values(version=new_version, **values)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        await db.rollback()
                        raise AggregateConflictError(
                            f"{kind} aggregate changed since version {expected_version}"
                        )
                await db.commit()
        except IntegrityError as exc:
            # Row was inserted concurrently after we read it as absent.
            raise AggregateConflictError(f"{kind} aggregate was created concurrently") from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Error upserting {kind} aggregate: {exc}") from exc
        return new_version
