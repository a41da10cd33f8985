"""Feedback loop: collect engagement metrics for published posts and fold them
into product and style/channel performance aggregates."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from pydantic import BaseModel, Field

from config import PRODUCT_MERGE_POLICIES, Settings, settings
from services.feedback_store import (
    SELECTION_MODES,
    SELECTION_UNCOLLECTED,
    Aggregate,
    AggregateConflictError,
    AggregateKind,
    EligiblePost,
    FeedbackRecord,
    FeedbackStore,
    ProductAggregate,
    SelectionError,
    StoreError,
    StyleAggregate,
)
from services.metrics import BaseMetricsProvider, Metrics, ProviderError, get_metrics_provider, stub_metrics
from services.scoring import (
    DEFAULT_WEIGHTS,
    PRODUCT_MERGE_EMA_70_30,
    BatchAccumulator,
    EngagementWeights,
    merge_product_score,
    merge_style_aggregate,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_LIMIT = 50
DEFAULT_LOOKBACK_WINDOW = timedelta(days=7)
DEFAULT_THROTTLE_SECONDS = 0.2


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FeedbackLoopPayload(BaseModel):
    """Structured job payload; ``limit`` overrides the configured batch limit."""

    limit: Optional[int] = Field(default=None, gt=0)


@dataclass(frozen=True)
class PipelineConfig:
    batch_limit: int = DEFAULT_BATCH_LIMIT
    lookback_window: timedelta = DEFAULT_LOOKBACK_WINDOW
    selection_mode: str = SELECTION_UNCOLLECTED
    throttle_seconds: float = DEFAULT_THROTTLE_SECONDS
    product_merge_policy: str = PRODUCT_MERGE_EMA_70_30
    batch_deadline_seconds: Optional[float] = None
    max_merge_attempts: int = 5

    def __post_init__(self) -> None:
        if int(self.batch_limit) <= 0:
            raise ValueError("batch_limit must be positive")
        if self.lookback_window <= timedelta(0):
            raise ValueError("lookback_window must be positive")
        if self.selection_mode not in SELECTION_MODES:
            raise ValueError(f"Unknown selection mode: {self.selection_mode!r}")
        if self.product_merge_policy not in PRODUCT_MERGE_POLICIES:
            raise ValueError(f"Unknown product merge policy: {self.product_merge_policy!r}")
        if self.throttle_seconds < 0:
            raise ValueError("throttle_seconds must not be negative")
        if int(self.max_merge_attempts) <= 0:
            raise ValueError("max_merge_attempts must be positive")

    @classmethod
    def from_settings(cls, config: Settings, *, limit: Optional[int] = None) -> "PipelineConfig":
        deadline = float(config.FEEDBACK_BATCH_DEADLINE_SECONDS)
        return cls(
            batch_limit=int(limit or config.FEEDBACK_BATCH_LIMIT),
            lookback_window=timedelta(days=int(config.FEEDBACK_LOOKBACK_DAYS)),
            selection_mode=config.FEEDBACK_SELECTION_MODE,
            throttle_seconds=max(int(config.FEEDBACK_THROTTLE_MS), 0) / 1000.0,
            product_merge_policy=config.FEEDBACK_PRODUCT_MERGE_POLICY,
            batch_deadline_seconds=deadline if deadline > 0 else None,
            max_merge_attempts=int(config.FEEDBACK_MERGE_MAX_ATTEMPTS),
        )


@dataclass
class RunSummary:
    attempted: int = 0
    collected: int = 0  # Feedback record written
    failed: int = 0  # Feedback record not written
    stubbed: int = 0  # Provider failed; stub metrics substituted
    aggregated: int = 0  # Folded into the batch aggregates
    skipped_aggregation: int = 0  # Owner lookup failed; feedback kept
    aggregate_failures: int = 0
    deferred: int = 0  # Left for a later run by the batch deadline

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class FeedbackCollectionPipeline:
    """Selects eligible posts, resolves metrics and merges performance aggregates.

    Posts are processed sequentially. A failure on one post never aborts the
    batch; only a failure to list eligible posts (``SelectionError``) is
    raised to the caller.
    """

    def __init__(
        self,
        store: FeedbackStore,
        provider: BaseMetricsProvider,
        config: Optional[PipelineConfig] = None,
        *,
        weights: EngagementWeights = DEFAULT_WEIGHTS,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.provider = provider
        self.config = config or PipelineConfig()
        self.weights = weights
        self._clock = clock
        self._sleep = sleep
        self._monotonic = monotonic

    async def run(self, job_id: Optional[str] = None) -> RunSummary:
        job_id = job_id or str(uuid.uuid4())
        config = self.config
        since = self._clock() - config.lookback_window
        logger.info(
            "[FEEDBACK_LOOP] job=%s start mode=%s limit=%s provider=%s",
            job_id,
            config.selection_mode,
            config.batch_limit,
            self.provider.name,
        )

        summary = RunSummary()
        accumulator = BatchAccumulator()
        try:
            try:
                posts = await self.store.list_eligible_posts(
                    limit=config.batch_limit,
                    since=since,
                    mode=config.selection_mode,
                )
            except StoreError as exc:
                logger.error("[FEEDBACK_LOOP] job=%s could not list eligible posts: %s", job_id, exc)
                if isinstance(exc, SelectionError):
                    raise
                raise SelectionError(str(exc)) from exc

            if not posts:
                logger.info("[FEEDBACK_LOOP] job=%s nothing to collect", job_id)
                return summary

            logger.info("[FEEDBACK_LOOP] job=%s posts to process: %s", job_id, len(posts))
            deadline = (
                self._monotonic() + config.batch_deadline_seconds
                if config.batch_deadline_seconds
                else None
            )
            for index, post in enumerate(posts):
                if deadline is not None and self._monotonic() >= deadline:
                    summary.deferred = len(posts) - index
                    logger.warning(
                        "[FEEDBACK_LOOP] job=%s batch deadline reached; deferring %s posts",
                        job_id,
                        summary.deferred,
                    )
                    break
                if index and self.provider.throttled and config.throttle_seconds > 0:
                    await self._sleep(config.throttle_seconds)

                summary.attempted += 1
                try:
                    await self._process_post(job_id, post, accumulator, summary)
                except Exception as exc:
                    summary.failed += 1
                    logger.exception(
                        "[FEEDBACK_LOOP] job=%s post=%s unexpected failure: %s", job_id, post.id, exc
                    )
        finally:
            await self.provider.aclose()

        await self._merge_aggregates(job_id, accumulator, summary)
        logger.info("[FEEDBACK_LOOP] job=%s done %s", job_id, summary.as_dict())
        return summary

    async def _resolve_metrics(self, job_id: str, post: EligiblePost) -> Tuple[Metrics, Optional[str]]:
        try:
            return await self.provider.fetch_metrics(post.external_media_id), None
        except ProviderError as exc:
            logger.warning(
                "[FEEDBACK_LOOP] job=%s post=%s media=%s metrics fetch failed (status=%s): %s body=%s",
                job_id,
                post.id,
                post.external_media_id,
                exc.status_code,
                exc,
                (exc.body or "")[:300],
            )
            return stub_metrics(), f"provider_error: {exc}"

    async def _process_post(
        self,
        job_id: str,
        post: EligiblePost,
        accumulator: BatchAccumulator,
        summary: RunSummary,
    ) -> None:
        metrics, note = await self._resolve_metrics(job_id, post)
        if note is not None:
            summary.stubbed += 1

        record = FeedbackRecord(
            post_id=post.id,
            channel=post.channel,
            external_media_id=post.external_media_id,
            metrics=metrics,
            collected_at=self._clock(),
            note=note,
        )
        try:
            await self.store.upsert_feedback(record)
        except StoreError as exc:
            # Aggregates only reflect durably recorded feedback.
            summary.failed += 1
            logger.warning("[FEEDBACK_LOOP] job=%s post=%s upsert feedback failed: %s", job_id, post.id, exc)
            return
        summary.collected += 1

        # Feedback is durable from here on; later failures only skip aggregation.
        try:
            owner = await self.store.get_post_owner(post.id)
            perf = self.weights.score(metrics.like_count, metrics.comment_count)
            accumulator.add(owner.product_id, owner.style, owner.channel or post.channel, perf, metrics.impressions or 0)
        except StoreError as exc:
            summary.skipped_aggregation += 1
            logger.warning("[FEEDBACK_LOOP] job=%s post=%s owner lookup failed: %s", job_id, post.id, exc)
            return
        except Exception as exc:
            summary.skipped_aggregation += 1
            logger.exception("[FEEDBACK_LOOP] job=%s post=%s aggregation skipped: %s", job_id, post.id, exc)
            return
        summary.aggregated += 1

    async def _merge_aggregates(self, job_id: str, accumulator: BatchAccumulator, summary: RunSummary) -> None:
        for product_id, perf in accumulator.product_totals().items():
            merged = await self._merge_one(job_id, "product", product_id, partial(self._product_record, product_id, perf))
            if merged is None:
                summary.aggregate_failures += 1
                continue
            logger.info("[product_performance] product_id=%s perf=%.2f", product_id, merged.perf_score)

        for (style, channel), (impressions, perf) in accumulator.style_totals().items():
            merged = await self._merge_one(
                job_id,
                "style",
                (style, channel),
                partial(self._style_record, style, channel, impressions, perf),
            )
            if merged is None:
                summary.aggregate_failures += 1
                continue
            logger.info(
                "[style_performance] style=%s channel=%s impressions=%s perf_total=%s",
                style,
                channel,
                merged.impressions,
                merged.perf_score,
            )

    def _product_record(self, product_id: int, perf: float, existing: Optional[ProductAggregate]) -> ProductAggregate:
        previous = existing.perf_score if existing is not None else None
        score = merge_product_score(previous, perf, self.config.product_merge_policy)
        return ProductAggregate(product_id=product_id, perf_score=score, last_updated=self._clock())

    def _style_record(
        self,
        style: str,
        channel: str,
        impressions: float,
        perf: float,
        existing: Optional[StyleAggregate],
    ) -> StyleAggregate:
        previous = (existing.impressions, existing.perf_score) if existing is not None else None
        totals = merge_style_aggregate(previous, impressions, perf)
        return StyleAggregate(
            style=style,
            channel=channel,
            impressions=totals.impressions,
            perf_score=totals.perf_score,
            engagement=totals.engagement,
            last_updated=self._clock(),
        )

    async def _merge_one(
        self,
        job_id: str,
        kind: AggregateKind,
        key: Any,
        build: Callable[[Any], Aggregate],
    ) -> Optional[Aggregate]:
        """Read, merge and compare-and-swap one aggregate row, retrying lost races."""
        for attempt in range(1, self.config.max_merge_attempts + 1):
            try:
                existing = await self.store.read_aggregate(kind, key)
                record = build(existing)
                await self.store.upsert_aggregate(
                    kind,
                    record,
                    expected_version=existing.version if existing is not None else None,
                )
                return record
            except AggregateConflictError:
                logger.info(
                    "[FEEDBACK_LOOP] job=%s %s aggregate %r changed concurrently (attempt %s)",
                    job_id,
                    kind,
                    key,
                    attempt,
                )
            except StoreError as exc:
                logger.warning("[FEEDBACK_LOOP] job=%s %s aggregate %r upsert failed: %s", job_id, kind, key, exc)
                return None
        logger.warning(
            "[FEEDBACK_LOOP] job=%s %s aggregate %r gave up after %s conflicting attempts",
            job_id,
            kind,
            key,
            self.config.max_merge_attempts,
        )
        return None


def build_pipeline(
    *,
    limit: Optional[int] = None,
    config: Optional[Settings] = None,
    store: Optional[FeedbackStore] = None,
    provider: Optional[BaseMetricsProvider] = None,
) -> FeedbackCollectionPipeline:
    """Wire the pipeline from explicit settings; the pipeline never reads settings itself."""
    config = config or settings
    if store is None:
        from database import async_session_maker
        from services.feedback_store_sql import SqlFeedbackStore

        store = SqlFeedbackStore(async_session_maker, default_channel=config.FEEDBACK_DEFAULT_CHANNEL)
    return FeedbackCollectionPipeline(
        store,
        provider or get_metrics_provider(config),
        PipelineConfig.from_settings(config, limit=limit),
    )


async def run_feedback_loop_job_async(payload: Optional[Dict[str, Any]] = None, job_id: Optional[str] = None) -> Dict[str, int]:
    """Run one feedback collection batch; executed by the RQ worker wrapper."""
    job_payload = FeedbackLoopPayload.model_validate(payload or {})
    pipeline = build_pipeline(limit=job_payload.limit)
    summary = await pipeline.run(job_id=job_id)
    return summary.as_dict()


async def _run_job_and_dispose(payload: Optional[Dict[str, Any]], job_id: Optional[str]) -> Dict[str, int]:
    from database import engine

    try:
        return await run_feedback_loop_job_async(payload, job_id=job_id)
    finally:
        # Pooled connections are bound to this job's event loop.
        await engine.dispose()


def run_feedback_loop_job(payload: Optional[Dict[str, Any]] = None, job_id: Optional[str] = None) -> Dict[str, int]:
    """RQ worker entrypoint for feedback loop jobs."""
    return asyncio.run(_run_job_and_dispose(payload, job_id))
