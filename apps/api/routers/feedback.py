"""Feedback loop router: trigger collection runs and read performance aggregates."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.post_feedback import PostFeedback
from models.product_performance import ProductPerformance
from models.style_performance import StylePerformance
from services.feedback_queue import FEEDBACK_QUEUE_NAME, enqueue_feedback_loop_job

router = APIRouter()
logger = logging.getLogger(__name__)


class FeedbackCollectRequest(BaseModel):
    limit: Optional[int] = Field(default=None, gt=0, le=500)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


@router.post("/collect")
async def collect_feedback(request: FeedbackCollectRequest):
    try:
        job = enqueue_feedback_loop_job(limit=request.limit)
    except Exception as exc:
        logger.error("Could not enqueue feedback loop job: %s", exc)
        raise HTTPException(status_code=503, detail="Feedback queue unavailable. Retry later.") from exc
    return {"job_id": job.id, "queue": FEEDBACK_QUEUE_NAME, "status": "queued"}


@router.get("/products/{product_id}")
async def get_product_performance(product_id: int, db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    result = await db.execute(select(ProductPerformance).where(ProductPerformance.product_id == product_id))
    row = result.scalar_one_or_none()
    if row is None:
        raise HTTPException(status_code=404, detail=f"No performance recorded for product {product_id}")
    return {
        "product_id": row.product_id,
        "perf_score": float(row.perf_score or 0.0),
        "last_updated": _iso(row.last_updated),
    }


@router.get("/styles")
async def list_style_performance(
    channel: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, List[Dict[str, Any]]]:
    stmt = select(StylePerformance)
    if channel:
        stmt = stmt.where(StylePerformance.channel == channel)
    stmt = stmt.order_by(StylePerformance.engagement.desc(), StylePerformance.perf_score.desc())
    result = await db.execute(stmt)
    return {
        "items": [
            {
                "style": row.style,
                "channel": row.channel,
                "impressions": float(row.impressions or 0.0),
                "perf_score": float(row.perf_score or 0.0),
                "engagement": float(row.engagement or 0.0),
                "last_updated": _iso(row.last_updated),
            }
            for row in result.scalars().all()
        ]
    }


@router.get("/posts/{post_id}")
async def get_post_feedback(post_id: str, db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    result = await db.execute(select(PostFeedback).where(PostFeedback.generated_post_id == post_id))
    row = result.scalar_one_or_none()
    if row is None or row.collected_at is None:
        raise HTTPException(status_code=404, detail=f"No feedback collected for post {post_id}")
    return {
        "post_id": row.generated_post_id,
        "channel": row.channel,
        "external_media_id": row.ig_media_id,
        "metrics": row.metrics or {},
        "note": row.note,
        "collected_at": _iso(row.collected_at),
    }
