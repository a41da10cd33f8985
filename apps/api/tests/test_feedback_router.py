from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from database import get_db
from main import app
from models.generated_post import GeneratedPost
from models.post_feedback import PostFeedback
from models.product_performance import ProductPerformance
from models.style_performance import StylePerformance


NOW = datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)


async def _seed_aggregates(session_maker):
    async with session_maker() as db:
        db.add_all(
            [
                ProductPerformance(product_id=42, perf_score=13.0, version=2, last_updated=NOW),
                StylePerformance(style="boho", channel="IG", impressions=100, perf_score=20, engagement=0.2, last_updated=NOW),
                StylePerformance(style="minimal", channel="IG", impressions=100, perf_score=50, engagement=0.5, last_updated=NOW),
                StylePerformance(style="boho", channel="FB", impressions=0, perf_score=3, engagement=0.0, last_updated=NOW),
                GeneratedPost(id="p1", product_id=42, style="boho", status="PUBLISHED", meta_post_id="m1", published_at=NOW),
                GeneratedPost(id="p2", product_id=42, style="boho", status="PUBLISHED", meta_post_id="m2", published_at=NOW),
            ]
        )
        db.add_all(
            [
                PostFeedback(
                    generated_post_id="p1",
                    channel="IG",
                    ig_media_id="m1",
                    metrics={"like_count": 1, "comments_count": 0, "source": "stub"},
                    note="provider_error: Graph error 500",
                    collected_at=NOW,
                ),
                PostFeedback(generated_post_id="p2", channel="IG", ig_media_id="m2", metrics=None, collected_at=None),
            ]
        )
        await db.commit()


@pytest.mark.asyncio
async def test_collect_enqueues_feedback_job(client):
    job = MagicMock()
    job.id = "feedback:run-1"
    with patch("routers.feedback.enqueue_feedback_loop_job", return_value=job) as mock_enqueue:
        response = await client.post("/feedback/collect", json={"limit": 10})

    assert response.status_code == 200
    assert response.json() == {"job_id": "feedback:run-1", "queue": "feedback_jobs", "status": "queued"}
    mock_enqueue.assert_called_once_with(limit=10)


@pytest.mark.asyncio
async def test_collect_rejects_invalid_limit(client):
    with patch("routers.feedback.enqueue_feedback_loop_job") as mock_enqueue:
        response = await client.post("/feedback/collect", json={"limit": 0})

    assert response.status_code == 422
    mock_enqueue.assert_not_called()


@pytest.mark.asyncio
async def test_collect_returns_503_when_queue_is_down(client):
    with patch("routers.feedback.enqueue_feedback_loop_job", side_effect=ConnectionError("redis down")):
        response = await client.post("/feedback/collect", json={})

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_read_product_and_style_aggregates(client, session_maker):
    await _seed_aggregates(session_maker)

    product = await client.get("/feedback/products/42")
    assert product.status_code == 200
    assert product.json()["perf_score"] == 13.0

    missing = await client.get("/feedback/products/7")
    assert missing.status_code == 404

    styles = await client.get("/feedback/styles", params={"channel": "IG"})
    assert styles.status_code == 200
    items = styles.json()["items"]
    assert [item["style"] for item in items] == ["minimal", "boho"]
    assert all(item["channel"] == "IG" for item in items)

    all_styles = (await client.get("/feedback/styles")).json()["items"]
    assert len(all_styles) == 3


@pytest.mark.asyncio
async def test_read_post_feedback(client, session_maker):
    await _seed_aggregates(session_maker)

    response = await client.get("/feedback/posts/p1")
    assert response.status_code == 200
    data = response.json()
    assert data["external_media_id"] == "m1"
    assert data["metrics"]["source"] == "stub"
    assert data["note"].startswith("provider_error")

    # Seeded row that was never collected.
    assert (await client.get("/feedback/posts/p2")).status_code == 404
    assert (await client.get("/feedback/posts/nope")).status_code == 404


@pytest.mark.asyncio
async def test_health_probes(client):
    live = await client.get("/health/live")
    assert live.json() == {"alive": True}

    ready = await client.get("/health/ready")
    assert ready.status_code == 200
    assert ready.json() == {"ready": True, "metrics_mode": "stub"}

    with patch("routers.health._database_status", new=AsyncMock(return_value="down: refused")):
        not_ready = await client.get("/health/ready")
    assert not_ready.status_code == 503
    assert not_ready.json()["ready"] is False
