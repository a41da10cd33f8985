"""RQ worker process entrypoint for feedback loop jobs."""

import asyncio

from rq import Worker

from config import settings, validate_feedback_settings
from database import engine, init_db
from logging_config import configure_logging
from services.feedback_queue import FEEDBACK_QUEUE_NAME, get_redis_connection


async def _bootstrap_schema() -> None:
    try:
        await init_db()
    finally:
        await engine.dispose()


def main():
    configure_logging()
    validate_feedback_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        asyncio.run(_bootstrap_schema())
    redis_conn = get_redis_connection()
    worker = Worker([FEEDBACK_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
