import logging
from celery import Celery
from subocr.core.config import settings

logger = logging.getLogger(__name__)

def get_celery_app() -> Celery:
    # If using Docker, this would be 'redis://redis:6379/0'
    redis_url = settings.REDIS_URL

    app = Celery(
        "subocr_tasks",
        broker=redis_url,
        backend=redis_url,
        include=["subocr.tasks"]
    )

    app.conf.update(
        result_expires=86400, # 24 hours
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        # Don't ack tasks until AFTER they complete.
        # If a worker dies mid-step, Redis re-queues it and the job re-enters at its persisted step.
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        # A single step (one preprocessing batch) must finish inside this window
        broker_transport_options={'visibility_timeout': 600},
    )

    # If Redis is not running, switch to 'task_always_eager' (synchronous mode)
    # so the API and the pipeline still work during development.
    try:
        import redis
        client = redis.from_url(redis_url, socket_connect_timeout=1)
        client.ping()
        logger.info(f"[Celery] Connected to Redis at {redis_url}")
    except Exception as e:
        logger.warning(f"[Celery] Redis not available ({e}). Running in SYNC mode (task_always_eager=True).")
        app.conf.update(
            task_always_eager=True,
            task_eager_propagates=True
        )

    return app

celery_app = get_celery_app()
