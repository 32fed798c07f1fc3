"""
Celery Application Configuration

Configures Celery with:
- A dedicated render queue
- No automatic retries (a failed job is resubmitted by the user)
- Result backend for task tracking
"""

from celery import Celery
from celery.signals import worker_process_init
from kombu import Queue

from imagelift.core.config import settings
from imagelift.core.logging import setup_logging

# Create Celery app
celery_app = Celery(
    "imagelift_pipeline",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "imagelift.pipeline.tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task tracking
    task_track_started=True,
    task_time_limit=1800,  # 30 minute hard limit
    task_soft_time_limit=1740,

    # Result expiration
    result_expires=86400,  # 24 hours

    # Worker settings
    worker_prefetch_multiplier=1,  # One render in flight per worker process

    # Queue definitions
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("render_queue", routing_key="render.#"),
    ),
    task_default_queue="default",

    # Task routing
    task_routes={
        "imagelift.pipeline.tasks.run_enhancement_pipeline": {"queue": "render_queue"},
    },

    # Late acknowledgment for reliability
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)


@worker_process_init.connect
def configure_worker_logging(**kwargs):
    """Workers log through the same structlog pipeline as the API."""
    setup_logging(
        log_level=settings.LOG_LEVEL,
        json_format=settings.LOG_FORMAT_JSON,
        app_version=settings.APP_VERSION
    )
