"""Celery task queue configuration."""

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from hydra.core.config import get_settings
from hydra.core.logging import setup_logging

settings = get_settings()

celery_app = Celery(
    "hydra",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["hydra.pipeline.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=1800,  # 30 min hard limit
    task_soft_time_limit=1500,
    worker_prefetch_multiplier=1,  # Fair scheduling
    worker_max_tasks_per_child=50,  # Prevent memory leaks
    task_routes={
        "hydra.pipeline.tasks.certify_batch": {"queue": "certification"},
    },
)


@celery_setup_logging.connect
def configure_worker_logging(**kwargs) -> None:
    """Use the engine's formatters in workers instead of Celery's own."""
    current = get_settings()
    setup_logging(env=current.app_env, log_level=current.log_level)
