"""Background tasks using Celery.

Migration batches run on their own ``migrations`` queue so a long backfill
never delays other work on the default queue:

    celery -A orgvault.tasks worker -Q migrations --concurrency 1
"""

from celery import Celery

from orgvault.config import get_settings

settings = get_settings()

celery_app = Celery(
    "orgvault",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # A batch that hits the hard limit is killed mid-record; the conditional
    # flip keeps that record at legacy and the next batch picks it up
    task_time_limit=settings.MIGRATION_JOB_TIMEOUT_SECONDS,
    task_routes={"orgvault.tasks.migration.*": {"queue": "migrations"}},
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)

# Import task modules to register them
from orgvault.tasks import migration  # noqa
