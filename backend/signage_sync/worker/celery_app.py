"""
Celery application for publish work (queue `publish`, Redis broker and backend).

Tasks are safe to redeliver: playlist writes go through the outbox and an
upload that is retried starts a new job row.
"""
from celery import Celery

from signage_sync.settings import get_settings

settings = get_settings()

# A resolve may run a full upload poll and then a clone poll
_time_limit = int(settings.upload_poll_timeout_sec + settings.clone_poll_timeout_sec) + 300

celery_app = Celery(
    "signage_sync",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["signage_sync.worker.tasks"],
)

celery_app.conf.update(
    task_default_queue="publish",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_time_limit=_time_limit,
    broker_transport_options={"visibility_timeout": _time_limit * 2},
)
