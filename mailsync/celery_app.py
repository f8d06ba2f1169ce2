from celery import Celery
from mailsync.config import settings

# Create Celery app
celery_app = Celery(
    "mailsync",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["mailsync.tasks.email_sync_tasks"]
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # Hard backstop; the job timeout itself is enforced inside the task
    task_time_limit=int(settings.sync_job_timeout_seconds) + 30,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.sync_worker_concurrency,
    worker_max_tasks_per_child=1000,
    task_routes={
        "mailsync.tasks.email_sync_tasks.*": {"queue": "email_sync"},
    },
    result_expires=settings.sync_completed_retention_seconds,
)

# Periodic task schedule (Celery Beat)
celery_app.conf.beat_schedule = {
    'renew-email-subscriptions': {
        'task': 'mailsync.tasks.email_sync_tasks.renew_subscriptions_task',
        'schedule': float(settings.renewal_interval_seconds),  # daily by default
        'options': {'queue': 'email_sync'}
    },
}

if __name__ == "__main__":
    celery_app.start()
