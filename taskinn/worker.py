from celery import Celery
from taskinn.core.config import settings

# Create Celery app
celery_app = Celery(
    "taskinn_worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["taskinn.tasks.ledger"]
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
)

# Configure periodic tasks
celery_app.conf.beat_schedule = {
    'reconcile-ledger': {
        'task': 'taskinn.tasks.ledger.reconcile_ledger',
        'schedule': settings.RECONCILIATION_INTERVAL_SECONDS,
    },
}

if __name__ == "__main__":
    celery_app.start()
