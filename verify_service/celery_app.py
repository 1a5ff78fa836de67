from celery import Celery

from verify_service.redis_client import redis_url
from verify_service.settings import settings

broker_url = settings.CELERY_BROKER_URL or redis_url()
backend_url = settings.CELERY_RESULT_BACKEND or broker_url

app = Celery("verify_service", broker=broker_url, backend=backend_url)

app.conf.update(
    task_default_queue=settings.CELERY_TASK_DEFAULT_QUEUE,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone=settings.CELERY_TIMEZONE,
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
    # sweep results are only logged
    task_ignore_result=True,
    beat_schedule={
        "sweep-expired-verification-tokens": {
            "task": "verify_service.tasks.cleanup.sweep_expired_verification_tokens",
            "schedule": float(settings.TOKEN_SWEEP_INTERVAL_SECONDS),
        },
    },
)

app.autodiscover_tasks(["verify_service.tasks"])
