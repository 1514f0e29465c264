# marketplace/celery_worker.py
from celery import Celery
from celery.schedules import crontab

from marketplace.utils.settings import CELERY_BROKER_URL, CELERY_RESULT_BACKEND

celery_app = Celery(
    "marketplace",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
)

# tasks are registered by import
celery_app.conf.imports = (
    "marketplace.tasks.maintenance",
    "marketplace.tasks.provisioning",
    "marketplace.services.notification_service",
)

celery_app.conf.beat_schedule = {
    "mark-abandoned-carts-hourly": {
        "task": "marketplace.tasks.maintenance.mark_abandoned_carts_task",
        "schedule": crontab(minute=0),
    },
    "expire-payment-sessions": {
        "task": "marketplace.tasks.maintenance.expire_payment_sessions_task",
        "schedule": 300.0,
    },
    "purge-expired-carts-daily": {
        "task": "marketplace.tasks.maintenance.purge_expired_carts_task",
        "schedule": crontab(hour=3, minute=30),
    },
    "retry-failed-provisioning": {
        "task": "marketplace.tasks.provisioning.retry_failed_provisioning_task",
        "schedule": 900.0,
    },
}

celery_app.conf.timezone = "UTC"
