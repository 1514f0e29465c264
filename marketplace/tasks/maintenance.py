# marketplace/tasks/maintenance.py
from marketplace.celery_worker import celery_app
from marketplace.data.database import SessionLocal
from marketplace.services.abandoned_cart_service import AbandonedCartService
from marketplace.services.lock_service import LockService
from marketplace.services.payment_gateway import PaymentGatewayClient
from marketplace.services.payment_service import PaymentService
from marketplace.utils.settings import ABANDONED_CART_HOURS
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)


@celery_app.task(name="marketplace.tasks.maintenance.mark_abandoned_carts_task")
def mark_abandoned_carts_task(hours: int = ABANDONED_CART_HOURS):
    logger.info(f"Mark abandoned carts task started (threshold {hours}h)")

    db = SessionLocal()
    try:
        return AbandonedCartService(db).mark_abandoned(hours=hours)
    finally:
        db.close()


@celery_app.task(name="marketplace.tasks.maintenance.purge_expired_carts_task")
def purge_expired_carts_task():
    logger.info("Purge expired carts task started")

    db = SessionLocal()
    try:
        return AbandonedCartService(db).purge_expired_carts()
    finally:
        db.close()


@celery_app.task(name="marketplace.tasks.maintenance.expire_payment_sessions_task")
def expire_payment_sessions_task():
    logger.info("Expire payment sessions task started")

    db = SessionLocal()
    try:
        service = PaymentService(db, gateway=PaymentGatewayClient(), lock_service=LockService())
        return service.clean_expired()
    finally:
        db.close()
