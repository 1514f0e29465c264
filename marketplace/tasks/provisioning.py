# marketplace/tasks/provisioning.py
from marketplace.celery_worker import celery_app
from marketplace.data.database import SessionLocal
from marketplace.domain.errors import ConcurrencyConflict
from marketplace.services.lock_service import LockService
from marketplace.services.provisioning_client import ProvisioningClient
from marketplace.services.provisioning_service import ProvisioningService
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)


def _service(db) -> ProvisioningService:
    return ProvisioningService(db, client=ProvisioningClient(), lock_service=LockService())


@celery_app.task(
    bind=True,
    name="marketplace.tasks.provisioning.provision_order_task",
    max_retries=3,
    default_retry_delay=30,
)
def provision_order_task(self, order_id: int):
    logger.info(f"Provision order task started for order {order_id}", extra={"order_id": order_id})

    db = SessionLocal()
    try:
        result = _service(db).process_order(order_id)
    except ConcurrencyConflict as e:
        #inny worker trzyma zamowienie
        raise self.retry(exc=e)
    finally:
        db.close()

    logger.info(
        f"Order {order_id} provisioning: {result['successful_products']}/{result['total_products']} ok",
        extra={"order_id": order_id},
    )
    return result


@celery_app.task(name="marketplace.tasks.provisioning.retry_failed_provisioning_task")
def retry_failed_provisioning_task(limit: int = 50):
    logger.info("Retry failed provisioning task started")

    db = SessionLocal()
    try:
        results = _service(db).retry_failed_orders(limit)
    finally:
        db.close()

    return {
        "orders": len(results),
        "completed": sum(1 for r in results if r["success"]),
    }
