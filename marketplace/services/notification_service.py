# marketplace/services/notification_service.py
from typing import List

from marketplace.celery_worker import celery_app
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)


class NotificationService:
    """
    Queues follow-up work after a transaction commits.
    Everything goes through Celery, nothing here blocks the request.
    """

    @staticmethod
    def send_order_notification(user_id: int, order_id: int):
        send_order_notification_task.delay(user_id, order_id)

    @staticmethod
    def send_provisioning_failure(order_id: int, failed_items: List[dict]):
        send_provisioning_failure_task.delay(order_id, failed_items)

    @staticmethod
    def schedule_provisioning(order_id: int):
        celery_app.send_task("marketplace.tasks.provisioning.provision_order_task", args=[order_id])


@celery_app.task(name="marketplace.services.notification_service.send_order_notification_task")
def send_order_notification_task(user_id: int, order_id: int):
    # delivery channel (email) lives outside this service
    logger.info(
        f"[NOTIFICATION] User {user_id}: order {order_id} paid, provisioning started",
        extra={"order_id": order_id, "user_id": user_id},
    )
    return {"user_id": user_id, "order_id": order_id, "status": "sent"}


@celery_app.task(name="marketplace.services.notification_service.send_provisioning_failure_task")
def send_provisioning_failure_task(order_id: int, failed_items: List[dict]):
    logger.warning(
        f"[NOTIFICATION] Order {order_id}: {len(failed_items)} products failed provisioning",
        extra={"order_id": order_id, "failed_items": failed_items},
    )
    return {"order_id": order_id, "failed": len(failed_items), "status": "sent"}
