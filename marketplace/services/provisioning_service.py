# marketplace/services/provisioning_service.py
from typing import Dict, Any, List

from sqlalchemy.orm import Session

from marketplace.data.models.order import OrderModel
from marketplace.data.models.order_item import OrderItemModel
from marketplace.domain.errors import (
    ConcurrencyConflict,
    InvalidStateError,
    MarketplaceError,
    NotFoundError,
)
from marketplace.domain.states import (
    OrderStatus,
    FulfillmentStatus,
    ItemFulfillmentStatus,
)
from marketplace.repos.order_repo import OrderRepo
from marketplace.services.lock_service import LockService
from marketplace.services.notification_service import NotificationService
from marketplace.services.provisioning_client import ProvisioningClient
from marketplace.utils.timeutils import utcnow
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)


class ProvisioningService:
    """
    Walks the lines of a paid order and asks the partner system to create
    each license. Item state is committed per line, so a crash or a failed
    line never costs the lines that already went through, and a re-run only
    touches lines that are not fulfilled yet.
    """

    def __init__(
        self,
        db: Session,
        client: ProvisioningClient,
        lock_service: LockService,
        notifier: NotificationService | None = None,
    ):
        self.repo = OrderRepo(db)
        self.client = client
        self.locks = lock_service
        self.notifier = notifier or NotificationService()

    def process_order(self, order_id: int) -> Dict[str, Any]:
        with self.locks.hold(f"provisioning:order:{order_id}", ttl=600):
            order = self.repo.get_order(order_id)
            if order is None:
                raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
            self.repo.refresh(order)

            if order.status == OrderStatus.COMPLETED.value:
                items = self.repo.get_items(order.id)
                self.repo.rollback()
                return self._summary(order, items, [], "Order already provisioned")

            if order.status != OrderStatus.PROCESSING.value:
                raise InvalidStateError(
                    f"Order {order.order_number} is {order.status}, only processing orders are provisioned",
                    order_id=order.id,
                )
            if not order.provisioning_account_id:
                raise InvalidStateError(
                    f"Order {order.order_number} has no provisioning account",
                    order_id=order.id,
                )

            items = self.repo.get_items(order.id)
            todo = [i for i in items if i.fulfillment_status != ItemFulfillmentStatus.FULFILLED.value]
            logger.info(
                f"Provisioning order {order.order_number}: {len(todo)} of {len(items)} products to process",
                extra={"order_id": order.id},
            )

            processed = []
            for item in todo:
                self._provision_one(order, item)
                processed.append(item.id)

            self._settle(order, items)

        failed = [i for i in items if i.fulfillment_status != ItemFulfillmentStatus.FULFILLED.value]
        if failed:
            self.notifier.send_provisioning_failure(
                order.id,
                [{"order_item_id": i.id, "product_id": i.product_id, "error": i.fulfillment_error} for i in failed],
            )

        if not items:
            message = "Order has no products"
        elif not failed:
            message = "All products provisioned"
        elif len(failed) == len(items):
            message = "No products could be provisioned"
        else:
            message = f"{len(items) - len(failed)} of {len(items)} products provisioned"
        return self._summary(order, items, processed, message)

    def retry_failed_orders(self, limit: int = 50) -> List[Dict[str, Any]]:
        results = []
        for order in self.repo.find_orders_needing_provisioning(limit):
            order_id = order.id
            try:
                results.append(self.process_order(order_id))
            except MarketplaceError as e:
                logger.warning(
                    f"Retry of order {order_id} skipped: {e}",
                    extra={"order_id": order_id},
                )
        return results

    def _provision_one(self, order: OrderModel, item: OrderItemModel) -> None:
        item.fulfillment_status = ItemFulfillmentStatus.PROCESSING.value
        item.provisioning_attempts = (item.provisioning_attempts or 0) + 1
        self.repo.commit()

        try:
            result = self.client.provision_item(
                order.provisioning_account_id,
                {
                    "id": item.id,
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "product_id": item.product_id,
                    "quantity": item.quantity,
                },
            )
        except Exception as e:
            # jeden zepsuty produkt nie zatrzymuje reszty
            logger.error(
                f"Provisioning of item {item.id} (product {item.product_id}) raised: {e}",
                extra={"order_id": order.id, "order_item_id": item.id},
                exc_info=not isinstance(e, MarketplaceError),
            )
            result = {"success": False, "detail": str(e), "subscription_id": None}

        if result.get("success"):
            item.fulfillment_status = ItemFulfillmentStatus.FULFILLED.value
            item.subscription_id = result.get("subscription_id")
            item.fulfillment_error = None
            item.provisioned_at = utcnow()
            logger.info(
                f"Item {item.id} provisioned, subscription {item.subscription_id}",
                extra={"order_id": order.id, "order_item_id": item.id},
            )
        else:
            item.fulfillment_status = ItemFulfillmentStatus.FAILED.value
            item.fulfillment_error = str(result.get("detail") or "unknown error")[:1000]
            logger.warning(
                f"Item {item.id} failed provisioning: {item.fulfillment_error}",
                extra={"order_id": order.id, "order_item_id": item.id},
            )
        self.repo.commit()

    def _settle(self, order: OrderModel, items: List[OrderItemModel]) -> None:
        fulfilled = sum(1 for i in items if i.fulfillment_status == ItemFulfillmentStatus.FULFILLED.value)
        now = utcnow()

        try:
            if items and fulfilled == len(items):
                rowcount = self.repo.transition_order(
                    order_id=order.id,
                    from_status=OrderStatus.PROCESSING.value,
                    to_status=OrderStatus.COMPLETED.value,
                    extra={"fulfillment_status": FulfillmentStatus.COMPLETED.value, "updated_at": now},
                )
                if rowcount == 0:
                    raise ConcurrencyConflict("Order changed during provisioning", order_id=order.id)
            else:
                order.fulfillment_status = (
                    FulfillmentStatus.PARTIAL.value if fulfilled else FulfillmentStatus.FAILED.value
                )
                order.updated_at = now
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise
        self.repo.refresh(order)

    @staticmethod
    def _summary(
        order: OrderModel,
        items: List[OrderItemModel],
        processed: List[int],
        message: str,
    ) -> Dict[str, Any]:
        successful = sum(1 for i in items if i.fulfillment_status == ItemFulfillmentStatus.FULFILLED.value)
        return {
            "success": bool(items) and successful == len(items),
            "message": message,
            "order_id": order.id,
            "order_status": order.status,
            "fulfillment_status": order.fulfillment_status,
            "total_products": len(items),
            "successful_products": successful,
            "failed_products": len(items) - successful,
            "products_processed_this_run": len(processed),
            "product_details": [
                {
                    "order_item_id": i.id,
                    "product_id": i.product_id,
                    "product_title": i.product_title,
                    "quantity": i.quantity,
                    "status": i.fulfillment_status,
                    "error": i.fulfillment_error,
                    "subscription_id": i.subscription_id,
                    "attempts": i.provisioning_attempts,
                    "processed_this_run": i.id in processed,
                }
                for i in items
            ],
        }
