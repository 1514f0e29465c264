# marketplace/repos/order_repo.py
from datetime import datetime
from typing import List

from sqlalchemy import select, update, func
from sqlalchemy.orm import Session

from marketplace.data.models.order import OrderModel
from marketplace.data.models.order_item import OrderItemModel
from marketplace.domain.states import OrderStatus, FulfillmentStatus


class OrderRepo:
    def __init__(self, db: Session):
        self.db = db

    def add_order(self, order: OrderModel) -> OrderModel:
        self.db.add(order)
        self.db.flush()
        return order

    def get_order(self, order_id: int, for_update: bool = False) -> OrderModel | None:
        stmt = select(OrderModel).where(OrderModel.id == order_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def get_order_for_user(self, order_id: int, user_id: int) -> OrderModel | None:
        stmt = select(OrderModel).where(OrderModel.id == order_id, OrderModel.user_id == user_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def list_orders_for_user(self, user_id: int) -> List[OrderModel]:
        stmt = (
            select(OrderModel)
            .where(OrderModel.user_id == user_id)
            .order_by(OrderModel.created_at.desc(), OrderModel.id.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def get_order_by_cart(self, cart_id: int) -> OrderModel | None:
        stmt = select(OrderModel).where(OrderModel.cart_id == cart_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def order_number_exists(self, order_number: str) -> bool:
        stmt = select(func.count(OrderModel.id)).where(OrderModel.order_number == order_number)
        return self.db.execute(stmt).scalar_one() > 0

    def get_items(self, order_id: int, for_update: bool = False) -> List[OrderItemModel]:
        stmt = (
            select(OrderItemModel)
            .where(OrderItemModel.order_id == order_id)
            .order_by(OrderItemModel.id)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return list(self.db.execute(stmt).scalars().all())

    def add_item(self, item: OrderItemModel) -> OrderItemModel:
        self.db.add(item)
        return item

    def transition_order(
        self,
        order_id: int,
        from_status: str,
        to_status: str,
        extra: dict | None = None,
    ) -> int:
        values = dict(extra or {})
        values["status"] = to_status
        stmt = (
            update(OrderModel)
            .where(OrderModel.id == order_id, OrderModel.status == from_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount

    def cancel_within_window(
        self,
        order_id: int,
        cutoff: datetime,
        values: dict,
    ) -> int:
        """
        pending -> cancelled only while created_at > cutoff (cutoff = now - days_to_cancel).
        The window is part of the WHERE clause so the database decides.
        """
        values = dict(values)
        values["status"] = OrderStatus.CANCELLED.value
        stmt = (
            update(OrderModel)
            .where(
                OrderModel.id == order_id,
                OrderModel.status == OrderStatus.PENDING.value,
                OrderModel.created_at > cutoff,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount

    def find_orders_needing_provisioning(self, limit: int = 50) -> List[OrderModel]:
        stmt = (
            select(OrderModel)
            .where(
                OrderModel.status == OrderStatus.PROCESSING.value,
                OrderModel.fulfillment_status.in_(
                    [FulfillmentStatus.PARTIAL.value, FulfillmentStatus.FAILED.value]
                ),
            )
            .order_by(OrderModel.id)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def db_now(self) -> datetime:
        return self.db.execute(select(func.current_timestamp())).scalar_one()

    def refresh(self, obj):
        self.db.refresh(obj)

    def flush(self):
        self.db.flush()

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()
