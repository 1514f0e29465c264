# marketplace/repos/cart_repo.py
from datetime import datetime
from typing import List

from sqlalchemy import select, update, delete, func
from sqlalchemy.orm import Session

from marketplace.data.models.cart import CartModel
from marketplace.data.models.cart_item import CartItemModel
from marketplace.domain.states import CartStatus, CartItemStatus, CART_TRANSITIONS, ensure_transition


class CartRepo:
    """
    Explicit queries for carts and their lines. Nothing here commits,
    the calling service owns the transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    # carts
    def get_cart(self, cart_id: int, for_update: bool = False) -> CartModel | None:
        stmt = select(CartModel).where(CartModel.id == cart_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def find_active_cart_by_user(self, user_id: int, for_update: bool = False) -> CartModel | None:
        stmt = (
            select(CartModel)
            .where(CartModel.user_id == user_id, CartModel.status == CartStatus.ACTIVE.value)
            .order_by(CartModel.created_at.asc(), CartModel.id.asc())
            .limit(1)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def find_active_cart_by_token(self, cart_token: str, for_update: bool = False) -> CartModel | None:
        # gosc nie trafi w koszyk ktory ma juz usera
        stmt = select(CartModel).where(
            CartModel.cart_token == cart_token,
            CartModel.user_id.is_(None),
            CartModel.status == CartStatus.ACTIVE.value,
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def list_active_carts_by_user(self, user_id: int, for_update: bool = False) -> List[CartModel]:
        stmt = (
            select(CartModel)
            .where(CartModel.user_id == user_id, CartModel.status == CartStatus.ACTIVE.value)
            .order_by(CartModel.created_at.asc(), CartModel.id.asc())
        )
        if for_update:
            stmt = stmt.with_for_update()
        return list(self.db.execute(stmt).scalars().all())

    def token_exists(self, cart_token: str) -> bool:
        stmt = select(func.count(CartModel.id)).where(CartModel.cart_token == cart_token)
        return self.db.execute(stmt).scalar_one() > 0

    def add_cart(self, cart: CartModel) -> CartModel:
        self.db.add(cart)
        self.db.flush()
        return cart

    def update_cart_version(self, cart_id: int, old_version: int, new_data: dict) -> int:
        """UPDATE carts SET ..., version = old + 1 WHERE id = :id AND version = :old"""
        values = dict(new_data)
        values["version"] = old_version + 1
        stmt = (
            update(CartModel)
            .where(CartModel.id == cart_id, CartModel.version == old_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount

    def transition_cart(
        self,
        cart_id: int,
        from_status: str,
        to_status: str,
        extra: dict | None = None,
        expected_version: int | None = None,
    ) -> int:
        """Guarded status flip; a zero rowcount means somebody got there first."""
        # niedozwolone przejscie to blad w kodzie, nie wyscig
        ensure_transition(CART_TRANSITIONS, from_status, CartStatus(to_status), "Cart")

        conditions = [CartModel.id == cart_id, CartModel.status == from_status]
        if expected_version is not None:
            conditions.append(CartModel.version == expected_version)

        values = dict(extra or {})
        values["status"] = to_status
        values["version"] = CartModel.version + 1
        stmt = (
            update(CartModel)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount

    def find_stale_active_carts(self, cutoff: datetime, with_items: bool = True) -> List[CartModel]:
        active_items = (
            select(CartItemModel.id)
            .where(
                CartItemModel.cart_id == CartModel.id,
                CartItemModel.status == CartItemStatus.ACTIVE.value,
            )
            .exists()
        )
        stmt = select(CartModel).where(
            CartModel.status == CartStatus.ACTIVE.value,
            CartModel.updated_at < cutoff,
        )
        stmt = stmt.where(active_items if with_items else ~active_items)
        return list(self.db.execute(stmt.order_by(CartModel.id)).scalars().all())

    def find_expired_empty_carts(self, now: datetime) -> List[CartModel]:
        active_items = (
            select(CartItemModel.id)
            .where(
                CartItemModel.cart_id == CartModel.id,
                CartItemModel.status == CartItemStatus.ACTIVE.value,
            )
            .exists()
        )
        stmt = select(CartModel).where(
            CartModel.status == CartStatus.ACTIVE.value,
            CartModel.expires_at < now,
            ~active_items,
        )
        return list(self.db.execute(stmt).scalars().all())

    # items
    def get_active_items(self, cart_id: int, for_update: bool = False) -> List[CartItemModel]:
        stmt = (
            select(CartItemModel)
            .where(
                CartItemModel.cart_id == cart_id,
                CartItemModel.status == CartItemStatus.ACTIVE.value,
            )
            .order_by(CartItemModel.id)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return list(self.db.execute(stmt).scalars().all())

    def get_item(self, item_id: int, for_update: bool = False) -> CartItemModel | None:
        stmt = select(CartItemModel).where(CartItemModel.id == item_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def get_active_item_for_product(
        self, cart_id: int, product_id: int, for_update: bool = False
    ) -> CartItemModel | None:
        stmt = select(CartItemModel).where(
            CartItemModel.cart_id == cart_id,
            CartItemModel.product_id == product_id,
            CartItemModel.status == CartItemStatus.ACTIVE.value,
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def add_item(self, item: CartItemModel) -> CartItemModel:
        self.db.add(item)
        self.db.flush()
        return item

    def delete_active_items(self, cart_id: int) -> int:
        stmt = (
            delete(CartItemModel)
            .where(
                CartItemModel.cart_id == cart_id,
                CartItemModel.status == CartItemStatus.ACTIVE.value,
            )
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount

    def count_active_quantity(self, cart_id: int) -> int:
        stmt = select(func.coalesce(func.sum(CartItemModel.quantity), 0)).where(
            CartItemModel.cart_id == cart_id,
            CartItemModel.status == CartItemStatus.ACTIVE.value,
        )
        return int(self.db.execute(stmt).scalar_one())

    def flush(self):
        self.db.flush()

    def refresh(self, obj):
        self.db.refresh(obj)

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()
