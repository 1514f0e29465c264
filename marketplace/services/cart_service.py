# marketplace/services/cart_service.py
import secrets
from contextlib import contextmanager, ExitStack
from datetime import timedelta
from typing import Dict, Any, List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.data.models.cart import CartModel
from marketplace.data.models.cart_item import CartItemModel
from marketplace.domain.errors import (
    ConcurrencyConflict,
    InvalidStateError,
    NotFoundError,
    ValidationFailure,
)
from marketplace.domain.identity import Identity
from marketplace.domain.money import ZERO, to_money, line_total, convert
from marketplace.domain.states import CartStatus, CartItemStatus
from marketplace.repos.cart_repo import CartRepo
from marketplace.services.catalog_client import CatalogClient
from marketplace.services.lock_service import LockService
from marketplace.services.pricing_service import PricingService
from marketplace.utils.retry import conflict_retry
from marketplace.utils.settings import (
    DEFAULT_CURRENCY,
    DEFAULT_STORE_ID,
    EXCHANGE_RATES,
    GUEST_CART_TTL_DAYS,
    USER_CART_TTL_DAYS,
)
from marketplace.utils.timeutils import utcnow
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)


class CartService:
    """
    Cart store: resolves the current cart for an identity and mutates it.

    Queries (get_cart_summary, get_items_count, resolve_cart) never create a cart.
    Commands lock the cart row, change items, reprice and bump the cart version
    in one transaction; any failure rolls the whole thing back.
    """

    def __init__(
        self,
        db: Session,
        catalog_client: CatalogClient,
        lock_service: LockService,
        pricing: PricingService | None = None,
        default_store_id: int = DEFAULT_STORE_ID,
        currency: str = DEFAULT_CURRENCY,
        exchange_rates: dict | None = None,
    ):
        self.repo = CartRepo(db)
        self.catalog = catalog_client
        self.locks = lock_service
        self.pricing = pricing or PricingService()
        self.default_store_id = default_store_id
        self.currency = currency.upper()
        self.exchange_rates = EXCHANGE_RATES if exchange_rates is None else exchange_rates

    #query - odczyt
    def resolve_cart(self, identity: Identity, for_update: bool = False) -> CartModel | None:
        if identity.user_id is not None:
            return self.repo.find_active_cart_by_user(identity.user_id, for_update=for_update)
        if identity.cart_token:
            return self.repo.find_active_cart_by_token(identity.cart_token, for_update=for_update)
        return None

    def get_cart_summary(self, identity: Identity) -> Dict[str, Any]:
        cart = self.resolve_cart(identity)
        if cart is None:
            return self.empty_summary(identity)
        return self.build_summary(cart)

    def get_items_count(self, identity: Identity) -> int:
        cart = self.resolve_cart(identity)
        if cart is None:
            return 0
        return self.repo.count_active_quantity(cart.id)

    def build_summary(self, cart: CartModel) -> Dict[str, Any]:
        items = self.repo.get_active_items(cart.id)
        return {
            "cart_id": cart.id,
            "cart_token": cart.cart_token,
            "user_id": cart.user_id,
            "store_id": cart.store_id,
            "status": cart.status,
            "items": [self._item_dict(i) for i in items],
            "items_count": len(items),
            "total_quantity": sum(i.quantity for i in items),
            "subtotal": to_money(cart.subtotal),
            "tax_amount": to_money(cart.tax_amount),
            "total_amount": to_money(cart.total_amount),
            "currency_code": cart.currency_code,
            "is_empty": not items,
            "expires_at": cart.expires_at,
        }

    def empty_summary(self, identity: Identity) -> Dict[str, Any]:
        return {
            "cart_id": None,
            "cart_token": identity.cart_token,
            "user_id": identity.user_id,
            "store_id": identity.store_id or self.default_store_id,
            "status": None,
            "items": [],
            "items_count": 0,
            "total_quantity": 0,
            "subtotal": ZERO,
            "tax_amount": ZERO,
            "total_amount": ZERO,
            "currency_code": self.currency,
            "is_empty": True,
            "expires_at": None,
        }

    # commands
    def add_item(self, identity: Identity, product_id: int, quantity: int) -> Dict[str, Any]:
        quantity = self._validate_quantity(quantity)

        logger.info(f"Fetching product {product_id} from catalog")
        product = self.catalog.get_product(product_id)
        if not product.get("exists"):
            raise NotFoundError(f"Product {product_id} not found", product_id=product_id)

        # cena zawsze z katalogu, nigdy od klienta
        unit_price = convert(
            product["unit_price"],
            product.get("currency") or self.currency,
            self.currency,
            self.exchange_rates,
        )
        return self._add_item_locked(identity, product_id, quantity, unit_price, product.get("title"))

    @conflict_retry()
    def _add_item_locked(
        self,
        identity: Identity,
        product_id: int,
        quantity: int,
        unit_price,
        title: str | None,
    ) -> Dict[str, Any]:
        with self._owner_lock(identity):
            try:
                now = utcnow()
                cart = self.resolve_cart(identity, for_update=True)
                if cart is None:
                    cart = self._create_cart(identity, now)

                item = self.repo.get_active_item_for_product(cart.id, product_id, for_update=True)
                if item:
                    logger.info(
                        f"Product {product_id} already in cart {cart.id}, quantity "
                        f"{item.quantity} -> {item.quantity + quantity}",
                        extra={"cart_id": cart.id, "product_id": product_id},
                    )
                    item.quantity += quantity
                    item.unit_price = unit_price
                    item.product_title = title or item.product_title
                    item.updated_at = now
                else:
                    item = self.repo.add_item(
                        CartItemModel(
                            cart_id=cart.id,
                            product_id=product_id,
                            product_title=title,
                            quantity=quantity,
                            unit_price=unit_price,
                            total_price=line_total(quantity, unit_price),
                            currency_code=cart.currency_code,
                            status=CartItemStatus.ACTIVE.value,
                            created_at=now,
                            updated_at=now,
                        )
                    )

                self._reprice(cart, now, extend_ttl=True)
                self.repo.commit()
            except IntegrityError as e:
                self.repo.rollback()
                raise ConcurrencyConflict(
                    "Cart was modified concurrently", product_id=product_id
                ) from e
            except Exception:
                self.repo.rollback()
                raise

        logger.info(
            f"Product {product_id} added to cart {cart.id}, version {cart.version}",
            extra={"cart_id": cart.id, "product_id": product_id},
        )
        return {"item": self._item_dict(item), "cart": self.build_summary(cart)}

    def update_item_quantity(self, identity: Identity, item_id: int, quantity: int) -> bool:
        quantity = self._validate_quantity(quantity)

        with self._owner_lock(identity):
            try:
                cart = self.resolve_cart(identity, for_update=True)
                item = self.repo.get_item(item_id, for_update=True) if cart else None

                #cudzy item wyglada tak samo jak nieistniejacy
                if cart is None or item is None or item.cart_id != cart.id:
                    self.repo.rollback()
                    return False

                if item.status != CartItemStatus.ACTIVE.value:
                    raise InvalidStateError(
                        f"Cart item {item_id} was removed", item_id=item_id, cart_id=cart.id
                    )

                now = utcnow()
                item.quantity = quantity
                item.updated_at = now
                self._reprice(cart, now)
                self.repo.commit()
            except Exception:
                self.repo.rollback()
                raise

        logger.info(
            f"Cart item {item_id} quantity set to {quantity}",
            extra={"cart_id": cart.id, "item_id": item_id},
        )
        return True

    def remove_item(self, identity: Identity, item_id: int) -> bool:
        with self._owner_lock(identity):
            try:
                cart = self.resolve_cart(identity, for_update=True)
                item = self.repo.get_item(item_id, for_update=True) if cart else None

                if (
                    cart is None
                    or item is None
                    or item.cart_id != cart.id
                    or item.status != CartItemStatus.ACTIVE.value
                ):
                    self.repo.rollback()
                    return False

                now = utcnow()
                item.status = CartItemStatus.REMOVED.value
                item.removed_at = now
                item.updated_at = now
                self._reprice(cart, now)
                self.repo.commit()
            except Exception:
                self.repo.rollback()
                raise

        logger.info(f"Cart item {item_id} removed", extra={"cart_id": cart.id, "item_id": item_id})
        return True

    def clear_cart(self, identity: Identity) -> Dict[str, Any]:
        with self._owner_lock(identity):
            try:
                cart = self.resolve_cart(identity, for_update=True)
                if cart is None:
                    self.repo.rollback()
                    return self.empty_summary(identity)

                deleted = self.repo.delete_active_items(cart.id)
                self._reprice(cart, utcnow())
                self.repo.commit()
            except Exception:
                self.repo.rollback()
                raise

        logger.info(f"Cart {cart.id} cleared, {deleted} items deleted", extra={"cart_id": cart.id})
        return self.build_summary(cart)

    def merge_cart_on_login(self, user_id: int, guest_cart_token: str | None) -> Dict[str, Any] | None:
        """
        Folds the guest cart into the user's cart right after authentication.

        - no guest cart (missing token, already merged): no-op
        - user has no cart: the guest cart is adopted by the user
        - both exist: guest lines are summed into the user cart, guest cart becomes merged

        Returns the user's cart summary, or None when the user still has no cart.
        """
        keys = [f"cart-owner:user:{user_id}"]
        if guest_cart_token:
            keys.append(f"cart-owner:token:{guest_cart_token}")

        with self._locks(*keys):
            try:
                now = utcnow()
                guest = (
                    self.repo.find_active_cart_by_token(guest_cart_token, for_update=True)
                    if guest_cart_token
                    else None
                )
                user_cart = self.repo.find_active_cart_by_user(user_id, for_update=True)

                if guest is None:
                    logger.info(f"No guest cart to merge for user {user_id}")
                    target = user_cart
                elif user_cart is None:
                    rowcount = self.repo.update_cart_version(
                        cart_id=guest.id,
                        old_version=guest.version,
                        new_data={
                            "user_id": user_id,
                            "expires_at": now + timedelta(days=USER_CART_TTL_DAYS),
                            "updated_at": now,
                        },
                    )
                    if rowcount == 0:
                        raise ConcurrencyConflict("Guest cart changed during login", cart_id=guest.id)
                    self.repo.refresh(guest)
                    target = guest
                    logger.info(
                        f"Guest cart {guest.id} adopted by user {user_id}",
                        extra={"cart_id": guest.id, "user_id": user_id},
                    )
                else:
                    guest_items = self.repo.get_active_items(guest.id, for_update=True)
                    self._fold_items(guest_items, user_cart, now)
                    self._retire_cart(guest, now)
                    self._reprice(user_cart, now, extend_ttl=True)
                    target = user_cart
                    logger.info(
                        f"Guest cart {guest.id} merged into cart {user_cart.id} "
                        f"({len(guest_items)} lines)",
                        extra={"cart_id": user_cart.id, "guest_cart_id": guest.id},
                    )

                if target is not None:
                    target = self._collapse_duplicates(user_id, now) or target
                self.repo.commit()
            except IntegrityError as e:
                self.repo.rollback()
                raise ConcurrencyConflict("Cart merge raced another request", user_id=user_id) from e
            except Exception:
                self.repo.rollback()
                raise

        return self.build_summary(target) if target is not None else None

    def cleanup_user_carts(self, user_id: int) -> Dict[str, Any] | None:
        with self._locks(f"cart-owner:user:{user_id}"):
            try:
                keep = self._collapse_duplicates(user_id, utcnow())
                self.repo.commit()
            except Exception:
                self.repo.rollback()
                raise

        return self.build_summary(keep) if keep is not None else None

    # helpers
    def _collapse_duplicates(self, user_id: int, now) -> CartModel | None:
        """Keeps the cart with most lines (oldest on a tie), folds the rest into it."""
        carts = self.repo.list_active_carts_by_user(user_id, for_update=True)
        if len(carts) <= 1:
            return carts[0] if carts else None

        lines = {c.id: self.repo.get_active_items(c.id, for_update=True) for c in carts}
        # koszyki od najstarszego, sorted() jest stabilne
        keep = sorted(carts, key=lambda c: -len(lines[c.id]))[0]

        for other in carts:
            if other.id == keep.id:
                continue
            self._fold_items(lines[other.id], keep, now)
            self._retire_cart(other, now)

        self._reprice(keep, now)
        logger.warning(
            f"Collapsed {len(carts) - 1} duplicate active carts for user {user_id} into {keep.id}",
            extra={"cart_id": keep.id, "user_id": user_id},
        )
        return keep

    def _fold_items(self, source_items: List[CartItemModel], target: CartModel, now) -> None:
        for src in source_items:
            existing = self.repo.get_active_item_for_product(target.id, src.product_id, for_update=True)
            if existing:
                existing.quantity += src.quantity
                existing.updated_at = now
                src.status = CartItemStatus.REMOVED.value
                src.removed_at = now
            else:
                src.cart_id = target.id
            src.updated_at = now
            self.repo.flush()

    def _retire_cart(self, cart: CartModel, now) -> None:
        rowcount = self.repo.transition_cart(
            cart_id=cart.id,
            from_status=CartStatus.ACTIVE.value,
            to_status=CartStatus.MERGED.value,
            extra={"subtotal": ZERO, "tax_amount": ZERO, "total_amount": ZERO, "updated_at": now},
            expected_version=cart.version,
        )
        if rowcount == 0:
            raise ConcurrencyConflict("Cart changed while merging", cart_id=cart.id)

    def _reprice(self, cart: CartModel, now, extend_ttl: bool = False) -> None:
        self.repo.flush()
        items = self.repo.get_active_items(cart.id)
        totals = self.pricing.recompute(cart, items)

        new_data = dict(totals)
        new_data["updated_at"] = now
        if extend_ttl:
            days = USER_CART_TTL_DAYS if cart.user_id is not None else GUEST_CART_TTL_DAYS
            new_data["expires_at"] = now + timedelta(days=days)

        # Optimistic locking, np update set version 2 where id 1 and version 1
        rowcount = self.repo.update_cart_version(
            cart_id=cart.id,
            old_version=cart.version,
            new_data=new_data,
        )
        if rowcount == 0:
            raise ConcurrencyConflict(
                "Cart was modified by another request", cart_id=cart.id
            )
        self.repo.flush()
        self.repo.refresh(cart)

    def _create_cart(self, identity: Identity, now) -> CartModel:
        days = USER_CART_TTL_DAYS if identity.user_id is not None else GUEST_CART_TTL_DAYS
        cart = self.repo.add_cart(
            CartModel(
                user_id=identity.user_id,
                cart_token=self._new_token(),
                store_id=identity.store_id or self.default_store_id,
                status=CartStatus.ACTIVE.value,
                version=1,
                subtotal=ZERO,
                tax_amount=ZERO,
                total_amount=ZERO,
                currency_code=self.currency,
                expires_at=now + timedelta(days=days),
                created_at=now,
                updated_at=now,
            )
        )
        logger.info(
            f"Created cart {cart.id} for {'user ' + str(identity.user_id) if identity.user_id else 'guest'}",
            extra={"cart_id": cart.id},
        )
        return cart

    def _new_token(self) -> str:
        while True:
            token = secrets.token_urlsafe(32)
            if not self.repo.token_exists(token):
                return token

    @contextmanager
    def _owner_lock(self, identity: Identity):
        if identity.user_id is not None:
            keys = [f"cart-owner:user:{identity.user_id}"]
        elif identity.cart_token:
            keys = [f"cart-owner:token:{identity.cart_token}"]
        else:
            keys = []
        with self._locks(*keys):
            yield

    @contextmanager
    def _locks(self, *keys: str):
        with ExitStack() as stack:
            for key in keys:
                stack.enter_context(self.locks.hold(key))
            yield

    @staticmethod
    def _validate_quantity(quantity) -> int:
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationFailure("Quantity must be an integer", quantity=quantity)
        if quantity < 1:
            raise ValidationFailure("Quantity must be at least 1", quantity=quantity)
        return quantity

    @staticmethod
    def _item_dict(item: CartItemModel) -> Dict[str, Any]:
        return {
            "id": item.id,
            "product_id": item.product_id,
            "product_title": item.product_title,
            "quantity": item.quantity,
            "unit_price": to_money(item.unit_price),
            "total_price": to_money(item.total_price),
            "currency_code": item.currency_code,
            "status": item.status,
        }
