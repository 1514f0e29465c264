# marketplace/api/routers/carts.py
from fastapi import APIRouter, Depends, HTTPException

from marketplace.api.deps import (
    get_abandoned_cart_service,
    get_cart_service,
    get_identity,
    require_user,
)
from marketplace.domain.identity import Identity
from marketplace.domain.schemas import (
    AddItemOut,
    CartOut,
    CountOut,
    ItemIn,
    MergeIn,
    QuantityIn,
)
from marketplace.services.abandoned_cart_service import AbandonedCartService
from marketplace.services.cart_service import CartService

router = APIRouter(prefix="/carts", tags=["carts"])


@router.get("/current", response_model=CartOut)
def get_current_cart(
    identity: Identity = Depends(get_identity),
    svc: CartService = Depends(get_cart_service),
):
    return svc.get_cart_summary(identity)


@router.get("/current/count", response_model=CountOut)
def get_items_count(
    identity: Identity = Depends(get_identity),
    svc: CartService = Depends(get_cart_service),
):
    return {"count": svc.get_items_count(identity)}


@router.post("/current/items", response_model=AddItemOut, status_code=201)
def add_item(
    payload: ItemIn,
    identity: Identity = Depends(get_identity),
    svc: CartService = Depends(get_cart_service),
):
    return svc.add_item(identity, payload.product_id, payload.quantity)


@router.patch("/current/items/{item_id}", response_model=CartOut)
def update_item(
    item_id: int,
    payload: QuantityIn,
    identity: Identity = Depends(get_identity),
    svc: CartService = Depends(get_cart_service),
):
    if not svc.update_item_quantity(identity, item_id, payload.quantity):
        raise HTTPException(status_code=404, detail="Cart item not found")
    return svc.get_cart_summary(identity)


@router.delete("/current/items/{item_id}", response_model=CartOut)
def remove_item(
    item_id: int,
    identity: Identity = Depends(get_identity),
    svc: CartService = Depends(get_cart_service),
):
    if not svc.remove_item(identity, item_id):
        raise HTTPException(status_code=404, detail="Cart item not found")
    return svc.get_cart_summary(identity)


@router.delete("/current/items", response_model=CartOut)
def clear_cart(
    identity: Identity = Depends(get_identity),
    svc: CartService = Depends(get_cart_service),
):
    return svc.clear_cart(identity)


@router.post("/merge", response_model=CartOut)
def merge_on_login(
    payload: MergeIn,
    identity: Identity = Depends(get_identity),
    user_id: int = Depends(require_user),
    svc: CartService = Depends(get_cart_service),
):
    token = payload.guest_cart_token or identity.cart_token
    merged = svc.merge_cart_on_login(user_id, token)
    if merged is None:
        return svc.empty_summary(Identity(user_id=user_id, store_id=identity.store_id))
    return merged


@router.post("/recover/{recovery_token}", response_model=CartOut)
def recover_cart(
    recovery_token: str,
    identity: Identity = Depends(get_identity),
    svc: AbandonedCartService = Depends(get_abandoned_cart_service),
):
    return svc.restore(recovery_token, identity)
