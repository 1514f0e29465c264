# marketplace/api/routers/orders.py
from typing import List

from fastapi import APIRouter, Depends

from marketplace.api.deps import (
    get_identity,
    get_order_service,
    get_provisioning_service,
    require_user,
)
from marketplace.domain.checkout import CheckoutParams
from marketplace.domain.identity import Identity
from marketplace.domain.schemas import CancelIn, CheckoutIn, OrderOut, ProvisioningOut
from marketplace.services.order_service import OrderService
from marketplace.services.provisioning_service import ProvisioningService

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("/", response_model=OrderOut, status_code=201)
def create_order(
    payload: CheckoutIn,
    identity: Identity = Depends(get_identity),
    svc: OrderService = Depends(get_order_service),
):
    return svc.create_from_cart(identity, CheckoutParams(**payload.model_dump()))


@router.get("/", response_model=List[OrderOut])
def list_orders(
    user_id: int = Depends(require_user),
    svc: OrderService = Depends(get_order_service),
):
    return svc.list_orders(user_id)


@router.get("/{order_id}", response_model=OrderOut)
def get_order(
    order_id: int,
    user_id: int = Depends(require_user),
    svc: OrderService = Depends(get_order_service),
):
    return svc.get_order(order_id, user_id)


@router.post("/{order_id}/cancel", response_model=OrderOut)
def cancel_order(
    order_id: int,
    payload: CancelIn,
    user_id: int = Depends(require_user),
    svc: OrderService = Depends(get_order_service),
):
    return svc.cancel(order_id, user_id, payload.reason)


@router.post("/{order_id}/provision", response_model=ProvisioningOut)
def provision_order(
    order_id: int,
    user_id: int = Depends(require_user),
    orders: OrderService = Depends(get_order_service),
    svc: ProvisioningService = Depends(get_provisioning_service),
):
    # ownership check, raises NotFound for other users' orders
    orders.get_order(order_id, user_id)
    return svc.process_order(order_id)
