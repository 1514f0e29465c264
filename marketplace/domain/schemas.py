# marketplace/domain/schemas.py
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from pydantic import BaseModel, Field, ConfigDict


class ItemIn(BaseModel):
    """Adding a product to the current cart."""

    product_id: int = Field(..., gt=0, description="Catalog product id")
    quantity: int = Field(1, gt=0, description="Units to add (> 0)")


class QuantityIn(BaseModel):
    quantity: int = Field(..., ge=1, description="New quantity, use DELETE to remove")


class MergeIn(BaseModel):
    guest_cart_token: str | None = Field(None, max_length=64)


class CartItemOut(BaseModel):
    id: int
    product_id: int
    product_title: str | None = None
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    currency_code: str
    status: str


class CartOut(BaseModel):
    cart_id: int | None
    cart_token: str | None
    user_id: int | None
    store_id: int
    status: str | None
    items: List[CartItemOut]
    items_count: int
    total_quantity: int
    subtotal: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    currency_code: str
    is_empty: bool
    expires_at: datetime | None = None


class AddItemOut(BaseModel):
    item: CartItemOut
    cart: CartOut


class CountOut(BaseModel):
    count: int


class CheckoutIn(BaseModel):
    billing_information_id: int = Field(..., gt=0)
    payment_card_id: int | None = Field(None, gt=0)
    payment_method: str | None = Field(None, max_length=50)
    provisioning_account_id: str | None = Field(None, max_length=64)
    cart_id: int | None = Field(None, gt=0)


class CancelIn(BaseModel):
    reason: str | None = Field(None, max_length=500)


class OrderItemOut(BaseModel):
    id: int
    product_id: int
    product_title: str | None = None
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    currency_code: str
    fulfillment_status: str
    fulfillment_error: str | None = None
    subscription_id: str | None = None


class OrderOut(BaseModel):
    id: int
    order_number: str
    user_id: int
    cart_id: int
    store_id: int
    status: str
    payment_status: str
    fulfillment_status: str
    currency_code: str
    subtotal: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    billing_information_id: int
    payment_card_id: int | None = None
    payment_method: str | None = None
    transaction_reference: str | None = None
    auth_code: str | None = None
    card_type: str | None = None
    card_last_four: str | None = None
    paid_at: datetime | None = None
    cancellation_reason: str | None = None
    cancelled_at: datetime | None = None
    created_at: datetime
    items: List[OrderItemOut] = []

    model_config = ConfigDict(from_attributes=True)


class PaymentStartOut(BaseModel):
    transaction_reference: str
    redirect_url: str
    form_payload: str
    amount: Decimal
    currency_code: str | None = None
    order_id: int | None = None
    expires_at: datetime


class WebhookIn(BaseModel):
    """Gateway callback, already decrypted upstream."""

    reference: str = Field(..., min_length=1, max_length=100)
    payload: Dict[str, Any] = Field(default_factory=dict)


class WebhookOut(BaseModel):
    transaction_reference: str
    status: str
    success: bool
    already_processed: bool
    order_id: int | None = None
    order_number: str | None = None
    error_message: str | None = None


class PaymentStatusOut(BaseModel):
    transaction_reference: str
    session_status: str
    status: str
    order_id: int | None = None
    amount: Decimal
    currency_code: str | None = None
    error_message: str | None = None
    processed_at: datetime | None = None


class ProductDetailOut(BaseModel):
    order_item_id: int
    product_id: int
    product_title: str | None = None
    quantity: int
    status: str
    error: str | None = None
    subscription_id: str | None = None
    attempts: int
    processed_this_run: bool


class ProvisioningOut(BaseModel):
    success: bool
    message: str
    order_id: int
    order_status: str
    fulfillment_status: str
    total_products: int
    successful_products: int
    failed_products: int
    products_processed_this_run: int
    product_details: List[ProductDetailOut]
