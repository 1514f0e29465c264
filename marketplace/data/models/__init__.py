# import every model so SQLAlchemy registers them on Base.metadata

from marketplace.data.models.cart import CartModel
from marketplace.data.models.cart_item import CartItemModel
from marketplace.data.models.order import OrderModel
from marketplace.data.models.order_item import OrderItemModel
from marketplace.data.models.payment_session import PaymentSessionModel
from marketplace.data.models.payment_response import PaymentResponseModel
from marketplace.data.models.abandoned_cart import AbandonedCartModel
from marketplace.data.models.billing import BillingInformationModel, PaymentCardModel

__all__ = [
    "CartModel",
    "CartItemModel",
    "OrderModel",
    "OrderItemModel",
    "PaymentSessionModel",
    "PaymentResponseModel",
    "AbandonedCartModel",
    "BillingInformationModel",
    "PaymentCardModel",
]
