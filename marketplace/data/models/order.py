from sqlalchemy import Column, Integer, String, DateTime, Numeric, Text
from sqlalchemy.orm import relationship

from marketplace.data.database import Base
from marketplace.domain.states import OrderStatus, PaymentStatus, FulfillmentStatus
from marketplace.utils.timeutils import utcnow


class OrderModel(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    order_number = Column(String(32), nullable=False, unique=True)

    user_id = Column(Integer, nullable=False, index=True)
    cart_id = Column(Integer, nullable=False, index=True)
    store_id = Column(Integer, nullable=False)
    billing_information_id = Column(Integer, nullable=False)
    payment_card_id = Column(Integer, nullable=True)
    payment_method = Column(String(50), nullable=True)
    provisioning_account_id = Column(String(64), nullable=True)

    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.UNPAID.value)
    fulfillment_status = Column(String(20), nullable=False, default=FulfillmentStatus.PENDING.value)

    currency_code = Column(String(3), nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)
    tax_amount = Column(Numeric(12, 2), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)

    transaction_reference = Column(String(100), nullable=True, index=True)
    auth_code = Column(String(50), nullable=True)
    card_type = Column(String(30), nullable=True)
    card_last_four = Column(String(4), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    cancellation_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    recovery_token = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    items = relationship(
        "OrderItemModel",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItemModel.id",
    )
