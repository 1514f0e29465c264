from sqlalchemy import Column, Integer, ForeignKey, Numeric, String, DateTime, Text
from sqlalchemy.orm import relationship

from marketplace.data.database import Base
from marketplace.domain.states import ItemFulfillmentStatus


class OrderItemModel(Base):
    """Frozen copy of a cart line, only provisioning columns change after insert."""

    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)

    product_id = Column(Integer, nullable=False)
    product_title = Column(String(255), nullable=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    line_total = Column(Numeric(12, 2), nullable=False)
    currency_code = Column(String(3), nullable=False)

    fulfillment_status = Column(
        String(20), nullable=False, default=ItemFulfillmentStatus.PENDING.value
    )
    fulfillment_error = Column(Text, nullable=True)
    subscription_id = Column(String(100), nullable=True)
    provisioning_attempts = Column(Integer, nullable=False, default=0)
    provisioned_at = Column(DateTime(timezone=True), nullable=True)

    order = relationship("OrderModel", back_populates="items")
