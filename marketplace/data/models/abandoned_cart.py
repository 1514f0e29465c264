from sqlalchemy import Column, Integer, String, DateTime, Numeric, JSON

from marketplace.data.database import Base
from marketplace.domain.states import AbandonedCartStatus
from marketplace.utils.timeutils import utcnow


class AbandonedCartModel(Base):
    __tablename__ = "abandoned_carts"

    id = Column(Integer, primary_key=True)
    cart_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    cart_token = Column(String(64), nullable=True)
    store_id = Column(Integer, nullable=False)

    recovery_token = Column(String(64), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default=AbandonedCartStatus.ABANDONED.value)

    # [{"product_id", "product_title", "quantity", "unit_price", "total_price"}]
    items = Column(JSON, nullable=False)
    items_count = Column(Integer, nullable=False, default=0)
    subtotal = Column(Numeric(12, 2), nullable=False)
    tax_amount = Column(Numeric(12, 2), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    currency_code = Column(String(3), nullable=False)

    abandoned_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    recovered_at = Column(DateTime(timezone=True), nullable=True)
    recovered_order_id = Column(Integer, nullable=True)
