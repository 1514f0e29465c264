# marketplace/data/models/cart.py
from sqlalchemy import Column, Integer, String, DateTime, Numeric, Index
from sqlalchemy.orm import relationship

from marketplace.data.database import Base
from marketplace.domain.states import CartStatus
from marketplace.utils.timeutils import utcnow


class CartModel(Base):
    __tablename__ = "carts"

    id = Column(Integer, primary_key=True)
    # guest carts have only cart_token, user carts may keep the token after merge
    user_id = Column(Integer, nullable=True, index=True)
    cart_token = Column(String(64), nullable=False, unique=True)
    store_id = Column(Integer, nullable=False)

    status = Column(String(20), nullable=False, default=CartStatus.ACTIVE.value)
    version = Column(Integer, nullable=False, default=1)

    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    currency_code = Column(String(3), nullable=False)

    recovery_token = Column(String(64), nullable=True)

    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    items = relationship(
        "CartItemModel",
        back_populates="cart",
        cascade="all, delete-orphan",
        order_by="CartItemModel.id",
    )

    __table_args__ = (
        Index("ix_carts_status_updated_at", "status", "updated_at"),
    )
