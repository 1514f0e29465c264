from sqlalchemy import Column, Integer, ForeignKey, Numeric, String, DateTime, Index, text
from sqlalchemy.orm import relationship

from marketplace.data.database import Base
from marketplace.domain.states import CartItemStatus
from marketplace.utils.timeutils import utcnow


class CartItemModel(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True)
    cart_id = Column(Integer, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False)
    product_id = Column(Integer, nullable=False)
    product_title = Column(String(255), nullable=True)

    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    total_price = Column(Numeric(12, 2), nullable=False)
    currency_code = Column(String(3), nullable=False)

    status = Column(String(20), nullable=False, default=CartItemStatus.ACTIVE.value)
    removed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    cart = relationship("CartModel", back_populates="items")

    # jeden aktywny wiersz na produkt, usuniete zostaja do audytu
    __table_args__ = (
        Index(
            "uq_cart_items_active_product",
            "cart_id",
            "product_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )
