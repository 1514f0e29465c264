# billing information and saved payment cards, owned by users of the identity service
from sqlalchemy import Column, Integer, String, Boolean, DateTime

from marketplace.data.database import Base
from marketplace.utils.timeutils import utcnow


class BillingInformationModel(Base):
    __tablename__ = "billing_information"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    legal_name = Column(String(255), nullable=False)
    tax_id = Column(String(20), nullable=False)
    email = Column(String(255), nullable=True)
    postal_code = Column(String(10), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class PaymentCardModel(Base):
    __tablename__ = "payment_cards"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    brand = Column(String(30), nullable=True)
    last_four = Column(String(4), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
