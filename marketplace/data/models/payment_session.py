from sqlalchemy import Column, Integer, String, DateTime, Text, Numeric

from marketplace.data.database import Base
from marketplace.domain.states import PaymentSessionStatus
from marketplace.utils.timeutils import utcnow


class PaymentSessionModel(Base):
    __tablename__ = "payment_sessions"

    id = Column(Integer, primary_key=True)
    transaction_reference = Column(String(100), nullable=False, unique=True)
    form_payload = Column(Text, nullable=False)
    redirect_url = Column(String(500), nullable=False)

    user_id = Column(Integer, nullable=False, index=True)
    cart_id = Column(Integer, nullable=False, index=True)
    order_id = Column(Integer, nullable=True)

    # checkout choices carried to the webhook
    billing_information_id = Column(Integer, nullable=True)
    payment_card_id = Column(Integer, nullable=True)
    payment_method = Column(String(50), nullable=True)
    provisioning_account_id = Column(String(64), nullable=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency_code = Column(String(3), nullable=True)

    status = Column(String(20), nullable=False, default=PaymentSessionStatus.PENDING.value)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
