from sqlalchemy import Column, Integer, String, DateTime, Numeric, JSON

from marketplace.data.database import Base
from marketplace.utils.timeutils import utcnow


class PaymentResponseModel(Base):
    """Terminal gateway outcome, one row per transaction reference."""

    __tablename__ = "payment_responses"

    id = Column(Integer, primary_key=True)
    transaction_reference = Column(String(100), nullable=False, unique=True)
    payment_session_id = Column(Integer, nullable=False, index=True)
    order_id = Column(Integer, nullable=True)

    status = Column(String(20), nullable=False)
    # amount from our own records, reported_amount is what the gateway echoed
    amount = Column(Numeric(12, 2), nullable=False)
    reported_amount = Column(String(32), nullable=True)

    auth_code = Column(String(50), nullable=True)
    folio = Column(String(50), nullable=True)
    error_code = Column(String(20), nullable=True)
    error_message = Column(String(255), nullable=True)
    card_type = Column(String(30), nullable=True)
    card_last_four = Column(String(4), nullable=True)
    card_holder = Column(String(100), nullable=True)

    raw_payload = Column(JSON, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
