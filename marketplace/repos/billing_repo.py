# marketplace/repos/billing_repo.py
from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace.data.models.billing import BillingInformationModel, PaymentCardModel


class BillingRepo:
    """Read-only ownership checks used at checkout."""

    def __init__(self, db: Session):
        self.db = db

    def find_billing_information(self, billing_id: int) -> BillingInformationModel | None:
        return self.db.get(BillingInformationModel, billing_id)

    def billing_belongs_to(self, user_id: int, billing_id: int) -> bool:
        stmt = select(BillingInformationModel.id).where(
            BillingInformationModel.id == billing_id,
            BillingInformationModel.user_id == user_id,
        )
        return self.db.execute(stmt).first() is not None

    def find_payment_card(self, card_id: int) -> PaymentCardModel | None:
        return self.db.get(PaymentCardModel, card_id)

    def card_belongs_to(self, user_id: int, card_id: int) -> bool:
        stmt = select(PaymentCardModel.id).where(
            PaymentCardModel.id == card_id,
            PaymentCardModel.user_id == user_id,
            PaymentCardModel.is_active.is_(True),
        )
        return self.db.execute(stmt).first() is not None
