# marketplace/repos/payment_repo.py
from datetime import datetime
from typing import List

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from marketplace.data.models.payment_session import PaymentSessionModel
from marketplace.data.models.payment_response import PaymentResponseModel
from marketplace.domain.states import PaymentSessionStatus


class PaymentRepo:
    def __init__(self, db: Session):
        self.db = db

    def add_session(self, session: PaymentSessionModel) -> PaymentSessionModel:
        self.db.add(session)
        self.db.flush()
        return session

    def get_session_by_reference(self, reference: str, for_update: bool = False) -> PaymentSessionModel | None:
        stmt = select(PaymentSessionModel).where(
            PaymentSessionModel.transaction_reference == reference
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def find_sessions_by_prefix(self, base_reference: str, limit: int = 2) -> List[PaymentSessionModel]:
        # referencje zaczynajace sie od "<base>_", limit 2 wystarczy zeby wykryc niejednoznacznosc
        pattern = base_reference.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        stmt = (
            select(PaymentSessionModel)
            .where(PaymentSessionModel.transaction_reference.like(f"{pattern}\\_%", escape="\\"))
            .order_by(PaymentSessionModel.id)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def get_session_for_user(self, reference: str, user_id: int) -> PaymentSessionModel | None:
        stmt = select(PaymentSessionModel).where(
            PaymentSessionModel.transaction_reference == reference,
            PaymentSessionModel.user_id == user_id,
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_response(self, reference: str) -> PaymentResponseModel | None:
        stmt = select(PaymentResponseModel).where(
            PaymentResponseModel.transaction_reference == reference
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def add_response(self, response: PaymentResponseModel) -> PaymentResponseModel:
        self.db.add(response)
        self.db.flush()
        return response

    def expire_sessions(self, now: datetime) -> int:
        stmt = (
            update(PaymentSessionModel)
            .where(
                PaymentSessionModel.status == PaymentSessionStatus.PENDING.value,
                PaymentSessionModel.expires_at < now,
            )
            .values(status=PaymentSessionStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()
