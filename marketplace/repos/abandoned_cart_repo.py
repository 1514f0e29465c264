# marketplace/repos/abandoned_cart_repo.py
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from marketplace.data.models.abandoned_cart import AbandonedCartModel
from marketplace.domain.states import AbandonedCartStatus


class AbandonedCartRepo:
    def __init__(self, db: Session):
        self.db = db

    def add_snapshot(self, snapshot: AbandonedCartModel) -> AbandonedCartModel:
        self.db.add(snapshot)
        self.db.flush()
        return snapshot

    def get_by_recovery_token(self, recovery_token: str) -> AbandonedCartModel | None:
        stmt = select(AbandonedCartModel).where(
            AbandonedCartModel.recovery_token == recovery_token
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def find_recent_for_user(self, user_id: int, since: datetime) -> AbandonedCartModel | None:
        stmt = (
            select(AbandonedCartModel)
            .where(
                AbandonedCartModel.user_id == user_id,
                AbandonedCartModel.status == AbandonedCartStatus.ABANDONED.value,
                AbandonedCartModel.abandoned_at >= since,
            )
            .order_by(AbandonedCartModel.abandoned_at.desc(), AbandonedCartModel.id.desc())
            .limit(1)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def mark_recovered(self, snapshot_id: int, order_id: int, recovered_at: datetime) -> int:
        stmt = (
            update(AbandonedCartModel)
            .where(
                AbandonedCartModel.id == snapshot_id,
                AbandonedCartModel.status == AbandonedCartStatus.ABANDONED.value,
            )
            .values(
                status=AbandonedCartStatus.RECOVERED.value,
                recovered_order_id=order_id,
                recovered_at=recovered_at,
            )
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()
