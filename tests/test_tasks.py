from datetime import timedelta
from decimal import Decimal

import pytest

from marketplace.celery_worker import celery_app
from marketplace.data.models.payment_session import PaymentSessionModel
from marketplace.tasks import maintenance
from marketplace.utils.timeutils import utcnow
from tests.helpers import user


@pytest.fixture
def task_sessions(monkeypatch, session_factory):
    monkeypatch.setattr(maintenance, "SessionLocal", session_factory)


def test_beat_schedule_registers_every_sweep():
    tasks = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
    assert tasks == {
        "marketplace.tasks.maintenance.mark_abandoned_carts_task",
        "marketplace.tasks.maintenance.expire_payment_sessions_task",
        "marketplace.tasks.maintenance.purge_expired_carts_task",
        "marketplace.tasks.provisioning.retry_failed_provisioning_task",
    }


def test_mark_abandoned_task(task_sessions, cart_service):
    cart_service.add_item(user(1), 1, 1)

    assert maintenance.mark_abandoned_carts_task(hours=0) == 1
    assert maintenance.mark_abandoned_carts_task(hours=0) == 0


def test_purge_task_with_nothing_expired(task_sessions, cart_service):
    cart_service.add_item(user(1), 1, 1)
    assert maintenance.purge_expired_carts_task() == 0


def test_expire_payment_sessions_task(task_sessions, db):
    now = utcnow()
    db.add(
        PaymentSessionModel(
            transaction_reference="MKT1_OLD",
            form_payload="<form/>",
            redirect_url="https://3ds.example/pay",
            user_id=1,
            cart_id=1,
            amount=Decimal("10.00"),
            status="pending",
            expires_at=now - timedelta(minutes=1),
            created_at=now - timedelta(minutes=11),
        )
    )
    db.commit()

    assert maintenance.expire_payment_sessions_task() == 1
