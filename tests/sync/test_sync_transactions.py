from sqlalchemy import func, select

from flask_app.models import ClientIdentity, LifecycleStage, Transaction, TransactionStatus, db
from flask_app.sync.adapters import TransactionFields
from flask_app.sync.pipeline.merge_engine import MergeAction
from flask_app.sync.pipeline.transactions import TransactionLoader


def _fields(**overrides):
    values = {
        "payment_key": "pi_1",
        "amount_cents": 1500,
        "currency": "usd",
        "status": TransactionStatus.PENDING,
        "email": "payer@example.com",
    }
    values.update(overrides)
    return TransactionFields(**values)


def _transaction_count():
    return db.session.execute(select(func.count()).select_from(Transaction)).scalar_one()


def test_replayed_payment_updates_the_same_row():
    loader = TransactionLoader()

    first = loader.load("stripe", _fields(), {"id": "pi_1", "status": "processing"})
    second = loader.load(
        "stripe", _fields(amount_cents=2500, status=TransactionStatus.PAID), {"id": "pi_1", "status": "succeeded"}
    )

    assert first.action is MergeAction.INSERTED
    assert first.created is True
    assert second.action is MergeAction.UPDATED
    assert second.created is False
    assert second.transaction_id == first.transaction_id
    assert _transaction_count() == 1

    db.session.expire_all()
    row = db.session.get(Transaction, first.transaction_id)
    assert row.amount_cents == 2500
    assert row.status is TransactionStatus.PAID
    assert row.raw_data == {"id": "pi_1", "status": "succeeded"}
    client = db.session.get(ClientIdentity, row.client_id)
    assert client.total_paid == 25.0
    assert client.lifecycle_stage is LifecycleStage.CUSTOMER


def test_conflicted_payer_keeps_the_linked_client():
    loader = TransactionLoader()
    first = loader.load("stripe", _fields(), {"id": "pi_1"})
    linked_client_id = db.session.get(Transaction, first.transaction_id).client_id

    db.session.add(ClientIdentity(phone="+15550109999", lifecycle_stage=LifecycleStage.LEAD))
    db.session.flush()
    second = loader.load("stripe", _fields(phone="555-010-9999", status=TransactionStatus.FAILED), {"id": "pi_1"})

    assert second.client_result.action is MergeAction.CONFLICT
    assert second.transaction_id == first.transaction_id
    db.session.expire_all()
    row = db.session.get(Transaction, first.transaction_id)
    assert row.client_id == linked_client_id
    assert row.status is TransactionStatus.FAILED


def test_dry_run_writes_no_transaction():
    result = TransactionLoader().load("paypal", _fields(payment_key="CAP-1"), {"id": "CAP-1"}, dry_run=True)

    assert result.action is MergeAction.INSERTED
    assert result.transaction_id is None
    assert _transaction_count() == 0
