from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from flask_app.models import ClientIdentity, LifecycleStage, Transaction, TransactionStatus, db
from flask_app.sync.adapters import (
    StripeInvoicesAdapter,
    StripeSubscriptionsAdapter,
    SyncWindow,
    build_adapter,
)
from flask_app.sync.pipeline.orchestrator import BatchOrchestrator, SyncRequest
from sync_fakes import FakeResponse, FakeSession

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
CUSTOMER = {"id": "cus_1", "email": "Ada@Example.com", "name": "Ada Lovelace", "phone": "555-010-2000"}


def _build(adapter_cls, responses):
    session = FakeSession(responses)
    return adapter_cls(secret_key="sk_test", session=session, sleep_fn=lambda _: None), session


def _invoice(**overrides):
    invoice = {
        "id": "in_1",
        "status": "open",
        "amount_due": 4900,
        "amount_paid": 0,
        "currency": "USD",
        "customer": CUSTOMER,
        "customer_email": None,
        "payment_intent": None,
        "created": int(NOW.timestamp()),
    }
    invoice.update(overrides)
    return invoice


def test_build_adapter_knows_the_billing_sources():
    config = {"STRIPE_SECRET_KEY": "sk_test"}

    assert isinstance(build_adapter("stripe_subscriptions", config), StripeSubscriptionsAdapter)
    assert isinstance(build_adapter("stripe_invoices", config), StripeInvoicesAdapter)


class TestStripeSubscriptionsAdapter:
    def test_lists_every_status_with_cursor(self):
        body = {"data": [{"id": "sub_1"}, {"id": "sub_2"}], "has_more": True}
        adapter, session = _build(StripeSubscriptionsAdapter, [FakeResponse(200, body)])

        page = adapter.fetch_page("sub_0")

        call = session.calls[0]
        assert call["url"] == "https://api.stripe.com/v1/subscriptions"
        assert call["params"]["status"] == "all"
        assert call["params"]["starting_after"] == "sub_0"
        assert call["params"]["expand[]"] == "data.customer"
        assert page.next_cursor == "sub_2"
        assert page.has_more is True

    def test_normalize_contact_carries_billing_state(self):
        adapter, _ = _build(StripeSubscriptionsAdapter, [])

        contact = adapter.normalize_contact({"id": "sub_1", "status": "past_due", "customer": CUSTOMER})

        assert contact.email == "ada@example.com"
        assert contact.phone == "+15550102000"
        assert contact.lifecycle_stage is LifecycleStage.CUSTOMER
        assert contact.payment_status == "past_due"
        assert contact.customer_id == "cus_1"

    def test_trialing_and_canceled_stages(self):
        adapter, _ = _build(StripeSubscriptionsAdapter, [])

        trialing = adapter.normalize_contact({"status": "trialing", "customer": CUSTOMER})
        canceled = adapter.normalize_contact({"status": "canceled", "customer": "cus_9"})

        assert trialing.lifecycle_stage is LifecycleStage.TRIAL
        assert canceled.lifecycle_stage is LifecycleStage.CHURN
        assert canceled.email is None
        assert canceled.customer_id == "cus_9"

    def test_sync_promotes_the_subscriber(self):
        body = {"data": [{"id": "sub_1", "status": "active", "customer": CUSTOMER}], "has_more": False}
        adapter, _ = _build(StripeSubscriptionsAdapter, [FakeResponse(200, body)])

        result = BatchOrchestrator(adapter).run(SyncRequest(source="stripe_subscriptions"))

        assert result.counters.inserted == 1
        client = db.session.execute(select(ClientIdentity)).scalar_one()
        assert client.lifecycle_stage is LifecycleStage.CUSTOMER
        assert client.payment_status == "active"
        assert client.stripe_customer_id == "cus_1"


class TestStripeInvoicesAdapter:
    def test_window_becomes_created_filter(self):
        adapter, session = _build(StripeInvoicesAdapter, [FakeResponse(200, {"data": [], "has_more": False})])
        window = SyncWindow(start=NOW - timedelta(days=7), end=NOW)

        page = adapter.fetch_page(None, window=window)

        call = session.calls[0]
        assert call["url"] == "https://api.stripe.com/v1/invoices"
        assert call["params"]["created[gte]"] == int(window.start.timestamp())
        assert "status" not in call["params"]
        assert page.has_more is False

    def test_open_invoice_is_a_pending_transaction(self):
        adapter, _ = _build(StripeInvoicesAdapter, [])

        fields = adapter.normalize_transaction(_invoice())

        assert fields.payment_key == "in_1"
        assert fields.amount_cents == 4900
        assert fields.currency == "usd"
        assert fields.status is TransactionStatus.PENDING
        assert fields.email == "ada@example.com"
        assert fields.customer_id == "cus_1"
        assert fields.occurred_at == NOW

    def test_uncollectible_and_void_statuses(self):
        adapter, _ = _build(StripeInvoicesAdapter, [])

        assert adapter.normalize_transaction(_invoice(status="uncollectible")).status is TransactionStatus.FAILED
        assert adapter.normalize_transaction(_invoice(status="void")).status is TransactionStatus.CANCELED

    def test_paid_invoice_settled_by_payment_intent_is_skipped(self):
        adapter, _ = _build(StripeInvoicesAdapter, [])

        assert adapter.normalize_transaction(_invoice(status="paid", payment_intent="pi_1")) is None

    def test_paid_out_of_band_invoice_counts_amount_paid(self):
        adapter, _ = _build(StripeInvoicesAdapter, [])

        fields = adapter.normalize_transaction(_invoice(status="paid", amount_paid=4500, customer_email="b@x.com"))

        assert fields.status is TransactionStatus.PAID
        assert fields.amount_cents == 4500
        assert fields.email == "b@x.com"

    def test_sync_loads_invoices_under_their_own_source(self):
        body = {"data": [_invoice(), _invoice(id="in_2", status="paid", payment_intent="pi_2")], "has_more": False}
        adapter, _ = _build(StripeInvoicesAdapter, [FakeResponse(200, body)])

        result = BatchOrchestrator(adapter).run(SyncRequest(source="stripe_invoices", mode="full"))

        assert result.counters.inserted == 1
        assert result.counters.skipped == 1
        row = db.session.execute(select(Transaction)).scalar_one()
        assert (row.source, row.payment_key) == ("stripe_invoices", "in_1")
        assert row.status is TransactionStatus.PENDING
