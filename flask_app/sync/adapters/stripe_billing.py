"""
Stripe billing adapters: subscriptions and invoices.

Both list endpoints page with Stripe's ``starting_after`` cursor and expand
the customer object, like the payment intents adapter. Subscriptions are
merged as contacts carrying a lifecycle stage and payment status;
invoices load as transactions.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from flask_app.models import LifecycleStage, TransactionStatus
from flask_app.sync.pipeline.normalize import clean_text, normalize_email, normalize_phone

from .base import ContactFields, TransactionFields
from .stripe import StripeAdapter

SUBSCRIPTION_STAGES = {
    "active": LifecycleStage.CUSTOMER,
    "past_due": LifecycleStage.CUSTOMER,
    "unpaid": LifecycleStage.CUSTOMER,
    "trialing": LifecycleStage.TRIAL,
    "canceled": LifecycleStage.CHURN,
    "incomplete_expired": LifecycleStage.CHURN,
}

INVOICE_STATUS_MAP = {
    "paid": TransactionStatus.PAID,
    "open": TransactionStatus.PENDING,
    "draft": TransactionStatus.PENDING,
    "uncollectible": TransactionStatus.FAILED,
    "void": TransactionStatus.CANCELED,
}


def _customer(payload: Mapping[str, Any]) -> tuple[Mapping[str, Any], str | None]:
    customer = payload.get("customer")
    if isinstance(customer, Mapping):
        return customer, customer.get("id")
    return {}, customer


class StripeSubscriptionsAdapter(StripeAdapter):
    name = "stripe_subscriptions"
    kind = "contact"
    resource = "subscriptions"

    def list_filters(self) -> dict[str, Any]:
        # Stripe omits canceled subscriptions unless asked
        return {"status": "all"}

    def normalize_contact(self, payload: Mapping[str, Any]) -> ContactFields:
        customer, customer_id = _customer(payload)
        status = str(payload.get("status") or "")
        return ContactFields(
            email=normalize_email(customer.get("email")),
            phone=normalize_phone(customer.get("phone")),
            full_name=clean_text(customer.get("name")),
            lifecycle_stage=SUBSCRIPTION_STAGES.get(status),
            payment_status=status or None,
            customer_id=str(customer_id) if customer_id else None,
        )


class StripeInvoicesAdapter(StripeAdapter):
    name = "stripe_invoices"
    kind = "transaction"
    resource = "invoices"

    def normalize_transaction(self, payload: Mapping[str, Any]) -> TransactionFields | None:
        """
        Map an invoice to a transaction.

        Invoices settled through a payment intent are skipped: the payment
        intents sync already records that money.
        """
        status = str(payload.get("status") or "")
        if status == "paid" and payload.get("payment_intent"):
            return None

        customer, customer_id = _customer(payload)
        email = normalize_email(payload.get("customer_email")) or normalize_email(customer.get("email"))
        if email is None:
            return None

        amount = payload.get("amount_paid") if status == "paid" else payload.get("amount_due")
        created = payload.get("created")
        return TransactionFields(
            payment_key=str(payload["id"]),
            amount_cents=int(amount or 0),
            currency=str(payload.get("currency") or "usd").lower(),
            status=INVOICE_STATUS_MAP.get(status, TransactionStatus.PENDING),
            email=email,
            full_name=clean_text(payload.get("customer_name") or customer.get("name")),
            phone=normalize_phone(payload.get("customer_phone") or customer.get("phone")),
            customer_id=str(customer_id) if customer_id else None,
            occurred_at=datetime.fromtimestamp(int(created), tz=timezone.utc) if created else None,
        )
