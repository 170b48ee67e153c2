"""
Stripe payment intents adapter.

Lists payment intents created inside the sync window, newest first, using
Stripe's ``starting_after`` cursor. The customer object is expanded so the
payer email can be resolved without extra calls.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from flask_app.models import TransactionStatus
from flask_app.sync.pipeline.normalize import clean_text, normalize_email, normalize_phone

from .base import AdapterPage, ProviderAdapter, RawRecord, SyncWindow, TransactionFields, require_settings

STRIPE_API_BASE = "https://api.stripe.com/v1"
PAGE_LIMIT = 100

STATUS_MAP = {
    "succeeded": TransactionStatus.PAID,
    "requires_payment_method": TransactionStatus.FAILED,
    "requires_action": TransactionStatus.PENDING,
    "requires_confirmation": TransactionStatus.PENDING,
    "requires_capture": TransactionStatus.PENDING,
    "processing": TransactionStatus.PENDING,
    "canceled": TransactionStatus.CANCELED,
}


class StripeAdapter(ProviderAdapter):
    name = "stripe"
    kind = "transaction"
    request_delay = 0.05
    page_limit = PAGE_LIMIT
    resource = "payment_intents"

    def __init__(self, *, secret_key: str, api_base: str = STRIPE_API_BASE, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.secret_key = secret_key
        self.api_base = api_base.rstrip("/")

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **kwargs: Any) -> "StripeAdapter":
        settings = require_settings(cls.name, config, ("STRIPE_SECRET_KEY",))
        options = {**cls.http_options(config), **kwargs}
        return cls(secret_key=settings["STRIPE_SECRET_KEY"], **options)

    def fetch_page(self, cursor: str | None, *, window: SyncWindow | None = None) -> AdapterPage:
        params: dict[str, Any] = {"limit": self.page_limit, "expand[]": "data.customer", **self.list_filters()}
        if window is not None:
            params["created[gte]"] = int(window.start.timestamp())
            params["created[lte]"] = int(window.end.timestamp())
        if cursor:
            params["starting_after"] = cursor
        return self._list(f"{self.api_base}/{self.resource}", params)

    def list_filters(self) -> dict[str, Any]:
        return {}

    def _list(self, url: str, params: Mapping[str, Any]) -> AdapterPage:
        """GET one page of a Stripe list endpoint."""
        response = self._request("GET", url, headers={"Authorization": f"Bearer {self.secret_key}"}, params=params)
        body = response.json()
        items = body.get("data") or []
        records = tuple(RawRecord(external_id=str(item["id"]), payload=item) for item in items if item.get("id"))
        has_more = bool(body.get("has_more")) and bool(records)
        next_cursor = records[-1].external_id if has_more else None
        return AdapterPage(records=records, next_cursor=next_cursor, has_more=has_more)

    def normalize_transaction(self, payload: Mapping[str, Any]) -> TransactionFields | None:
        customer = payload.get("customer")
        customer_obj: Mapping[str, Any] = customer if isinstance(customer, Mapping) else {}
        customer_id = customer_obj.get("id") if customer_obj else customer

        email = normalize_email(payload.get("receipt_email")) or normalize_email(customer_obj.get("email"))
        if email is None:
            charge = payload.get("latest_charge")
            if isinstance(charge, Mapping):
                email = normalize_email((charge.get("billing_details") or {}).get("email"))
        if email is None:
            return None

        created = payload.get("created")
        occurred_at = datetime.fromtimestamp(int(created), tz=timezone.utc) if created else None
        return TransactionFields(
            payment_key=str(payload["id"]),
            amount_cents=int(payload.get("amount") or 0),
            currency=str(payload.get("currency") or "usd").lower(),
            status=STATUS_MAP.get(str(payload.get("status") or ""), TransactionStatus.PENDING),
            email=email,
            full_name=clean_text(customer_obj.get("name")),
            phone=normalize_phone(customer_obj.get("phone")),
            customer_id=str(customer_id) if customer_id else None,
            occurred_at=occurred_at,
        )
