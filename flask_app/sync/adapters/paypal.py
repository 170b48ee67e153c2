"""
PayPal transaction search adapter.

The reporting API only accepts ranges of up to 31 days, so the sync window is
split into segments and the cursor encodes ``<segment>:<page>``. The end of
the window is held 10 minutes behind "now" because PayPal rejects ranges that
reach into the indexing delay.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from flask_app.models import TransactionStatus
from flask_app.sync.pipeline.normalize import clean_text, join_name, normalize_email

from .base import (
    AdapterPage,
    ProviderAdapter,
    ProviderRequestError,
    RawRecord,
    SyncWindow,
    TransactionFields,
    require_settings,
)

PAGE_SIZE = 100
SEGMENT_DAYS = 31
INDEXING_DELAY = timedelta(minutes=10)
MAX_LOOKBACK = timedelta(days=3 * 365)

STATUS_MAP = {
    "S": TransactionStatus.PAID,
    "SUCCESS": TransactionStatus.PAID,
    "COMPLETED": TransactionStatus.PAID,
    "D": TransactionStatus.FAILED,
    "DENIED": TransactionStatus.FAILED,
    "FAILED": TransactionStatus.FAILED,
    "R": TransactionStatus.REFUNDED,
    "REVERSED": TransactionStatus.REFUNDED,
    "REFUNDED": TransactionStatus.REFUNDED,
    "P": TransactionStatus.PENDING,
    "PENDING": TransactionStatus.PENDING,
}


def _format_date(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_cursor(cursor: str | None) -> tuple[int, int]:
    if not cursor:
        return 0, 1
    segment, _, page = cursor.partition(":")
    try:
        return max(0, int(segment)), max(1, int(page or 1))
    except ValueError as exc:
        raise ValueError(f"Invalid PayPal cursor '{cursor}'.") from exc


class PayPalAdapter(ProviderAdapter):
    name = "paypal"
    kind = "transaction"

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        api_base: str = "https://api-m.paypal.com",
        now_fn=None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_base = api_base.rstrip("/")
        self._now = now_fn or (lambda: datetime.now(timezone.utc))
        self._access_token: str | None = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **kwargs: Any) -> "PayPalAdapter":
        settings = require_settings(cls.name, config, ("PAYPAL_CLIENT_ID", "PAYPAL_CLIENT_SECRET"))
        options = {**cls.http_options(config), **kwargs}
        return cls(
            client_id=settings["PAYPAL_CLIENT_ID"],
            client_secret=settings["PAYPAL_CLIENT_SECRET"],
            api_base=config.get("PAYPAL_API_BASE") or "https://api-m.paypal.com",
            **options,
        )

    def _token(self) -> str:
        if self._access_token is None:
            response = self._request(
                "POST",
                f"{self.api_base}/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
            )
            token = response.json().get("access_token")
            if not token:
                raise ProviderRequestError("PayPal token response did not include access_token.", provider=self.name)
            self._access_token = token
        return self._access_token

    def clamp_window(self, window: SyncWindow) -> SyncWindow:
        """Hold the end behind the indexing delay and the start inside the lookback limit."""
        now = self._now()
        return SyncWindow(start=max(window.start, now - MAX_LOOKBACK), end=min(window.end, now - INDEXING_DELAY))

    def segments(self, window: SyncWindow | None) -> list[tuple[datetime, datetime]]:
        """
        Split the window into consecutive ranges PayPal accepts.

        The window is used as given so a resumed run sees the same segment
        grid its cursor was issued against.
        """
        if window is None:
            now = self._now()
            window = self.clamp_window(SyncWindow(start=now - MAX_LOOKBACK, end=now))
        start, end = window.start, window.end
        if start >= end:
            return []
        ranges: list[tuple[datetime, datetime]] = []
        cursor = start
        while cursor < end:
            segment_end = min(cursor + timedelta(days=SEGMENT_DAYS), end)
            ranges.append((cursor, segment_end))
            cursor = segment_end
        return ranges

    def fetch_page(self, cursor: str | None, *, window: SyncWindow | None = None) -> AdapterPage:
        segment_index, page = _parse_cursor(cursor)
        ranges = self.segments(window)
        if segment_index >= len(ranges):
            return AdapterPage(records=(), next_cursor=None, has_more=False)

        start, end = ranges[segment_index]
        response = self._request(
            "GET",
            f"{self.api_base}/v1/reporting/transactions",
            headers={"Authorization": f"Bearer {self._token()}", "Content-Type": "application/json"},
            params={
                "start_date": _format_date(start),
                "end_date": _format_date(end),
                "fields": "transaction_info,payer_info",
                "page_size": PAGE_SIZE,
                "page": page,
            },
        )
        body = response.json()
        details = body.get("transaction_details") or []
        records = []
        for detail in details:
            transaction_id = (detail.get("transaction_info") or {}).get("transaction_id")
            if transaction_id:
                records.append(RawRecord(external_id=str(transaction_id), payload=detail))

        total_pages = int(body.get("total_pages") or 1)
        if page < total_pages:
            next_cursor = f"{segment_index}:{page + 1}"
        elif segment_index + 1 < len(ranges):
            next_cursor = f"{segment_index + 1}:1"
        else:
            next_cursor = None
        return AdapterPage(records=tuple(records), next_cursor=next_cursor, has_more=next_cursor is not None)

    def normalize_transaction(self, payload: Mapping[str, Any]) -> TransactionFields | None:
        info = payload.get("transaction_info") or {}
        payer = payload.get("payer_info") or {}
        email = normalize_email(payer.get("email_address"))
        if email is None:
            return None

        amount = info.get("transaction_amount") or {}
        try:
            amount_cents = int(round(abs(float(amount.get("value") or 0)) * 100))
        except (TypeError, ValueError):
            amount_cents = 0
        payer_name = payer.get("payer_name") or {}
        full_name = clean_text(payer_name.get("alternate_full_name")) or join_name(
            payer_name.get("given_name"), payer_name.get("surname")
        )
        occurred_at = None
        raw_date = info.get("transaction_initiation_date")
        if raw_date:
            try:
                occurred_at = datetime.fromisoformat(str(raw_date).replace("Z", "+00:00"))
            except ValueError:
                occurred_at = None

        raw_status = str(info.get("transaction_status") or "").upper()
        return TransactionFields(
            payment_key=str(info["transaction_id"]),
            amount_cents=amount_cents,
            currency=str(amount.get("currency_code") or "USD").lower(),
            status=STATUS_MAP.get(raw_status, TransactionStatus.PENDING),
            email=email,
            full_name=full_name,
            customer_id=payer.get("account_id"),
            occurred_at=occurred_at,
        )
