"""
GoHighLevel (LeadConnector) contacts adapter.

Offset pagination: the cursor is the number of contacts already listed and
a full page (100 contacts) means another page may follow.
"""

from __future__ import annotations

from typing import Any, Mapping

from flask_app.sync.pipeline.normalize import clean_text, join_name, normalize_email, normalize_phone

from .base import AdapterPage, ContactFields, OptIns, ProviderAdapter, RawRecord, SyncWindow, require_settings

GHL_API_BASE = "https://services.leadconnectorhq.com"
GHL_API_VERSION = "2021-07-28"
PAGE_LIMIT = 100

# GHL channel names inside ``dndSettings``
CHANNEL_KEYS = {"whatsapp": "WhatsApp", "sms": "SMS", "email": "Email"}


def _channel_blocked(payload: Mapping[str, Any], channel: str) -> bool:
    settings = payload.get("dndSettings") or {}
    entry = settings.get(CHANNEL_KEYS[channel]) or {}
    return str(entry.get("status") or "").lower() == "active"


class GHLAdapter(ProviderAdapter):
    name = "ghl"
    kind = "contact"

    def __init__(self, *, api_key: str, location_id: str, api_base: str = GHL_API_BASE, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key
        self.location_id = location_id
        self.api_base = api_base.rstrip("/")

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **kwargs: Any) -> "GHLAdapter":
        settings = require_settings(cls.name, config, ("GHL_API_KEY", "GHL_LOCATION_ID"))
        options = {**cls.http_options(config), **kwargs}
        return cls(api_key=settings["GHL_API_KEY"], location_id=settings["GHL_LOCATION_ID"], **options)

    def fetch_page(self, cursor: str | None, *, window: SyncWindow | None = None) -> AdapterPage:
        offset = int(cursor) if cursor else 0
        response = self._request(
            "GET",
            f"{self.api_base}/contacts/",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Version": GHL_API_VERSION,
                "Accept": "application/json",
            },
            params={"locationId": self.location_id, "limit": PAGE_LIMIT, "skip": offset},
        )
        contacts = response.json().get("contacts") or []
        records = tuple(
            RawRecord(external_id=str(contact["id"]), payload=contact) for contact in contacts if contact.get("id")
        )
        has_more = len(contacts) >= PAGE_LIMIT
        return AdapterPage(
            records=records,
            next_cursor=str(offset + len(contacts)) if has_more else None,
            has_more=has_more,
        )

    @staticmethod
    def normalize_contact(payload: Mapping[str, Any]) -> ContactFields:
        full_name = join_name(payload.get("firstName"), payload.get("lastName")) or clean_text(
            payload.get("name") or payload.get("contactName")
        )
        do_not_disturb = bool(payload.get("dnd"))
        opt_ins = OptIns(
            whatsapp=not do_not_disturb and not _channel_blocked(payload, "whatsapp"),
            sms=not do_not_disturb and not _channel_blocked(payload, "sms"),
            email=not do_not_disturb and not _channel_blocked(payload, "email"),
        )
        tags = tuple(sorted({str(tag).strip() for tag in payload.get("tags") or () if str(tag).strip()}))
        return ContactFields(
            email=normalize_email(payload.get("email")),
            phone=normalize_phone(payload.get("phone") or payload.get("phoneNumber")),
            full_name=full_name,
            tags=tags,
            opt_ins=opt_ins,
        )
