"""
ManyChat subscribers adapter.

ManyChat has no "list all subscribers" endpoint, so the adapter enumerates
every tag and lists the subscribers carrying it. One page covers
``tags_per_page`` tags fetched in parallel (bounded by the rate limiter);
subscribers seen under several tags are returned once. The cursor is the
offset of the next tag.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Any, Mapping

from flask_app.sync.pipeline.normalize import clean_text, join_name, normalize_email, normalize_phone

from .base import AdapterPage, ContactFields, OptIns, ProviderAdapter, RawRecord, SyncWindow, require_settings

MANYCHAT_API_BASE = "https://api.manychat.com"


class ManyChatAdapter(ProviderAdapter):
    name = "manychat"
    kind = "contact"
    request_delay = 0.1

    def __init__(
        self,
        *,
        api_key: str,
        tags_per_page: int = 5,
        api_base: str = MANYCHAT_API_BASE,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key
        self.tags_per_page = max(1, int(tags_per_page))
        self.api_base = api_base.rstrip("/")

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **kwargs: Any) -> "ManyChatAdapter":
        settings = require_settings(cls.name, config, ("MANYCHAT_API_KEY",))
        options = {**cls.http_options(config), **kwargs}
        return cls(
            api_key=settings["MANYCHAT_API_KEY"],
            tags_per_page=config.get("MANYCHAT_TAGS_PER_PAGE", 5),
            **options,
        )

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}

    def list_tags(self) -> list[Mapping[str, Any]]:
        response = self._request("GET", f"{self.api_base}/fb/page/getTags", headers=self._headers)
        tags = response.json().get("data") or []
        # Stable order keeps tag offsets meaningful across invocations
        return sorted((tag for tag in tags if tag.get("id") is not None), key=lambda tag: str(tag["id"]))

    def list_subscribers_for_tag(self, tag_id: Any) -> list[Mapping[str, Any]]:
        response = self._request(
            "GET",
            f"{self.api_base}/fb/subscriber/findByTag",
            headers=self._headers,
            params={"tag_id": tag_id},
        )
        return list(response.json().get("data") or [])

    def fetch_page(self, cursor: str | None, *, window: SyncWindow | None = None) -> AdapterPage:
        offset = int(cursor) if cursor else 0
        tags = self.list_tags()
        batch = tags[offset : offset + self.tags_per_page]
        if not batch:
            return AdapterPage(records=(), next_cursor=None, has_more=False)

        with ThreadPoolExecutor(max_workers=self.rate_limiter.max_concurrency) as executor:
            results = list(executor.map(lambda tag: self.list_subscribers_for_tag(tag["id"]), batch))

        merged: dict[str, Mapping[str, Any]] = {}
        for subscribers in results:
            for subscriber in subscribers:
                subscriber_id = subscriber.get("id")
                if subscriber_id is None:
                    continue
                merged.setdefault(str(subscriber_id), subscriber)

        next_offset = offset + len(batch)
        has_more = next_offset < len(tags)
        return AdapterPage(
            records=tuple(RawRecord(external_id=key, payload=value) for key, value in merged.items()),
            next_cursor=str(next_offset) if has_more else None,
            has_more=has_more,
        )

    @staticmethod
    def normalize_contact(payload: Mapping[str, Any]) -> ContactFields:
        full_name = join_name(payload.get("first_name"), payload.get("last_name")) or clean_text(payload.get("name"))
        tags = tuple(
            sorted(
                {
                    str(tag.get("name") if isinstance(tag, Mapping) else tag).strip()
                    for tag in payload.get("tags") or ()
                }
                - {""}
            )
        )
        return ContactFields(
            email=normalize_email(payload.get("email")),
            phone=normalize_phone(payload.get("phone") or payload.get("whatsapp_phone")),
            full_name=full_name,
            tags=tags,
            opt_ins=OptIns(
                whatsapp=payload.get("optin_whatsapp") is True,
                sms=payload.get("optin_sms") is True,
                email=payload.get("optin_email") is not False,
            ),
        )
