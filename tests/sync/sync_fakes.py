"""Scripted HTTP sessions, clocks, and adapters for sync tests."""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Sequence

import requests

from flask_app.sync.adapters import AdapterPage, GHLAdapter, RawRecord, StripeAdapter


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        json_data: Any = None,
        headers: Mapping[str, str] | None = None,
        text: str = "",
    ):
        self.status_code = status_code
        self._json = json_data if json_data is not None else {}
        self.headers = dict(headers or {})
        self.text = text

    def json(self) -> Any:
        return self._json


class FakeSession:
    """Scripted stand-in for ``requests.Session``; items may be responses or exceptions."""

    def __init__(self, responses: Iterable[Any]):
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "timeout": timeout, **kwargs})
        if not self.responses:
            raise AssertionError(f"Unexpected request {method} {url}")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class RoutedSession:
    """Answers by URL suffix so concurrent callers see stable responses."""

    def __init__(self, routes: Mapping[str, Any]):
        self.routes = dict(routes)
        self.calls: list[dict[str, Any]] = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        for suffix, handler in self.routes.items():
            if url.endswith(suffix):
                return handler(kwargs) if callable(handler) else handler
        raise AssertionError(f"No route for {url}")


class FakeClock:
    """Monotonic clock that advances a fixed step on every read."""

    def __init__(self, start: float = 0.0, step: float = 0.0):
        self.now = start
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value

    def advance(self, seconds: float) -> None:
        self.now += seconds


def ghl_contact(contact_id: str, email: str | None = None, phone: str | None = None, **extra: Any) -> dict:
    payload: dict[str, Any] = {"id": contact_id, "firstName": extra.pop("first", None), "lastName": None}
    if email is not None:
        payload["email"] = email
    if phone is not None:
        payload["phone"] = phone
    payload.update(extra)
    return payload


class FakeGHLAdapter(GHLAdapter):
    """GHL adapter serving scripted pages keyed by cursor."""

    def __init__(self, pages: Sequence[Sequence[Mapping[str, Any]]], *, fail_on: Iterable[str | None] = ()):
        super().__init__(api_key="test", location_id="loc", session=FakeSession([]), sleep_fn=lambda _: None)
        self.pages = [list(page) for page in pages]
        self.fail_on = set(fail_on)
        self.requested: list[str | None] = []

    def fetch_page(self, cursor, *, window=None):
        self.requested.append(cursor)
        if cursor in self.fail_on:
            raise requests.ConnectionError(f"boom at {cursor}")
        index = int(cursor) if cursor else 0
        contacts = self.pages[index]
        has_more = index + 1 < len(self.pages)
        return AdapterPage(
            records=tuple(RawRecord(external_id=str(item["id"]), payload=item) for item in contacts),
            next_cursor=str(index + 1) if has_more else None,
            has_more=has_more,
        )


def stripe_intent(
    intent_id: str, email: str | None, *, amount: int = 5000, status: str = "succeeded", customer: str = "cus_1"
) -> dict:
    return {
        "id": intent_id,
        "amount": amount,
        "currency": "usd",
        "status": status,
        "created": 1_700_000_000,
        "receipt_email": email,
        "customer": {"id": customer, "email": email, "name": "Pat Payer"},
    }


class FakeStripeAdapter(StripeAdapter):
    def __init__(self, pages: Sequence[Sequence[Mapping[str, Any]]]):
        super().__init__(secret_key="sk_test", session=FakeSession([]), sleep_fn=lambda _: None)
        self.pages = [list(page) for page in pages]
        self.windows = []

    def fetch_page(self, cursor, *, window=None):
        self.windows.append(window)
        index = int(cursor) if cursor else 0
        has_more = index + 1 < len(self.pages)
        return AdapterPage(
            records=tuple(RawRecord(external_id=item["id"], payload=item) for item in self.pages[index]),
            next_cursor=str(index + 1) if has_more else None,
            has_more=has_more,
        )


