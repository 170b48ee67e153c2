import pytest
import requests

from flask_app.sync.adapters import (
    GHLAdapter,
    ManyChatAdapter,
    OptIns,
    ProviderConfigurationError,
    ProviderRequestError,
    build_adapter,
)
from flask_app.sync.adapters.ghl import PAGE_LIMIT
from sync_fakes import FakeResponse, FakeSession, RoutedSession


def _ghl(responses, sleeps, **kwargs):
    session = FakeSession(responses)
    adapter = GHLAdapter(api_key="key", location_id="loc", session=session, sleep_fn=sleeps.append, **kwargs)
    return adapter, session


class TestRetries:
    def test_server_errors_back_off_exponentially(self, sleeps):
        adapter, session = _ghl(
            [FakeResponse(500), FakeResponse(502), FakeResponse(200, {"contacts": []})],
            sleeps,
            backoff_seconds=0.5,
        )

        page = adapter.fetch_page(None)

        assert page.records == ()
        assert len(session.calls) == 3
        assert sleeps == [0.5, 1.0]

    def test_retry_after_header_wins_and_is_capped(self, sleeps):
        adapter, _ = _ghl(
            [
                FakeResponse(429, headers={"Retry-After": "3"}),
                FakeResponse(429, headers={"Retry-After": "600"}),
                FakeResponse(200, {"contacts": []}),
            ],
            sleeps,
        )

        adapter.fetch_page(None)

        assert sleeps == [3.0, 60.0]

    def test_connection_errors_are_retried(self, sleeps):
        adapter, session = _ghl(
            [requests.ConnectionError("reset"), FakeResponse(200, {"contacts": []})], sleeps, backoff_seconds=0.25
        )

        adapter.fetch_page(None)

        assert len(session.calls) == 2
        assert sleeps == [0.25]

    def test_client_errors_fail_immediately(self, sleeps):
        adapter, session = _ghl([FakeResponse(401, text="invalid token")], sleeps)

        with pytest.raises(ProviderRequestError) as excinfo:
            adapter.fetch_page(None)

        assert excinfo.value.status_code == 401
        assert excinfo.value.attempts == 1
        assert "invalid token" in str(excinfo.value)
        assert sleeps == []
        assert len(session.calls) == 1

    def test_exhausted_retries_raise_with_last_status(self, sleeps):
        adapter, session = _ghl(
            [FakeResponse(503)] * 3, sleeps, max_attempts=3, backoff_seconds=1, backoff_max_seconds=1.5
        )

        with pytest.raises(ProviderRequestError) as excinfo:
            adapter.fetch_page(None)

        assert excinfo.value.status_code == 503
        assert excinfo.value.attempts == 3
        assert excinfo.value.provider == "ghl"
        assert sleeps == [1.0, 1.5]
        assert len(session.calls) == 3


class TestGHLAdapter:
    def test_full_page_advances_offset(self, sleeps):
        contacts = [{"id": f"c{index}"} for index in range(PAGE_LIMIT)]
        adapter, session = _ghl([FakeResponse(200, {"contacts": contacts})], sleeps)

        page = adapter.fetch_page("200")

        assert page.has_more is True
        assert page.next_cursor == str(200 + PAGE_LIMIT)
        assert len(page.records) == PAGE_LIMIT
        call = session.calls[0]
        assert call["params"] == {"locationId": "loc", "limit": PAGE_LIMIT, "skip": 200}
        assert call["headers"]["Authorization"] == "Bearer key"
        assert call["url"].endswith("/contacts/")

    def test_short_page_ends_listing_and_drops_rows_without_id(self, sleeps):
        adapter, _ = _ghl([FakeResponse(200, {"contacts": [{"id": "c1"}, {"email": "x@example.com"}]})], sleeps)

        page = adapter.fetch_page(None)

        assert page.has_more is False
        assert page.next_cursor is None
        assert [record.external_id for record in page.records] == ["c1"]

    def test_normalize_contact(self):
        fields = GHLAdapter.normalize_contact(
            {
                "firstName": " Ada ",
                "lastName": "Lovelace",
                "email": " ADA@Example.com ",
                "phone": "(555) 010-2000",
                "tags": ["vip", " vip ", "lead", ""],
                "dndSettings": {"SMS": {"status": "active"}},
            }
        )

        assert fields.email == "ada@example.com"
        assert fields.phone == "+15550102000"
        assert fields.full_name == "Ada Lovelace"
        assert fields.tags == ("lead", "vip")
        assert fields.opt_ins == OptIns(whatsapp=True, sms=False, email=True)

    def test_global_dnd_blocks_every_channel(self):
        fields = GHLAdapter.normalize_contact({"name": "Bo", "dnd": True})

        assert fields.full_name == "Bo"
        assert fields.opt_ins == OptIns(whatsapp=False, sms=False, email=False)


class TestManyChatAdapter:
    TAGS = {"data": [{"id": 2, "name": "b"}, {"id": 1, "name": "a"}, {"id": 3, "name": "c"}, {"name": "no id"}]}
    SUBSCRIBERS = {
        1: [{"id": 10, "email": "one@example.com"}, {"id": 11}],
        2: [{"id": 11}, {"id": 12}, {"name": "anonymous"}],
        3: [],
    }

    def _adapter(self, **kwargs):
        def by_tag(kwargs):
            return FakeResponse(200, {"data": self.SUBSCRIBERS[kwargs["params"]["tag_id"]]})

        session = RoutedSession({"/fb/page/getTags": FakeResponse(200, self.TAGS), "/fb/subscriber/findByTag": by_tag})
        adapter = ManyChatAdapter(api_key="mc", session=session, sleep_fn=lambda _: None, **kwargs)
        return adapter, session

    def test_page_merges_subscribers_across_tags(self):
        adapter, _ = self._adapter(tags_per_page=2)

        page = adapter.fetch_page(None)

        assert sorted(record.external_id for record in page.records) == ["10", "11", "12"]
        assert page.has_more is True
        assert page.next_cursor == "2"

    def test_last_tag_batch_finishes(self):
        adapter, _ = self._adapter(tags_per_page=2)

        page = adapter.fetch_page("2")

        assert page.records == ()
        assert page.has_more is False

    def test_offset_past_the_tags_is_empty(self):
        adapter, session = self._adapter()

        page = adapter.fetch_page("10")

        assert page.has_more is False
        assert [call["url"] for call in session.calls] == ["https://api.manychat.com/fb/page/getTags"]

    def test_normalize_contact(self):
        fields = ManyChatAdapter.normalize_contact(
            {
                "first_name": "Grace",
                "last_name": "Hopper",
                "whatsapp_phone": "+44 20 7946 0958",
                "tags": [{"name": "buyer"}, "lead", {"name": " "}],
                "optin_whatsapp": True,
            }
        )

        assert fields.full_name == "Grace Hopper"
        assert fields.email is None
        assert fields.phone == "+442079460958"
        assert fields.tags == ("buyer", "lead")
        assert fields.opt_ins == OptIns(whatsapp=True, sms=False, email=True)


def test_build_adapter_requires_credentials():
    with pytest.raises(ProviderConfigurationError, match="GHL_API_KEY"):
        build_adapter("ghl", {"GHL_LOCATION_ID": "loc"})


def test_build_adapter_rejects_unknown_source():
    with pytest.raises(ValueError, match="Unknown sync source"):
        build_adapter("hubspot", {})


def test_build_adapter_applies_http_settings():
    adapter = build_adapter("manychat", {"MANYCHAT_API_KEY": "mc", "SYNC_HTTP_MAX_ATTEMPTS": 2})

    assert isinstance(adapter, ManyChatAdapter)
    assert adapter.max_attempts == 2
