import pytest

from flask_app.sync.adapters import CSVAdapterError, CSVContactAdapter, CSVHeaderError, OptIns
from flask_app.sync.adapters.csv_contacts import row_external_id

CONTACTS = (
    "\ufeffEmail Address,Phone Number,First Name,Last Name,Tags,Notes\n"
    "ada@example.com,555-010-2000,Ada,Lovelace,\"vip, lead\",ignored\n"
    ",,,,,\n"
    ",5550103000,Grace,,,\n"
    "bob@example.com,,Bob,,,\n"
)


def test_header_aliases_map_to_canonical_columns(write_csv):
    adapter = CSVContactAdapter(write_csv(CONTACTS))

    header = adapter.validate_header()

    assert header.raw_headers[0] == "Email Address"
    assert header.canonical_headers == ("email", "phone", "first_name", "last_name", "tags", None)


@pytest.mark.parametrize(
    "content, missing_identity, duplicates",
    [
        ("Name,Notes\nAda,x\n", True, ()),
        ("Email,E-mail,Phone\na@example.com,b@example.com,\n", False, ("email",)),
        ("", True, ()),
    ],
)
def test_invalid_headers_are_rejected(write_csv, content, missing_identity, duplicates):
    adapter = CSVContactAdapter(write_csv(content))

    with pytest.raises(CSVHeaderError) as excinfo:
        adapter.validate_header()

    assert excinfo.value.missing_identity is missing_identity
    assert excinfo.value.duplicates == duplicates


def test_pages_skip_blank_rows_and_resume_by_offset(write_csv):
    adapter = CSVContactAdapter(write_csv(CONTACTS), page_size=2)

    first = adapter.fetch_page(None)
    second = adapter.fetch_page(first.next_cursor)

    assert [record.external_id for record in first.records] == ["ada@example.com", "+15550103000"]
    assert first.has_more is True
    assert first.next_cursor == "2"
    assert [record.external_id for record in second.records] == ["bob@example.com"]
    assert second.has_more is False
    assert second.next_cursor is None
    assert "Notes" not in first.records[0].payload


def test_exactly_full_page_is_the_last_page(write_csv):
    adapter = CSVContactAdapter(write_csv("email\na@example.com\nb@example.com\n"), page_size=2)

    page = adapter.fetch_page(None)

    assert len(page.records) == 2
    assert page.has_more is False


def test_normalize_contact_row(write_csv):
    adapter = CSVContactAdapter(write_csv(CONTACTS))
    payload = adapter.fetch_page(None).records[0].payload

    fields = adapter.normalize_contact(payload)

    assert fields.email == "ada@example.com"
    assert fields.phone == "+15550102000"
    assert fields.full_name == "Ada Lovelace"
    assert fields.tags == ("lead", "vip")
    assert fields.opt_ins == OptIns(whatsapp=False, sms=False, email=True)


def test_row_external_id_falls_back_to_checksum():
    anonymous = {"full_name": "Nobody"}

    assert row_external_id({"email": " A@Example.com ", "phone": "5550102000"}) == "a@example.com"
    assert row_external_id({"email": "not-an-email", "phone": "5550102000"}) == "+15550102000"
    assert row_external_id(anonymous).startswith("row-")
    assert row_external_id(anonymous) == row_external_id(dict(anonymous))


def test_from_config_requires_a_file():
    with pytest.raises(CSVAdapterError, match="uploaded file"):
        CSVContactAdapter.from_config({})
