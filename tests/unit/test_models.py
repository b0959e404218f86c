from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from neemee_mcp.models import (
    ApiKeyRecord,
    Note,
    Notebook,
    derive_title,
    display_domain,
    extract_domain,
    extract_root_domain,
    format_timestamp,
    generate_id,
    looks_like_id,
    normalize_tags,
    parse_timestamp,
)


def test_generated_ids_have_expected_shape() -> None:
    ids = {generate_id() for _ in range(50)}
    assert len(ids) == 50
    for value in ids:
        assert len(value) == 25
        assert looks_like_id(value)


@pytest.mark.parametrize("value", ["", "cm123", "CMabcdefghijklmnopqrstuvw", "xx" + "a" * 23, "Research"])
def test_non_ids_are_rejected(value) -> None:
    assert not looks_like_id(value)


def test_timestamps_round_trip_with_z_suffix() -> None:
    moment = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    text = format_timestamp(moment)
    assert text == "2024-01-02T03:04:05Z"
    assert parse_timestamp(text) == moment
    assert parse_timestamp("2024-01-02") == datetime(2024, 1, 2, tzinfo=timezone.utc)
    assert parse_timestamp(None) is None


def test_parse_timestamp_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        parse_timestamp("yesterday")


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("GenAI, productivity", ["GenAI", "productivity"]),
        (["a", " b ", "", "a"], ["a", "b"]),
        ("solo", ["solo"]),
        (None, []),
        (",,", []),
    ],
)
def test_normalize_tags(value, expected) -> None:
    assert normalize_tags(value) == expected


def test_derive_title_uses_first_non_empty_line() -> None:
    assert derive_title("\n\n# Heading here\nbody") == "Heading here"
    assert derive_title("   \n") == "Untitled"
    assert len(derive_title("x" * 200)) == 80


def test_domain_helpers() -> None:
    url = "https://www.blog.example.co/post?id=1"
    assert extract_domain(url) == "www.blog.example.co"
    assert extract_root_domain(url) == "example.co"
    assert display_domain(url) == "blog.example.co"
    assert extract_domain("not a url") is None
    assert extract_domain(None) is None
    assert display_domain("https://example.com") == "example.com"


def test_note_to_dict_includes_derived_domain_and_notebook() -> None:
    notebook = Notebook(id="nb", tenant_id="t", name="Reading")
    note = Note(id="n", tenant_id="t", content="body", page_url="https://www.example.com/a", notebook_id="nb")
    payload = note.to_dict(notebook=notebook)
    assert payload["domain"] == "example.com"
    assert payload["notebook"] == {"id": "nb", "name": "Reading"}
    assert "tenant_id" not in payload


def test_notebook_from_dict_accepts_wire_payload() -> None:
    notebook = Notebook.from_dict(
        {"id": "nb", "name": "Ideas", "note_count": 3, "created_at": "2024-01-01T00:00:00Z"},
        tenant_id="t",
    )
    assert notebook.tenant_id == "t"
    assert notebook.note_count == 3
    assert notebook.created_at == datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_api_key_activity_follows_expiry() -> None:
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    forever = ApiKeyRecord(id="k", tenant_id="t", key_hash="h")
    expired = ApiKeyRecord(id="k", tenant_id="t", key_hash="h", expires_at=now - timedelta(seconds=1))
    future = ApiKeyRecord(id="k", tenant_id="t", key_hash="h", expires_at=now + timedelta(days=1))
    assert forever.is_active(now)
    assert not expired.is_active(now)
    assert future.is_active(now)
