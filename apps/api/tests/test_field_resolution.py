from __future__ import annotations

from datetime import datetime, timezone

from app.crm.fields import (
    FieldSource,
    is_blank,
    is_field_present,
    overlay,
    parse_field_key,
    references_field,
    resolve_field_value,
    split_supplied_fields,
)


def _source() -> FieldSource:
    return FieldSource(
        system={
            "email": "ada@example.com",
            "company": "   ",
            "last_activity_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
            "score": 0,
        },
        qualification={"budget": 0, "timeline": {"quarter": "Q3"}, "authority": False},
        custom={"industry": "Fintech", "tags": [], "region.code": "EMEA"},
    )


def test_resolves_qualification_custom_and_system_keys() -> None:
    source = _source()

    assert resolve_field_value(source, "email") == "ada@example.com"
    assert resolve_field_value(source, "qualification.budget") == 0
    assert resolve_field_value(source, "qualification.timeline.quarter") == "Q3"
    assert resolve_field_value(source, "custom.industry") == "Fintech"
    assert resolve_field_value(source, "customFields.industry") == "Fintech"


def test_camel_case_system_keys_are_normalised() -> None:
    source = _source()

    assert resolve_field_value(source, "lastActivityAt") == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_unknown_bare_key_falls_back_to_custom_map() -> None:
    source = _source()

    assert resolve_field_value(source, "industry") == "Fintech"
    assert resolve_field_value(source, "custom.region.code") == "EMEA"
    assert resolve_field_value(source, "qualification.missing") is None
    assert resolve_field_value(source, "nope") is None


def test_only_literal_emptiness_is_blank() -> None:
    assert is_blank(None)
    assert is_blank("")
    assert is_blank("  \t")
    assert not is_blank(0)
    assert not is_blank(False)
    assert not is_blank([])
    assert not is_blank("x")


def test_field_presence_accepts_any_alternative() -> None:
    source = _source()

    assert is_field_present(source, "qualification.budget")
    assert is_field_present(source, "qualification.authority")
    assert is_field_present(source, "custom.tags")
    assert not is_field_present(source, "company")
    assert is_field_present(source, "company||email")
    assert not is_field_present(source, "company||phone")


def test_split_supplied_fields_routes_keys_to_storage_targets() -> None:
    changes = split_supplied_fields(
        "leads",
        {
            "email": "a@b.com",
            "jobTitle": "CTO",
            "qualification.budget": 5000,
            "custom.industry": "Retail",
            "favourite_colour": "green",
            "score": 99,
        },
    )

    assert changes.system == {"email": "a@b.com", "job_title": "CTO"}
    assert changes.qualification == {"budget": 5000}
    assert changes.custom == {"industry": "Retail", "favourite_colour": "green"}
    assert changes.field_keys() == {
        "email",
        "job_title",
        "qualification.budget",
        "custom.industry",
        "custom.favourite_colour",
    }


def test_system_fields_are_module_specific() -> None:
    assert parse_field_key("opportunities", "amount").target == "system"
    assert parse_field_key("leads", "amount").target == "custom"


def test_overlay_does_not_mutate_snapshot() -> None:
    source = _source()
    merged = overlay(source, split_supplied_fields("leads", {"company": "Initech"}))

    assert resolve_field_value(merged, "company") == "Initech"
    assert resolve_field_value(source, "company") == "   "


def test_references_field_matches_canonical_and_nested_keys() -> None:
    changed = {"email", "qualification.timeline", "custom.industry"}

    assert references_field("leads", "email", changed)
    assert references_field("leads", "qualification.timeline.quarter", changed)
    assert references_field("leads", "industry", changed)
    assert references_field("leads", "phone||email", changed)
    assert not references_field("leads", "company", changed)
