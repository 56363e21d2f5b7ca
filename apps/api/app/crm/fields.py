"""Dotted field-key addressing for leads and opportunities.

A field key is one of

* ``qualification.<key>`` - a value in the record's qualification map,
* ``custom.<key>`` (or the legacy ``customFields.<key>``) - a value in the
  free-form custom field map,
* anything else - a system column of the module, accepted in snake_case or
  camelCase, or failing that a bare key of the custom field map.

Reads go through an explicit :class:`FieldSource` snapshot built per module, so
that only the columns listed here are ever addressable.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Literal

from app.crm.models import CRMLead, CRMOpportunity


Module = Literal["leads", "opportunities"]
FieldTarget = Literal["system", "qualification", "custom"]

QUALIFICATION_PREFIX = "qualification"
CUSTOM_PREFIXES = ("custom", "customFields")
ALTERNATIVE_SEPARATOR = "||"

LEAD_WRITABLE_FIELDS = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "company",
    "job_title",
    "website",
    "country",
    "source",
    "last_activity_at",
)
OPPORTUNITY_WRITABLE_FIELDS = (
    "name",
    "amount",
    "currency_code",
    "expected_close_date",
    "probability",
    "source",
    "next_step",
    "last_activity_at",
)
_READ_ONLY_FIELDS = ("score", "owner_user_id", "created_at", "updated_at", "stage_entered_at")

WRITABLE_FIELDS: dict[str, tuple[str, ...]] = {
    "leads": LEAD_WRITABLE_FIELDS,
    "opportunities": OPPORTUNITY_WRITABLE_FIELDS,
}

_CAMEL_BOUNDARY_RE = re.compile(r"(?<!^)(?=[A-Z])")


@dataclass(frozen=True)
class FieldSource:
    system: dict[str, Any] = field(default_factory=dict)
    qualification: dict[str, Any] = field(default_factory=dict)
    custom: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FieldAddress:
    target: FieldTarget
    key: str


def to_snake_case(key: str) -> str:
    return _CAMEL_BOUNDARY_RE.sub("_", key).lower()


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    return isinstance(value, str) and not value.strip()


def requirement_alternatives(field_key: str) -> list[str]:
    return [item.strip() for item in field_key.split(ALTERNATIVE_SEPARATOR) if item.strip()]


def parse_field_key(module: str, field_key: str) -> FieldAddress:
    prefix, separator, rest = field_key.partition(".")
    if separator and rest:
        if prefix == QUALIFICATION_PREFIX:
            return FieldAddress("qualification", rest)
        if prefix in CUSTOM_PREFIXES:
            return FieldAddress("custom", rest)
    snake_key = to_snake_case(field_key)
    if snake_key in WRITABLE_FIELDS.get(module, ()) or snake_key in _READ_ONLY_FIELDS:
        return FieldAddress("system", snake_key)
    # unknown bare keys are stored as custom values
    return FieldAddress("custom", field_key)


def _lookup(values: dict[str, Any], key: str) -> Any:
    if key in values:
        return values[key]
    current: Any = values
    for segment in key.split("."):
        if not isinstance(current, dict) or segment not in current:
            return None
        current = current[segment]
    return current


def resolve_field_value(source: FieldSource, field_key: str) -> Any:
    prefix, separator, rest = field_key.partition(".")
    if separator and rest:
        if prefix == QUALIFICATION_PREFIX:
            return _lookup(source.qualification, rest)
        if prefix in CUSTOM_PREFIXES:
            return _lookup(source.custom, rest)
    snake_key = to_snake_case(field_key)
    if snake_key in source.system:
        return source.system[snake_key]
    return _lookup(source.custom, field_key)


def is_field_present(source: FieldSource, field_key: str) -> bool:
    return any(
        not is_blank(resolve_field_value(source, alternative))
        for alternative in requirement_alternatives(field_key)
    )


def snapshot_lead(lead: CRMLead) -> FieldSource:
    return FieldSource(
        system={
            "first_name": lead.first_name,
            "last_name": lead.last_name,
            "email": lead.email,
            "phone": lead.phone,
            "company": lead.company,
            "job_title": lead.job_title,
            "website": lead.website,
            "country": lead.country,
            "source": lead.source,
            "last_activity_at": lead.last_activity_at,
            "score": lead.score,
            "owner_user_id": lead.owner_user_id,
            "created_at": lead.created_at,
            "updated_at": lead.updated_at,
            "stage_entered_at": lead.stage_entered_at,
        },
        qualification=dict(lead.qualification or {}),
        custom=dict(lead.custom_fields or {}),
    )


def snapshot_opportunity(opportunity: CRMOpportunity) -> FieldSource:
    return FieldSource(
        system={
            "name": opportunity.name,
            "amount": opportunity.amount,
            "currency_code": opportunity.currency_code,
            "expected_close_date": opportunity.expected_close_date,
            "probability": opportunity.probability,
            "source": opportunity.source,
            "next_step": opportunity.next_step,
            "last_activity_at": opportunity.last_activity_at,
            "score": opportunity.score,
            "owner_user_id": opportunity.owner_user_id,
            "created_at": opportunity.created_at,
            "updated_at": opportunity.updated_at,
            "stage_entered_at": opportunity.stage_entered_at,
        },
        qualification=dict(opportunity.qualification or {}),
        custom=dict(opportunity.custom_fields or {}),
    )


def snapshot_record(module: str, record: CRMLead | CRMOpportunity) -> FieldSource:
    if module == "leads":
        return snapshot_lead(record)  # type: ignore[arg-type]
    return snapshot_opportunity(record)  # type: ignore[arg-type]


@dataclass
class FieldChanges:
    """Supplied values split by where they are stored on the record."""

    system: dict[str, Any] = field(default_factory=dict)
    qualification: dict[str, Any] = field(default_factory=dict)
    custom: dict[str, Any] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.system or self.qualification or self.custom)

    def field_keys(self) -> set[str]:
        keys = {canonical_key(FieldAddress("system", key)) for key in self.system}
        keys.update(canonical_key(FieldAddress("qualification", key)) for key in self.qualification)
        keys.update(canonical_key(FieldAddress("custom", key)) for key in self.custom)
        return keys


def split_supplied_fields(module: str, supplied: dict[str, Any] | None) -> FieldChanges:
    changes = FieldChanges()
    for raw_key, value in (supplied or {}).items():
        address = parse_field_key(module, raw_key)
        if address.target == "system":
            if address.key in _READ_ONLY_FIELDS:
                continue
            changes.system[address.key] = value
        elif address.target == "qualification":
            changes.qualification[address.key] = value
        else:
            changes.custom[address.key] = value
    return changes


def overlay(source: FieldSource, changes: FieldChanges) -> FieldSource:
    return FieldSource(
        system={**source.system, **changes.system},
        qualification={**source.qualification, **changes.qualification},
        custom={**source.custom, **changes.custom},
    )


def canonical_key(address: FieldAddress) -> str:
    if address.target == "system":
        return address.key
    if address.target == "qualification":
        return f"{QUALIFICATION_PREFIX}.{address.key}"
    return f"custom.{address.key}"


def references_field(module: str, field_key: str, changed_keys: set[str]) -> bool:
    """True when a rule reading ``field_key`` may see a different value after ``changed_keys``."""
    for alternative in requirement_alternatives(field_key):
        candidate = canonical_key(parse_field_key(module, alternative))
        if candidate in changed_keys:
            return True
        # qualification.budget.amount depends on a change of qualification.budget
        head = ".".join(candidate.split(".")[:2])
        if head in changed_keys:
            return True
    return False
