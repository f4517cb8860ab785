"""Translate legacy API records to shadow-store fields and back.

Inbound mappers return *partial* field dicts: a key appears only when the
legacy record carried it, so updates never blank out data the source omitted.
"""

from __future__ import annotations

from typing import Any, Callable

from casework.core.identifiers import ExternalId
from casework.schemas.jobs import CasenotePushData, CasePushData, ConstituentPushData, EmailPushData
from casework.utils.datetime_parsing import parse_legacy_datetime
from casework.utils.normalization import normalize_email

_Converter = Callable[[Any], Any]


def _identity(value: Any) -> Any:
    return value


def _int_or_none(value: Any) -> int | None:
    parsed = ExternalId.parse(value)
    return parsed.value if parsed is not None else None


def _partial(raw: dict[str, Any], mapping: dict[str, tuple[str, _Converter]]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for legacy_key, (field, convert) in mapping.items():
        if legacy_key in raw:
            fields[field] = convert(raw[legacy_key])
    return fields


def external_id_of(raw: dict[str, Any]) -> ExternalId:
    """The legacy ``id`` of a record. Raises ValueError when missing or invalid."""
    external_id = ExternalId.parse(raw.get("id"))
    if external_id is None:
        raise ValueError("Legacy record has no id")
    return external_id


# =============================================================================
# Inbound
# =============================================================================

_CONSTITUENT_FIELDS: dict[str, tuple[str, _Converter]] = {
    "firstName": ("first_name", _identity),
    "lastName": ("last_name", _identity),
    "title": ("title", _identity),
    "organisationType": ("organisation_type", _identity),
    "geocodeLat": ("geocode_lat", _identity),
    "geocodeLng": ("geocode_lng", _identity),
}

_CASE_FIELDS: dict[str, tuple[str, _Converter]] = {
    "constituentID": ("constituent_external_id", _int_or_none),
    "caseTypeID": ("case_type_id", _int_or_none),
    "statusID": ("status_id", _int_or_none),
    "categoryTypeID": ("category_type_id", _int_or_none),
    "contactTypeID": ("contact_type_id", _int_or_none),
    "assignedToID": ("assigned_to_id", _int_or_none),
    "summary": ("summary", _identity),
    "reviewDate": ("review_date", parse_legacy_datetime),
    "updatedAt": ("last_activity_at", parse_legacy_datetime),
}

_EMAIL_FIELDS: dict[str, tuple[str, _Converter]] = {
    "caseID": ("case_external_id", _int_or_none),
    "constituentID": ("constituent_external_id", _int_or_none),
    "type": ("type", _identity),
    "subject": ("subject", _identity),
    "htmlBody": ("html_body", _identity),
    "from": ("from_address", _identity),
    "to": ("to_addresses", _identity),
    "cc": ("cc_addresses", _identity),
    "bcc": ("bcc_addresses", _identity),
    "actioned": ("actioned", bool),
    "assignedToID": ("assigned_to_id", _int_or_none),
    "scheduledAt": ("scheduled_at", parse_legacy_datetime),
    "sentAt": ("sent_at", parse_legacy_datetime),
    "receivedAt": ("received_at", parse_legacy_datetime),
}

_CASENOTE_FIELDS: dict[str, tuple[str, _Converter]] = {
    "caseID": ("case_external_id", _int_or_none),
    "type": ("note_type", _identity),
    "content": ("content", _identity),
    "note": ("content", _identity),
    "timestamp": ("noted_at", parse_legacy_datetime),
}


def constituent_fields(raw: dict[str, Any]) -> dict[str, Any]:
    return _partial(raw, _CONSTITUENT_FIELDS)


def constituent_contacts(raw: dict[str, Any]) -> list[dict[str, Any]] | None:
    """Contact details on a constituent record, or None when the key is absent."""
    if "contactDetails" not in raw:
        return None
    contacts: list[dict[str, Any]] = []
    for detail in raw.get("contactDetails") or []:
        value = detail.get("value")
        if not value:
            continue
        contact_type = detail.get("type")
        is_email = (contact_type or "").lower() == "email" or "@" in value
        contacts.append(
            {
                "external_id": _int_or_none(detail.get("id")),
                "contact_type": contact_type,
                "value": value,
                "normalized_value": normalize_email(value) if is_email else None,
            }
        )
    return contacts


def case_fields(raw: dict[str, Any]) -> dict[str, Any]:
    fields = _partial(raw, _CASE_FIELDS)
    if "last_activity_at" not in fields and "createdAt" in raw:
        fields["last_activity_at"] = parse_legacy_datetime(raw["createdAt"])
    return fields


def email_fields(raw: dict[str, Any]) -> dict[str, Any]:
    return _partial(raw, _EMAIL_FIELDS)


def casenote_fields(raw: dict[str, Any]) -> dict[str, Any]:
    return _partial(raw, _CASENOTE_FIELDS)


def reference_item_fields(kind: str, raw: dict[str, Any]) -> dict[str, Any]:
    name = raw.get("name") or ""
    fields: dict[str, Any] = {
        "name": name,
        "is_active": bool(raw.get("isActive", True)),
    }
    if kind == "statusTypes":
        closed = raw.get("isClosed")
        fields["is_closed"] = bool(closed) if closed is not None else name.strip().lower().startswith("closed")
    if kind == "caseworkers":
        fields["email"] = raw.get("email")
    extra = {key: value for key, value in raw.items() if key not in {"id", "name", "isActive", "isClosed", "email"}}
    fields["attributes"] = extra or None
    return fields


# =============================================================================
# Outbound
# =============================================================================


def _compact(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


def constituent_payload(data: ConstituentPushData) -> dict[str, Any]:
    return _compact(
        {
            "firstName": data.first_name,
            "lastName": data.last_name,
            "title": data.title,
            "organisationType": data.organisation_type,
        }
    )


def case_payload(data: CasePushData, constituent_external_id: ExternalId | None = None) -> dict[str, Any]:
    payload = {
        "caseTypeID": data.case_type_id,
        "statusID": data.status_id,
        "categoryTypeID": data.category_type_id,
        "contactTypeID": data.contact_type_id,
        "assignedToID": data.assigned_to_id,
        "summary": data.summary,
        "reviewDate": data.review_date,
    }
    if constituent_external_id is not None:
        payload["constituentID"] = constituent_external_id.value
    return _compact(payload)


def email_payload(data: EmailPushData) -> dict[str, Any]:
    return _compact(
        {
            "subject": data.subject,
            "htmlBody": data.html_body,
            "to": data.to,
            "cc": data.cc,
            "bcc": data.bcc,
            "caseID": data.case_id,
        }
    )


def casenote_payload(data: CasenotePushData) -> dict[str, Any]:
    return _compact({"type": data.type, "content": data.content})
