from datetime import datetime

import pytest
from pydantic import BaseModel, ValidationError

from routine_api.schemas import (
    Bit,
    DateTimeString,
    Email,
    ForeignKey,
    NullableForeignKey,
    Phone,
    Str255,
    Url,
    error_response,
    success_response,
)
from routine_api.utils import multi_items_to_dict, redact_parameters


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def test_success_envelope_shape():
    envelope = success_response({"x": 1})

    assert set(envelope) == {"success", "data", "timestamp"}
    assert envelope["success"] is True
    assert envelope["data"] == {"x": 1}
    assert envelope["timestamp"].endswith("Z")
    assert _parse_timestamp(envelope["timestamp"]).tzinfo is not None


def test_error_envelope_shape():
    envelope = error_response("Validation failed", [{"path": ["id"]}])

    assert envelope["success"] is False
    assert envelope["error"] == {"message": "Validation failed", "details": [{"path": ["id"]}]}
    _parse_timestamp(envelope["timestamp"])


def test_error_envelope_with_code_and_no_details():
    envelope = error_response("Not Found", code="NOT_FOUND")
    assert envelope["error"] == {"code": "NOT_FOUND", "message": "Not Found", "details": None}


class Contact(BaseModel):
    idOwner: ForeignKey
    idParent: NullableForeignKey
    label: Str255
    active: Bit
    email: Email
    phone: Phone
    website: Url
    seenAt: DateTimeString


def _contact(**overrides):
    data = {
        "idOwner": "12",
        "idParent": None,
        "label": "Front desk",
        "active": "1",
        "email": "desk@acme.io",
        "phone": None,
        "website": "https://acme.io/contact",
        "seenAt": "2024-05-01T10:30:00.000Z",
    }
    data.update(overrides)
    return Contact.model_validate(data)


def test_field_types_coerce_query_strings():
    contact = _contact()

    assert contact.idOwner == 12
    assert contact.active == 1
    assert contact.website == "https://acme.io/contact"


@pytest.mark.parametrize(
    "overrides",
    [
        {"idOwner": "0"},
        {"idOwner": "abc"},
        {"active": 2},
        {"label": ""},
        {"label": "x" * 256},
        {"email": "not-an-email"},
        {"phone": "1" * 21},
        {"website": "not a url"},
        {"seenAt": "2024-05-01"},
        {"seenAt": "yesterday"},
    ],
)
def test_field_types_reject_invalid_values(overrides):
    with pytest.raises(ValidationError):
        _contact(**overrides)


def test_nullable_fields_are_still_required():
    data = _contact().model_dump()
    del data["idParent"]
    with pytest.raises(ValidationError):
        Contact.model_validate(data)


def test_redact_parameters_keeps_names_and_types_only():
    redacted = redact_parameters({"idAccount": 1, "password": "hunter2", "note": None})

    assert redacted == {"idAccount": "***<int>", "password": "***<str>", "note": None}


def test_multi_items_to_dict():
    assert multi_items_to_dict([("a", "1"), ("b", "2"), ("a", "3"), ("a", "4")]) == {
        "a": ["1", "3", "4"],
        "b": "2",
    }
