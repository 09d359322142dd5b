# ---------------------------------------------------------------------------
# schemas.py
#
# Pydantic field types and the response envelope.
#
# Field types are the building blocks for request schemas handed to the CRUD
# pipeline. They validate in lax mode, so query-string values coerce
# ("5" -> 5) the same way JSON values do.
#
# Every response body is an envelope:
#   {"success": true,  "data": ...,                           "timestamp": ...}
#   {"success": false, "error": {code, message, details},     "timestamp": ...}
# The helpers below are pure apart from reading the clock.
# ---------------------------------------------------------------------------

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Optional

from pydantic import AfterValidator, AnyUrl, BaseModel, EmailStr, Field, StringConstraints, TypeAdapter

from .utils import utc_now_iso

# ---------------------------------------------------------------------------
# Field types
# ---------------------------------------------------------------------------


def _max_length(limit: int):
    def check(value: str) -> str:
        if len(value) > limit:
            raise ValueError(f"String should have at most {limit} characters")
        return value

    return check


def _iso_datetime(value: str) -> str:
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValueError("Invalid ISO-8601 datetime") from exc
    if "T" not in value:
        raise ValueError("Invalid ISO-8601 datetime")
    return value


_url_adapter = TypeAdapter(AnyUrl)


def _url(value: str) -> str:
    _url_adapter.validate_python(value)
    return value


Str255 = Annotated[str, StringConstraints(min_length=1, max_length=255)]
NullableStr255 = Optional[Annotated[str, StringConstraints(max_length=255)]]
Name = Annotated[str, StringConstraints(min_length=1, max_length=100)]
NullableDescription = Optional[Annotated[str, StringConstraints(max_length=500)]]

# Positive integer id; "12" from a path or query string coerces to 12.
ForeignKey = Annotated[int, Field(gt=0)]
NullableForeignKey = Optional[ForeignKey]

# 0/1 flag as stored in BIT columns.
Bit = Annotated[int, Field(ge=0, le=1)]

DateTimeString = Annotated[str, AfterValidator(_iso_datetime)]
Email = Annotated[EmailStr, AfterValidator(_max_length(255))]
Phone = Optional[Annotated[str, StringConstraints(max_length=20)]]
Url = Optional[Annotated[str, StringConstraints(max_length=500), AfterValidator(_url)]]


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class ErrorBody(BaseModel):
    code: Optional[str] = None
    message: str
    details: Any = None


class SuccessEnvelope(BaseModel):
    success: bool = True
    data: Any = None
    timestamp: str


class ErrorEnvelope(BaseModel):
    success: bool = False
    error: ErrorBody
    timestamp: str


class HealthOut(BaseModel):
    status: str
    timestamp: str


def success_response(data: Any) -> dict:
    """Wrap `data` in the success envelope."""
    return {"success": True, "data": data, "timestamp": utc_now_iso()}


def error_response(message: str, details: Any = None, code: Optional[str] = None) -> dict:
    """Wrap an error in the failure envelope. `code` is included when given."""
    error: dict = {"message": message, "details": details}
    if code is not None:
        error = {"code": code, **error}
    return {"success": False, "error": error, "timestamp": utc_now_iso()}
