"""
Request body validation for the auth endpoints.

Validators raise ValidationError with a message fit for the client; routes
turn it into a 400. Returned values are normalized (trimmed, emails
lower-cased).
"""

from __future__ import annotations

import re
from typing import Any


PHONE_RE = re.compile(r"^\+91\d{10}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
CODE_RE = re.compile(r"^\d{4}$|^\d{6}$")
PINCODE_RE = re.compile(r"^\d{6}$")


class ValidationError(ValueError):
    """400-level input problem."""


def json_body(request) -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def required_str(data: dict, field: str, message: str | None = None) -> str:
    value = data.get(field)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(message or f"{field} is required")
    return value.strip()


def optional_str(data: dict, field: str) -> str | None:
    value = data.get(field)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    return value.strip() or None


def phone(data: dict, field: str = "phone") -> str:
    value = required_str(data, field, "Phone number is required")
    if not PHONE_RE.match(value):
        raise ValidationError("Phone must be in format +91XXXXXXXXXX")
    return value


def email(data: dict, field: str = "email") -> str:
    value = required_str(data, field, "Valid email address is required").lower()
    if not EMAIL_RE.match(value):
        raise ValidationError("Invalid email address")
    return value


def otp_code(data: dict, field: str = "code") -> str:
    value = required_str(data, field, "OTP code is required")
    if not CODE_RE.match(value):
        raise ValidationError("OTP must be 4 or 6 digits")
    return value


def password(data: dict, field: str = "password") -> str:
    value = data.get(field)
    if not isinstance(value, str) or len(value) < 8:
        raise ValidationError("Password must be at least 8 characters")
    return value


def address(data: dict, field: str = "address") -> dict:
    value = data.get(field)
    if not isinstance(value, dict):
        raise ValidationError("Address is required")
    cleaned = {key: required_str(value, key, f"address.{key} is required") for key in ("street", "city", "state")}
    pincode = str(value.get("pincode", "")).strip()
    if not PINCODE_RE.match(pincode):
        raise ValidationError("address.pincode must be 6 digits")
    cleaned["pincode"] = pincode
    return cleaned


def _number(value: Any, name: str, low: float, high: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"location.{name} must be a number")
    if not low <= value <= high:
        raise ValidationError(f"location.{name} must be between {low} and {high}")
    return float(value)


def location(data: dict, field: str = "location") -> dict | None:
    value = data.get(field)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValidationError("location must be an object with lat and lng")
    return {
        "lat": _number(value.get("lat"), "lat", -90, 90),
        "lng": _number(value.get("lng"), "lng", -180, 180),
    }


def boolean(data: dict, field: str, default: bool | None = None) -> bool:
    value = data.get(field, default)
    if not isinstance(value, bool):
        raise ValidationError(f"{field} must be true or false")
    return value


def secret(data: dict, field: str, message: str | None = None) -> str:
    """Non-empty string kept exactly as sent (no trimming)."""
    value = data.get(field)
    if not isinstance(value, str) or not value:
        raise ValidationError(message or f"{field} is required")
    return value
