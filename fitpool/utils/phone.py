"""Mobile number normalization shared by registration and delivery."""

from __future__ import annotations

import re


_NON_DIGITS = re.compile(r"\D+")


class InvalidMobileNumberError(ValueError):
    """Raised when a value does not contain a usable mobile number."""


def normalize_mobile_number(value: str) -> str:
    """Return the last 10 digits used as the stored identity of a number."""
    digits = _NON_DIGITS.sub("", value or "")
    if len(digits) < 10:
        raise InvalidMobileNumberError(f"mobile number must contain at least 10 digits: {value!r}")
    return digits[-10:]


def to_delivery_address(mobile_number: str, country_code: str) -> str:
    """Prefix a stored 10-digit number with the country code for messaging APIs."""
    digits = _NON_DIGITS.sub("", mobile_number or "")
    if len(digits) > 10:
        return digits
    return f"{country_code}{digits}"
