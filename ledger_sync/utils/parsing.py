"""
Lenient parsing of provider payload values.

Providers send amounts as numbers, numeric strings, strings with thousands
separators, or not at all. Amounts never fail a record: anything that is not
a finite number becomes 0.0. External ids are strict: a record without a
positive integer id cannot be made idempotent and is skipped by the caller.
"""
import math
import re
from typing import Any, Optional

_NUMBER_PATTERN = re.compile(r"-?\d+(?:\.\d+)?")


def parse_amount(value: Any, default: float = 0.0) -> float:
    """Parse a monetary amount, defaulting on missing or non-numeric input."""
    if value is None or isinstance(value, bool):
        return default

    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip().replace(",", "")
        if not text:
            return default
        try:
            number = float(text)
        except ValueError:
            return default

    if math.isnan(number) or math.isinf(number):
        return default
    return number


def parse_external_id(value: Any) -> Optional[int]:
    """
    Parse a provider-assigned transaction id.

    Returns a positive int, or None when the id is missing, non-numeric,
    fractional, or not positive.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, int):
        number = value
    elif isinstance(value, float):
        if not value.is_integer():
            return None
        number = int(value)
    else:
        text = str(value).strip()
        if not text.isdigit():
            return None
        number = int(text)

    return number if number > 0 else None


def first_present(data: dict, *keys: str, default: Any = None) -> Any:
    """Return the first key of ``data`` whose value is not None or ''."""
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return default


def largest_number_in_text(text: str) -> Optional[float]:
    """
    Pull a balance out of a plain-text response.

    Some balance endpoints answer with free text (``"balance: 12,500.50 KRW"``);
    the largest number in it is the balance.
    """
    if not text:
        return None
    numbers = [float(match) for match in _NUMBER_PATTERN.findall(text.replace(",", ""))]
    if not numbers:
        return None
    return max(numbers)
