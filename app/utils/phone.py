"""
Phone number standardization for debtor contact columns.

Source files carry phones as ``(415) 555-1234``, ``415.555.1234``,
``+1 415 555 1234`` or bare digits. Contacts are stored in E.164 so the same
number imported twice de-duplicates.
"""

import re
from typing import Any, Optional
import logging

logger = logging.getLogger(__name__)


def standardize_phone(
    value: Any,
    *,
    default_country_code: Optional[str] = "1",
    output_format: str = "e164",
    min_digits: int = 10,
    max_digits: int = 15,
) -> Optional[str]:
    """
    Standardize a phone number.

    Args:
        value: Phone number in any format
        default_country_code: Country code to add when a 10-digit number has none
        output_format: "e164" (+14155551234), "national" ((415) 555-1234) or "digits_only"
        min_digits: Minimum number of digits to consider valid
        max_digits: Maximum number of digits to consider valid

    Returns:
        Standardized phone string or None if invalid/empty
    """
    if value is None:
        return None

    text = str(value).strip()
    if not text:
        return None

    # Drop extensions (x123, ext 123) before counting digits
    text = re.split(r"(?:x|ext|extension)[\s.]?\d+$", text, flags=re.IGNORECASE)[0].strip()
    digits = re.sub(r"\D", "", text)

    if len(digits) < min_digits or len(digits) > max_digits:
        logger.debug(
            f"Phone number '{value}' has {len(digits)} digits, "
            f"expected between {min_digits} and {max_digits}"
        )
        return None

    country_code, local_number = _split_country_code(digits, explicit_plus=text.startswith("+"))
    if country_code is None and default_country_code and len(local_number) == 10:
        country_code = default_country_code

    if output_format == "digits_only":
        return digits
    if output_format == "national":
        return _format_local_number(local_number)
    if output_format != "e164":
        logger.warning(f"Unknown output_format '{output_format}', defaulting to e164")
    return f"+{country_code}{local_number}" if country_code else local_number


def _split_country_code(digits: str, *, explicit_plus: bool) -> tuple[Optional[str], str]:
    # North American numbers written with the leading trunk 1
    if digits.startswith("1") and len(digits) == 11:
        return "1", digits[1:]
    if len(digits) <= 10 and not explicit_plus:
        return None, digits
    # Other international numbers: assume a 1-3 digit country code
    if len(digits) >= 13:
        return digits[:3], digits[3:]
    if len(digits) >= 12:
        return digits[:2], digits[2:]
    return digits[:1], digits[1:]


def _format_local_number(local_number: str) -> str:
    if len(local_number) == 10:
        return f"({local_number[:3]}) {local_number[3:6]}-{local_number[6:]}"
    return " ".join(local_number[i:i + 3] for i in range(0, len(local_number), 3))


def validate_phone(value: Any, *, min_digits: int = 10, max_digits: int = 15) -> bool:
    """True when the value carries between ``min_digits`` and ``max_digits`` digits."""
    if value is None:
        return False
    digits = re.sub(r"\D", "", str(value))
    return min_digits <= len(digits) <= max_digits
