"""ISBN check digits and normalization."""
import re
from typing import Optional

DIGITS = frozenset("0123456789")


def is_valid_isbn13(value) -> bool:
    """
    Check the ISBN-13 / EAN-13 check digit.

    Args:
        value: Raw decoded barcode

    Returns:
        True only for exactly 13 ASCII digits with a matching check digit
    """
    if not isinstance(value, str) or len(value) != 13:
        return False
    if not all(c in DIGITS for c in value):
        return False

    digits = [int(c) for c in value]
    total = sum(d * (1 if i % 2 == 0 else 3) for i, d in enumerate(digits[:12]))
    return (10 - total % 10) % 10 == digits[12]


def normalize_isbn(raw: Optional[str]) -> Optional[str]:
    """
    Strip separators from keyboard or scanner input like ' 978-0-13-419044-0'.

    Returns:
        Digits-only ISBN-10 or ISBN-13 (ISBN-10 may end in X), else None
    """
    if not raw:
        return None
    cleaned = re.sub(r"[\s-]", "", raw).upper()
    if re.fullmatch(r"\d{13}", cleaned) or re.fullmatch(r"\d{9}[\dX]", cleaned):
        return cleaned
    return None


def isbn10_to_isbn13(isbn10: str) -> Optional[str]:
    """Convert an ISBN-10 to its 978-prefixed ISBN-13."""
    if not re.fullmatch(r"\d{9}[\dX]", isbn10 or ""):
        return None
    body = "978" + isbn10[:9]
    total = sum(int(d) * (1 if i % 2 == 0 else 3) for i, d in enumerate(body))
    return body + str((10 - total % 10) % 10)
