"""UPC / GTIN normalization."""

import re
from typing import Optional

VALID_BARCODE_LENGTHS = (8, 12, 13, 14)

_NON_DIGITS = re.compile(r"\D")


def is_valid_barcode(digits: str) -> bool:
    """True for an all-digit string of a recognised barcode length."""
    return digits.isdigit() and len(digits) in VALID_BARCODE_LENGTHS


def normalize_upc(raw: Optional[str]) -> Optional[str]:
    """
    Strip separators from a barcode, keeping leading zeros.

    Returns:
        The digit string, or None when it is not 8, 12, 13 or 14 digits long
    """
    if not raw:
        return None
    digits = _NON_DIGITS.sub("", str(raw))
    return digits if is_valid_barcode(digits) else None


def to_canonical_upc(raw: Optional[str]) -> Optional[str]:
    """Normalize and pad 8-digit UPC-E codes to 12 digits; longer codes pass through."""
    digits = normalize_upc(raw)
    if digits is None:
        return None
    if len(digits) == 8:
        return digits.zfill(12)
    return digits
