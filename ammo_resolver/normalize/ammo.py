"""Ammunition attribute normalization and extraction from product text."""

import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

# (canonical caliber, pattern) - ordered so specific forms win over generic ones
CALIBER_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("9mm makarov", re.compile(r"\b9\s?mm\s*mak(?:arov)?\b|\b9\s?x\s?18\b")),
    ("380 acp", re.compile(r"\.380\b|\b380\s*(?:acp|auto)\b")),
    ("9mm", re.compile(r"\b9\s?mm\b|\b9\s?x\s?19\b|\b9mm\s*(?:luger|para(?:bellum)?)\b")),
    ("10mm", re.compile(r"\b10\s?mm\b")),
    ("40 s&w", re.compile(r"\.?\b40\s*(?:s\s?&\s?w|sw|smith\s*(?:&|and)\s*wesson)\b")),
    ("45 acp", re.compile(r"\.?\b45\s*(?:acp|auto)\b")),
    ("38 special", re.compile(r"\.?\b38\s*(?:spl|special)\b")),
    ("357 magnum", re.compile(r"\.?\b357\s*(?:mag|magnum)\b")),
    ("22 wmr", re.compile(r"\.?\b22\s*(?:wmr|mag(?:num)?)\b")),
    ("22 lr", re.compile(r"\.?\b22\s*(?:lr|long\s*rifle)\b")),
    ("5.56 nato", re.compile(r"\b5\.56(?:\s*(?:mm|nato|x\s?45(?:\s?mm)?))*\b")),
    ("223 rem", re.compile(r"\.223\b|\b223\s*rem(?:ington)?\b")),
    ("300 blackout", re.compile(r"\.?\b300\s*(?:aac\s*)?(?:blk|blackout)\b")),
    ("7.62x39", re.compile(r"\b7\.62\s?x\s?39\b")),
    ("7.62x51", re.compile(r"\b7\.62\s?x\s?51\b")),
    ("308 win", re.compile(r"\.308\b|\b308\s*win(?:chester)?\b")),
    ("6.5 creedmoor", re.compile(r"\b6\.5\s*(?:mm\s*)?creed(?:moor)?\b")),
    ("30-06 springfield", re.compile(r"\.?\b30-06\b")),
    ("12 gauge", re.compile(r"\b12\s*-?\s*(?:ga|gauge|g)\b")),
    ("20 gauge", re.compile(r"\b20\s*-?\s*(?:ga|gauge)\b")),
    ("410 bore", re.compile(r"\.?\b410\s*(?:bore|ga|gauge)?\b")),
]

GRAIN_PATTERN = re.compile(r"\b(\d{2,3})\s*-?\s*(?:gr|grs|grain|grains|gn)\b")

ROUND_COUNT_PATTERNS = [
    re.compile(
        r"\b(\d{1,3}(?:,\d{3})+|\d{1,5})\s*-?\s*"
        r"(?:rds?|rounds?|ct|count|pk|pack|shells?|cartridges?)\b"
    ),
    re.compile(r"\bbox\s+of\s+(\d{1,3}(?:,\d{3})+|\d{1,5})\b"),
    re.compile(r"\b(\d{1,5})\s*/\s*box\b"),
]

SHELL_LENGTH_PATTERN = re.compile(
    r"(?<![\d.])(2\s*-?\s*3/4|2\.75|2\s*-?\s*1/2|2\.5|3\s*-?\s*1/2|3\.5|3)"
    r"\s*(?:\"|''|”|in\b|inch(?:es)?\b)"
)

RIFLE_PISTOL_LOAD_TYPES: list[tuple[str, re.Pattern]] = [
    ("OTM", re.compile(r"\b(?:otm|bthp|open\s*tip\s*match|boat\s*tail\s*hollow\s*point)\b")),
    ("JHP", re.compile(r"\b(?:jhp|jacketed\s*hollow\s*point)\b")),
    ("HP", re.compile(r"\b(?:hp|hollow\s*point)\b")),
    ("FMJ", re.compile(r"\b(?:fmj|full[\s-]*metal[\s-]*jacket)\b")),
    ("TMJ", re.compile(r"\b(?:tmj|total\s*metal\s*jacket)\b")),
    ("SP", re.compile(r"\b(?:jsp|sp|soft\s*point)\b")),
    ("POLYMER_TIP", re.compile(r"\b(?:ballistic\s*tip|polymer\s*tip|v-?max)\b")),
    ("LRN", re.compile(r"\b(?:lrn|lead\s*round\s*nose)\b")),
    ("FRANGIBLE", re.compile(r"\bfrangible\b")),
]

SHOTGUN_LOAD_TYPES: list[tuple[str, re.Pattern]] = [
    ("SLUG", re.compile(r"\bslugs?\b")),
    ("BUCKSHOT", re.compile(r"\bbuck\s*shot\b|(?:\b0{1,3}|#[1-4]|\b[1-4])\s*buck\b")),
    ("BIRDSHOT", re.compile(r"\bbird\s*shot\b|\btarget\s*loads?\b|#\s?\d+(?:\.\d+)?\s*shot\b|\bsteel\s*shot\b")),
]

_CALIBER_CLEANUP = re.compile(r"[^\w\s.&-]")
_WHITESPACE = re.compile(r"\s+")


def extract_caliber(text: Optional[str]) -> Optional[str]:
    """Find the first known caliber mentioned in free text."""
    if not text:
        return None
    lowered = text.lower()
    for canonical, pattern in CALIBER_PATTERNS:
        if pattern.search(lowered):
            return canonical
    return None


def normalize_caliber(raw: Optional[str]) -> Optional[str]:
    """
    Normalize an explicit caliber field.

    Known calibers map onto their canonical spelling; anything else is
    lowercased and cleaned so equal spellings still compare equal.
    """
    if not raw or not raw.strip():
        return None

    known = extract_caliber(raw)
    if known:
        return known

    cleaned = _CALIBER_CLEANUP.sub(" ", raw.lower())
    cleaned = _WHITESPACE.sub(" ", cleaned).strip().lstrip(".")
    return cleaned or None


def is_shotgun_caliber(caliber_norm: Optional[str]) -> bool:
    """Shotgun shells are identified by gauge/bore rather than bullet weight."""
    if not caliber_norm:
        return False
    return "gauge" in caliber_norm or "bore" in caliber_norm


def extract_grain(text: Optional[str]) -> Optional[int]:
    """Extract bullet weight in grains (e.g. '124gr', '55 grain')."""
    if not text:
        return None
    match = GRAIN_PATTERN.search(text.lower())
    if not match:
        return None
    grain = int(match.group(1))
    return grain if grain > 0 else None


def extract_round_count(text: Optional[str]) -> Optional[int]:
    """Extract pack size (e.g. '50 rounds', '1,000rd', 'box of 20')."""
    if not text:
        return None
    lowered = text.lower()
    for pattern in ROUND_COUNT_PATTERNS:
        match = pattern.search(lowered)
        if match:
            count = int(match.group(1).replace(",", ""))
            if count > 0:
                return count
    return None


def extract_shell_length(text: Optional[str]) -> Optional[str]:
    """Extract shotgun shell length in inches as a decimal string ('2.75', '3', '3.5')."""
    if not text:
        return None
    match = SHELL_LENGTH_PATTERN.search(text.lower())
    if not match:
        return None

    value = match.group(1).replace(" ", "").replace("-", "")
    if value in ("23/4", "2.75"):
        return "2.75"
    if value in ("21/2", "2.5"):
        return "2.5"
    if value in ("31/2", "3.5"):
        return "3.5"
    return "3"


def extract_load_type(text: Optional[str], shotgun: bool = False) -> Optional[str]:
    """Extract the projectile/load type; shotgun shells use their own vocabulary."""
    if not text:
        return None
    lowered = text.lower()
    patterns = SHOTGUN_LOAD_TYPES if shotgun else RIFLE_PISTOL_LOAD_TYPES
    for load_type, pattern in patterns:
        if pattern.search(lowered):
            return load_type
    return None


def coerce_positive_int(value) -> Optional[int]:
    """Accept ints or numeric strings from feeds; anything non-positive is missing."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(round(value)) if value > 0 else None
    stripped = re.sub(r"[^0-9.]", "", str(value))
    if not stripped:
        return None
    try:
        parsed = float(stripped)
    except ValueError:
        logger.debug("Unparseable numeric field: %r", value)
        return None
    return int(round(parsed)) if parsed > 0 else None
