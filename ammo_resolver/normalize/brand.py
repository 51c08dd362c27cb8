"""Brand normalization and brand-alias validation rules.

Shared between the resolver and the external alias management surface, so
both sides normalize identically. Bump BRAND_NORMALIZATION_VERSION whenever a
rule below changes; historical linkages keep the version they were made with.
"""

import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

BRAND_NORMALIZATION_VERSION = 1

CORPORATE_SUFFIXES = frozenset({
    "inc",
    "incorporated",
    "llc",
    "ltd",
    "limited",
    "co",
    "corp",
    "corporation",
    "gmbh",
    "sarl",
    "sa",
    "bv",
    "nv",
})

# Generic tokens that should not be standalone aliases
GENERIC_TOKEN_BLOCKLIST = frozenset({
    "ammo",
    "ammunition",
    "bulk",
    "sale",
    "discount",
    "special",
    "new",
    "best",
    "premium",
})

# Short aliases (2-3 chars) that are explicitly allowed
SHORT_ALIAS_ALLOWLIST = frozenset({
    "pmc",
    "cci",
    "imi",
    "ppu",
    "cbc",
    "wpa",
    "tul",
    "hsm",
    "hpr",
})

ALIAS_SOURCE_TYPES = ("RETAILER_FEED", "AFFILIATE_FEED", "MANUAL")

# Above this many expected applications per day an alias always gets a human look
AUTO_ACTIVATE_MAX_DAILY_IMPACT = 500

# NFKD turns these into letters ("TM", "R", "C"), so they go first
_TRADEMARK_GLYPHS = re.compile(r"[™®©]")
_TRADEMARK_ASCII = re.compile(r"\((?:tm|r|c)\)", re.IGNORECASE)
_SEPARATORS = re.compile(r"[^\w\s]|_")
_WHITESPACE = re.compile(r"\s+")


def normalize_brand(brand: Optional[str]) -> Optional[str]:
    """
    Normalize a brand string for matching.

    Args:
        brand: Raw brand string

    Returns:
        Normalized brand, or None when the input is blank or nothing survives
    """
    if not brand or not brand.strip():
        return None

    normalized = _TRADEMARK_GLYPHS.sub("", brand)
    normalized = _TRADEMARK_ASCII.sub("", normalized)

    normalized = unicodedata.normalize("NFKD", normalized)
    normalized = "".join(ch for ch in normalized if not unicodedata.combining(ch))

    normalized = normalized.lower()
    normalized = normalized.replace("&", " and ")
    normalized = _SEPARATORS.sub(" ", normalized)
    normalized = _WHITESPACE.sub(" ", normalized).strip()

    tokens = normalized.split(" ")
    last = len(tokens) - 1
    tokens = [
        token
        for index, token in enumerate(tokens)
        if index < last - 1 or token not in CORPORATE_SUFFIXES
    ]
    normalized = " ".join(tokens).strip()

    return normalized or None


def validate_alias_for_creation(alias_norm: str, canonical_norm: str) -> list[str]:
    """
    Validate an alias before it is created.

    Args:
        alias_norm: Normalized alias string
        canonical_norm: Normalized canonical brand

    Returns:
        Validation error messages (empty if valid)
    """
    errors: list[str] = []

    if not alias_norm:
        errors.append("Alias cannot be empty")
        return errors

    if len(alias_norm) < 2:
        errors.append("Alias must be at least 2 characters")

    if 2 <= len(alias_norm) <= 3 and alias_norm not in SHORT_ALIAS_ALLOWLIST:
        errors.append(
            f'Short aliases (2-3 chars) must be on the allowlist. "{alias_norm}" is not allowed.'
        )

    if alias_norm in GENERIC_TOKEN_BLOCKLIST:
        errors.append(f'"{alias_norm}" is a generic term and cannot be used as an alias')

    if alias_norm == canonical_norm:
        errors.append("Alias cannot be the same as the canonical name")

    return errors


@dataclass(frozen=True)
class AutoActivationDecision:
    """Whether an alias may skip manual review, and why not if it may not."""

    can_activate: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.can_activate


def can_auto_activate(
    alias_norm: str,
    source_type: str,
    estimated_daily_impact: int,
    canonical_known: bool,
) -> AutoActivationDecision:
    """
    Decide whether an alias can be activated without manual review.

    Args:
        alias_norm: Normalized alias string
        source_type: RETAILER_FEED, AFFILIATE_FEED or MANUAL
        estimated_daily_impact: Expected number of records the alias touches per day
        canonical_known: Canonical brand exists in the catalog or as another active canonical

    Returns:
        AutoActivationDecision; falsy decisions go to the review queue
    """
    if source_type == "MANUAL":
        return AutoActivationDecision(False, "Manual aliases require review")

    if source_type not in ALIAS_SOURCE_TYPES:
        logger.warning("Unknown alias source type %r routed to review", source_type)
        return AutoActivationDecision(False, "Unknown source type requires review")

    if len(alias_norm or "") < 4:
        return AutoActivationDecision(False, "Short aliases require review")

    if alias_norm in GENERIC_TOKEN_BLOCKLIST:
        return AutoActivationDecision(False, "Generic terms require review")

    if not canonical_known:
        return AutoActivationDecision(False, "Unknown canonical brand requires review")

    if estimated_daily_impact >= AUTO_ACTIVATE_MAX_DAILY_IMPACT:
        return AutoActivationDecision(False, "High-impact aliases require review")

    return AutoActivationDecision(True)
