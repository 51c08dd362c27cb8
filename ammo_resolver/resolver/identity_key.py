"""Deterministic identity keys used as exact-match buckets over the catalog."""

from dataclasses import dataclass
from typing import Optional

from ammo_resolver.normalize.processor import NormalizedInput

IDENTITY_KEY_VERSION = "ik1"


@dataclass(frozen=True)
class IdentityKey:
    """Composite of normalized attributes; shell_length only participates for shotgun shells."""

    brand_norm: str
    caliber_norm: str
    grain: Optional[int]
    round_count: int
    load_type: Optional[str]
    shell_length: Optional[str] = None
    shotgun: bool = False

    def render(self) -> str:
        parts = [
            IDENTITY_KEY_VERSION,
            self.brand_norm,
            self.caliber_norm,
            str(self.grain or ""),
            str(self.round_count),
            self.load_type or "",
        ]
        if self.shotgun:
            parts.append(self.shell_length or "")
        return "|".join(parts)

    def __str__(self) -> str:
        return self.render()


def build_identity_key(normalized: NormalizedInput) -> Optional[IdentityKey]:
    """
    Build the identity key for a normalized input.

    Rifle/pistol keys need brand, caliber, grain and round count. Shotgun keys
    need brand, caliber, round count and at least one of load type / shell length.

    Returns:
        IdentityKey, or None when the input is not key-eligible
    """
    if not normalized.brand_norm or not normalized.caliber_norm or not normalized.round_count:
        return None

    if normalized.is_shotgun:
        if not normalized.load_type and not normalized.shell_length:
            return None
        return IdentityKey(
            brand_norm=normalized.brand_norm,
            caliber_norm=normalized.caliber_norm,
            grain=normalized.grain,
            round_count=normalized.round_count,
            load_type=normalized.load_type,
            shell_length=normalized.shell_length,
            shotgun=True,
        )

    if not normalized.grain:
        return None

    return IdentityKey(
        brand_norm=normalized.brand_norm,
        caliber_norm=normalized.caliber_norm,
        grain=normalized.grain,
        round_count=normalized.round_count,
        load_type=normalized.load_type,
    )
