import json
import re

from meshlink.lib.errors import UnknownTier
from meshlink.lib.session.models import Tier

# Tier names end up inside ipset set names, which are capped at 31 characters
_TIER_NAME_RE = re.compile(r"^[a-z0-9_]{1,16}$")

DEFAULT_TIERS = (
    Tier(
        name="free",
        duration_seconds=30 * 60,
        download_kbit=2_000,
        upload_kbit=512,
        data_quota_bytes=100 * 1024 * 1024,
        price=0.0,
    ),
    Tier(
        name="lightweight",
        duration_seconds=2 * 3600,
        download_kbit=10_000,
        upload_kbit=2_000,
        data_quota_bytes=1024 * 1024 * 1024,
        price=1.0,
    ),
    Tier(
        name="premium",
        duration_seconds=24 * 3600,
        download_kbit=50_000,
        upload_kbit=10_000,
        data_quota_bytes=None,
        price=5.0,
    ),
)


class TierCatalog:
    """Read-only lookup of the configured tiers."""

    def __init__(self, tiers):
        self._tiers: dict[str, Tier] = {}
        for tier in tiers:
            if not _TIER_NAME_RE.match(tier.name):
                raise ValueError(f"invalid tier name: {tier.name!r}")
            if tier.duration_seconds <= 0:
                raise ValueError(f"tier {tier.name} must have a positive duration")
            if tier.name in self._tiers:
                raise ValueError(f"duplicate tier name: {tier.name}")
            self._tiers[tier.name] = tier

        if not self._tiers:
            raise ValueError("tier catalog is empty")

    def get(self, name: str) -> Tier:
        tier = self._tiers.get(name)
        if tier is None:
            raise UnknownTier(f"unknown tier: {name!r}")
        return tier

    def names(self) -> list[str]:
        return list(self._tiers)

    def __iter__(self):
        return iter(self._tiers.values())

    def __contains__(self, name: str) -> bool:
        return name in self._tiers

    def __len__(self) -> int:
        return len(self._tiers)


def tier_from_dict(name: str, raw: dict) -> Tier:
    quota = raw.get("data_quota_bytes")
    return Tier(
        name=name,
        duration_seconds=int(raw["duration_seconds"]),
        download_kbit=int(raw.get("download_kbit", 0)),
        upload_kbit=int(raw.get("upload_kbit", 0)),
        data_quota_bytes=int(quota) if quota is not None else None,
        price=float(raw.get("price", 0.0)),
    )


def load_tier_catalog(path: str | None = None) -> TierCatalog:
    """
    Load tiers from a JSON file shaped as:
      {"free": {"duration_seconds": 1800, "download_kbit": 2000, "upload_kbit": 512,
                "data_quota_bytes": 104857600, "price": 0}}
    Falls back to the built-in defaults when no path is given.
    """
    if not path:
        return TierCatalog(DEFAULT_TIERS)

    with open(path) as f:
        raw = json.load(f)

    return TierCatalog(tier_from_dict(name, spec) for name, spec in raw.items())
