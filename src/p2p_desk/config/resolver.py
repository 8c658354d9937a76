"""Three-level positioning config resolution.

Lookup order for a (direction, asset) pair:

1. the ``overrides`` entry for exactly that direction and asset,
2. the per-direction block under ``directions``,
3. the global ``defaults``.

Each level only contributes the fields it explicitly sets, so an asset
override of ``undercut_cents`` leaves the direction's ``mode`` intact.
"""

from __future__ import annotations

from p2p_desk.config.schema import PositioningConfig, PositioningOverride, PositioningSettings
from p2p_desk.models import TradeDirection

_KEY_FIELDS = {"direction", "asset"}


def _apply(merged: dict, override: PositioningOverride | None) -> None:
    if override is None:
        return
    merged.update(override.model_dump(exclude_unset=True, exclude=_KEY_FIELDS))


def find_override(
    settings: PositioningSettings, direction: TradeDirection, asset: str,
) -> PositioningOverride | None:
    for override in settings.overrides:
        if override.direction == direction and override.asset.upper() == asset.upper():
            return override
    return None


def resolve_positioning(
    settings: PositioningSettings, direction: TradeDirection, asset: str,
) -> PositioningConfig:
    """Resolve the effective positioning config. Pure function of its inputs."""
    merged = settings.defaults.model_dump()
    _apply(merged, settings.directions.get(direction))
    _apply(merged, find_override(settings, direction, asset))
    return PositioningConfig.model_validate(merged)
