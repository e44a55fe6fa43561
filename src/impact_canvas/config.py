"""Engine configuration.

All layout and persistence constants live in one frozen ``EngineSettings``
model so a session can be tuned (or a test sped up) without touching call
sites.  Settings come from, in increasing priority:

1. the field defaults below,
2. an optional YAML file (``IMPACT_CANVAS_CONFIG`` or an explicit path),
3. ``IMPACT_CANVAS_<FIELD>`` environment variables.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .models import Orientation, Position


ENV_PREFIX = "IMPACT_CANVAS_"


class EngineSettings(BaseModel):
    """Injectable constants for layout, placement, drag and persistence."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # --- Node box ---
    node_width: float = Field(default=300, gt=0)
    node_height: float = Field(default=144, gt=0)

    # --- Grid & placement ---
    grid_size: float = Field(default=20, gt=0)
    overlap_padding: float = Field(default=20, ge=0)
    max_placement_attempts: int = Field(default=50, ge=1)
    origin_x: float = 100
    origin_y: float = 100

    # --- Tree layout ---
    # Distance between successive depth levels, and between sibling slots,
    # for each orientation.  Horizontal trees grow rightwards.
    horizontal_level_spacing: float = Field(default=400, gt=0)
    horizontal_sibling_spacing: float = Field(default=200, gt=0)
    vertical_level_spacing: float = Field(default=240, gt=0)
    vertical_sibling_spacing: float = Field(default=360, gt=0)
    tree_gap: float = Field(default=100, ge=0)
    relayout_after_reattach: bool = True

    # --- Persistence queue ---
    debounce_seconds: float = Field(default=0.5, ge=0)
    batch_size: int = Field(default=10, ge=1)
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay: float = Field(default=1.0, ge=0)
    inter_batch_delay: float = Field(default=0.1, ge=0)

    # --- Drag ---
    drag_max_updates_per_second: float = Field(default=60, gt=0)
    drag_settle_delay: float = Field(default=0.1, ge=0)

    @model_validator(mode="after")
    def _spacing_fits_boxes(self) -> EngineSettings:
        if self.horizontal_level_spacing < self.node_width:
            raise ValueError("horizontal_level_spacing must be at least node_width")
        if self.horizontal_sibling_spacing < self.node_height:
            raise ValueError("horizontal_sibling_spacing must be at least node_height")
        if self.vertical_level_spacing < self.node_height:
            raise ValueError("vertical_level_spacing must be at least node_height")
        if self.vertical_sibling_spacing < self.node_width:
            raise ValueError("vertical_sibling_spacing must be at least node_width")
        return self

    @property
    def origin(self) -> Position:
        return Position(x=self.origin_x, y=self.origin_y)

    @property
    def drag_frame_interval(self) -> float:
        """Minimum seconds between two live drag updates."""
        return 1.0 / self.drag_max_updates_per_second

    def level_spacing(self, orientation: Orientation) -> float:
        if orientation == Orientation.HORIZONTAL:
            return self.horizontal_level_spacing
        return self.vertical_level_spacing

    def sibling_spacing(self, orientation: Orientation) -> float:
        if orientation == Orientation.HORIZONTAL:
            return self.horizontal_sibling_spacing
        return self.vertical_sibling_spacing


def _read_yaml(path: Path) -> dict[str, Any]:
    data = yaml.safe_load(path.read_text())
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    # Allow the settings to be nested under an ``engine:`` key.
    return dict(data.get("engine", data))


def _read_env() -> dict[str, str]:
    values = {}
    for name in EngineSettings.model_fields:
        raw = os.environ.get(ENV_PREFIX + name.upper())
        if raw is not None:
            values[name] = raw
    return values


def build_settings(path: Optional[str | Path] = None, **overrides: Any) -> EngineSettings:
    """Build settings from file, environment and explicit overrides (uncached)."""
    values: dict[str, Any] = {}
    config_path = path or os.environ.get(ENV_PREFIX + "CONFIG")
    if config_path:
        values.update(_read_yaml(Path(config_path).expanduser()))
    values.update(_read_env())
    values.update(overrides)
    return EngineSettings(**values)


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Load and cache process-wide settings."""
    return build_settings()


def reload_settings() -> EngineSettings:
    """Clear cached settings (useful for tests) and reload."""
    get_settings.cache_clear()
    return get_settings()


__all__ = ["EngineSettings", "build_settings", "get_settings", "reload_settings", "ENV_PREFIX"]
