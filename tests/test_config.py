"""Tests for engine settings loading."""

import pydantic
import pytest

from impact_canvas.config import EngineSettings, build_settings, get_settings, reload_settings
from impact_canvas.models import Orientation


def test_defaults():
    settings = EngineSettings()
    assert (settings.node_width, settings.node_height) == (300, 144)
    assert settings.level_spacing(Orientation.HORIZONTAL) == 400
    assert settings.sibling_spacing(Orientation.VERTICAL) == 360
    assert settings.drag_frame_interval == pytest.approx(1 / 60)
    assert (settings.origin.x, settings.origin.y) == (100, 100)


def test_yaml_then_env_then_overrides(tmp_path, monkeypatch):
    path = tmp_path / "canvas.yaml"
    path.write_text("engine:\n  batch_size: 4\n  grid_size: 10\n  max_retries: 1\n")
    monkeypatch.setenv("IMPACT_CANVAS_GRID_SIZE", "40")

    settings = build_settings(path, max_retries=7)

    assert settings.batch_size == 4
    assert settings.grid_size == 40
    assert settings.max_retries == 7


def test_config_path_from_environment(tmp_path, monkeypatch):
    path = tmp_path / "canvas.yaml"
    path.write_text("debounce_seconds: 0.3\n")
    monkeypatch.setenv("IMPACT_CANVAS_CONFIG", str(path))
    assert reload_settings().debounce_seconds == 0.3
    assert get_settings() is get_settings()
    monkeypatch.delenv("IMPACT_CANVAS_CONFIG")
    reload_settings()


def test_invalid_values_rejected():
    with pytest.raises(pydantic.ValidationError):
        EngineSettings(batch_size=0)
    with pytest.raises(pydantic.ValidationError):
        EngineSettings(horizontal_level_spacing=100)
    with pytest.raises(pydantic.ValidationError):
        EngineSettings(unknown_knob=1)


def test_settings_are_frozen():
    with pytest.raises(pydantic.ValidationError):
        EngineSettings().grid_size = 5
