"""Tests for config/preferences.py."""

import pytest
import yaml

from config.preferences import TOGGLES, Preferences, PreferencesStore


def test_missing_file_yields_defaults(tmp_path):
    store = PreferencesStore(tmp_path / "prefs.yaml")
    assert store.load() == Preferences()


@pytest.mark.parametrize("content", ["{not: [valid", "- just\n- a list\n"])
def test_unreadable_file_yields_defaults(tmp_path, content, caplog):
    path = tmp_path / "prefs.yaml"
    path.write_text(content, encoding="utf-8")
    assert PreferencesStore(path).load() == Preferences()
    assert "Ignoring unreadable preferences" in caplog.text


def test_last_config_persists(tmp_path):
    path = tmp_path / "nested" / "prefs.yaml"
    store = PreferencesStore(path)
    store.load()
    store.update_last_config({"ray_model_ids": ["claude", "gemini"]})
    store.update_last_config({"gather_factory_id": "guided"})

    reloaded = PreferencesStore(path).load()
    assert reloaded.last_config.ray_model_ids == ["claude", "gemini"]
    assert reloaded.last_config.gather_factory_id == "guided"

    store.delete_last_config()
    assert PreferencesStore(path).load().last_config is None


def test_presets(tmp_path):
    path = tmp_path / "prefs.yaml"
    store = PreferencesStore(path)
    preset = store.add_preset("trio", ["claude", "gemini", "gpt"], "claude", "fuse")

    assert preset.id.startswith("beam-preset-")
    assert store.find_preset("trio") == preset
    assert store.find_preset(preset.id) == preset
    assert store.find_preset("nope") is None

    store.rename_preset(preset.id, "triple")
    assert PreferencesStore(path).load().presets[0].name == "triple"

    store.delete_preset(preset.id)
    assert PreferencesStore(path).load().presets == []


def test_snapshot_is_immutable(tmp_path):
    store = PreferencesStore(tmp_path / "prefs.yaml")
    preset = store.add_preset("solo", ["claude"], None, None)
    with pytest.raises(AttributeError):
        preset.name = "other"


def test_toggles(tmp_path):
    path = tmp_path / "prefs.yaml"
    store = PreferencesStore(path)
    assert store.toggle("scatter_show_lettering") is True
    assert store.toggle("scatter_show_lettering") is False
    assert store.toggle("gather_auto_start_after_scatter") is True

    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert set(TOGGLES) <= set(raw)
    assert raw["gather_auto_start_after_scatter"] is True

    with pytest.raises(ValueError, match="Unknown preference toggle"):
        store.toggle("dark_mode")
