from __future__ import annotations

import json

from buildwatch.ansi import COLOR_NAMES
from buildwatch.models import DisplayPolicy, Role
from buildwatch.settings import (
    DEFAULT_TERMINAL,
    BuildwatchSettings,
    PaletteConfig,
    load_settings,
    save_settings,
)
from buildwatch.state_paths import settings_path, state_dir


def test_defaults_without_settings_file(tmp_path):
    settings = load_settings(tmp_path / "missing.json")
    assert settings.display_policy == DisplayPolicy.SPLIT_VIEW
    assert settings.carriage_return_collapse is True
    assert settings.terminal == DEFAULT_TERMINAL
    assert settings.command_for(Role.BUILD) == "cargo build"
    assert settings.command_for("clippy") == "cargo clippy"
    assert settings.color_palette.colors == list(COLOR_NAMES)


def test_settings_file_is_merged_over_defaults(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(
        json.dumps(
            {
                "commands": {"test": "cargo nextest run", "bogus": "ignored"},
                "display_policy": "replace_view",
                "carriage_return_collapse": "no",
                "color_palette": {"colors": ["black", "red", "green", "yellow", "blue", "magenta", "cyan", ""]},
                "grace_period_s": 0.5,
                "patterns": [{"id": "gcc", "pattern": "^(\\S+):(\\d+)", "groups": {"1": "file", "2": "line"}}, 7],
                "custom_key": {"kept": True},
            }
        ),
        encoding="utf-8",
    )

    settings = load_settings(path)

    assert settings.command_for(Role.TEST) == "cargo nextest run"
    assert settings.command_for(Role.BUILD) == "cargo build"
    assert "bogus" not in settings.commands
    assert settings.display_policy == DisplayPolicy.REPLACE_VIEW
    assert settings.carriage_return_collapse is False
    assert settings.color_palette.colors[-1] is None
    assert settings.grace_period_s == 0.5
    assert [p["id"] for p in settings.patterns] == ["gcc"]
    assert settings.to_dict()["custom_key"] == {"kept": True}


def test_invalid_json_falls_back_to_defaults(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text("{not json", encoding="utf-8")
    settings = load_settings(path)
    assert settings.command_for(Role.LINT) == "cargo clippy"


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("BUILDWATCH_DISPLAY", "background")
    monkeypatch.setenv("BUILDWATCH_CR_COLLAPSE", "off")
    monkeypatch.setenv("BUILDWATCH_TERM", "xterm-color")
    monkeypatch.setenv("BUILDWATCH_BUILD_COMMAND", "cargo build --all-targets")

    settings = load_settings(tmp_path / "settings.json")

    assert settings.display_policy == DisplayPolicy.BACKGROUND
    assert settings.carriage_return_collapse is False
    assert settings.terminal == "xterm-color"
    assert settings.command_for(Role.BUILD) == "cargo build --all-targets"
    assert settings.command_for(Role.TEST) == "cargo test"


def test_save_then_load_keeps_values(tmp_path):
    path = tmp_path / "nested" / "settings.json"
    original = BuildwatchSettings(commands={"format": "cargo fmt --all"}, display_policy=DisplayPolicy.BACKGROUND)
    assert save_settings(original, path) == path
    loaded = load_settings(path)
    assert loaded.command_for(Role.FORMAT) == "cargo fmt --all"
    assert loaded.display_policy == DisplayPolicy.BACKGROUND


def test_palette_config_accepts_list_shorthand_and_rejects_bad_length():
    config = PaletteConfig.from_dict(["#000000", "#cc0000", "green", "yellow", "blue", "magenta", "cyan", "white"])
    assert config.colors[1] == "#cc0000"
    palette = config.build()
    assert palette.foreground(1).color.triplet.red == 0xCC

    assert PaletteConfig.from_dict({"colors": ["red"]}).colors == list(COLOR_NAMES)
    assert PaletteConfig.from_dict("nonsense") == PaletteConfig()


def test_state_dir_honours_override(tmp_path, monkeypatch):
    monkeypatch.setenv("BUILDWATCH_STATE_DIR", "custom-state")
    assert state_dir(cwd=tmp_path) == (tmp_path / "custom-state").resolve()
    assert settings_path(cwd=tmp_path) == (tmp_path / "custom-state" / "settings.json").resolve()

    monkeypatch.delenv("BUILDWATCH_STATE_DIR")
    assert state_dir(cwd=tmp_path) == tmp_path.resolve() / ".buildwatch"
