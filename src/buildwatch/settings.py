from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from buildwatch.ansi import COLOR_NAMES, Palette
from buildwatch.models import DisplayPolicy, Role
from buildwatch.state_paths import settings_path as _default_settings_path
from buildwatch.utils.env_utils import str_env, truthy, truthy_env

logger = logging.getLogger(__name__)

DEFAULT_TERMINAL = "xterm-256color"


def _deep_merge_dict(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dicts (override wins). Lists are replaced, not merged."""
    out: dict[str, Any] = dict(base)
    for key, value in override.items():
        out_value = out.get(key)
        if isinstance(value, dict) and isinstance(out_value, dict):
            out[key] = _deep_merge_dict(out_value, value)
        else:
            out[key] = value
    return out


def _parse_display_policy(value: Any, default: DisplayPolicy = DisplayPolicy.SPLIT_VIEW) -> DisplayPolicy:
    key = str(value or "").strip().lower().replace("_", "").replace("-", "").replace("view", "")
    for policy in DisplayPolicy:
        if policy.value == key:
            return policy
    return default


@dataclass(frozen=True)
class PaletteConfig:
    colors: list[str | None] = field(default_factory=lambda: list(COLOR_NAMES))
    bright: list[str | None] | None = None

    @classmethod
    def from_dict(cls, raw: Any) -> "PaletteConfig":
        # A bare list is accepted as shorthand for the 8 normal colors.
        if isinstance(raw, list):
            raw = {"colors": raw}
        if not isinstance(raw, dict):
            return cls()

        def _entries(value: Any) -> list[str | None] | None:
            if not isinstance(value, list) or len(value) != 8:
                return None
            return [str(v).strip() if isinstance(v, str) and v.strip() else None for v in value]

        colors = _entries(raw.get("colors"))
        if colors is None and raw.get("colors") is not None:
            logger.warning("Ignoring color_palette.colors: expected a list of 8 style strings")
        return cls(colors=colors or list(COLOR_NAMES), bright=_entries(raw.get("bright")))

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"colors": list(self.colors)}
        if self.bright is not None:
            out["bright"] = list(self.bright)
        return out

    def build(self) -> Palette:
        return Palette(self.colors, bright=self.bright)


@dataclass(frozen=True)
class BuildwatchSettings:
    commands: dict[str, str] = field(default_factory=dict)
    display_policy: DisplayPolicy = DisplayPolicy.SPLIT_VIEW
    carriage_return_collapse: bool = True
    color_palette: PaletteConfig = field(default_factory=PaletteConfig)
    grace_period_s: float = 2.0
    terminal: str = DEFAULT_TERMINAL
    project_markers: list[str] = field(default_factory=lambda: ["Cargo.toml", ".git"])
    patterns: list[dict[str, Any]] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "BuildwatchSettings":
        commands: dict[str, str] = {}
        commands_raw = raw.get("commands")
        if isinstance(commands_raw, dict):
            for role_name, command in commands_raw.items():
                if not isinstance(command, str) or not command.strip():
                    continue
                try:
                    role = Role.parse(role_name)
                except ValueError:
                    logger.warning("Ignoring command for unknown role %r", role_name)
                    continue
                commands[role.value] = command.strip()

        collapse = raw.get("carriage_return_collapse")
        grace = raw.get("grace_period_s")
        terminal = raw.get("terminal")
        markers = raw.get("project_markers")
        patterns = raw.get("patterns")
        return cls(
            commands=commands,
            display_policy=_parse_display_policy(raw.get("display_policy")),
            carriage_return_collapse=collapse
            if isinstance(collapse, bool)
            else truthy(collapse)
            if collapse is not None
            else True,
            color_palette=PaletteConfig.from_dict(raw.get("color_palette")),
            grace_period_s=float(grace) if isinstance(grace, (int, float)) and grace >= 0 else 2.0,
            terminal=terminal.strip() if isinstance(terminal, str) and terminal.strip() else DEFAULT_TERMINAL,
            project_markers=[str(m).strip() for m in markers if str(m).strip()]
            if isinstance(markers, list)
            else ["Cargo.toml", ".git"],
            patterns=[p for p in patterns if isinstance(p, dict)] if isinstance(patterns, list) else [],
            raw=raw,
        )

    def to_dict(self) -> dict[str, Any]:
        base = dict(self.raw) if isinstance(self.raw, dict) else {}
        base.update(
            {
                "commands": dict(self.commands),
                "display_policy": self.display_policy.value,
                "carriage_return_collapse": self.carriage_return_collapse,
                "color_palette": self.color_palette.to_dict(),
                "grace_period_s": self.grace_period_s,
                "terminal": self.terminal,
                "project_markers": list(self.project_markers),
                "patterns": list(self.patterns),
            }
        )
        return base

    def command_for(self, role: Role | str) -> str:
        role = Role.parse(role)
        return self.commands.get(role.value) or DEFAULT_COMMANDS[role]


DEFAULT_COMMANDS: dict[Role, str] = {
    Role.BUILD: "cargo build",
    Role.TEST: "cargo test",
    Role.FORMAT: "cargo fmt",
    Role.LINT: "cargo clippy",
}


def default_settings_template() -> BuildwatchSettings:
    return BuildwatchSettings(
        commands={role.value: command for role, command in DEFAULT_COMMANDS.items()},
        display_policy=DisplayPolicy.SPLIT_VIEW,
        carriage_return_collapse=True,
        color_palette=PaletteConfig(),
        grace_period_s=2.0,
        terminal=DEFAULT_TERMINAL,
        project_markers=["Cargo.toml", ".git"],
        patterns=[],
        raw={},
    )


def load_settings(path: Path | None = None) -> BuildwatchSettings:
    """
    Load buildwatch settings from `.buildwatch/settings.json` (project-local).

    Environment overrides:
    - BUILDWATCH_DISPLAY: display policy (replace|split|background)
    - BUILDWATCH_CR_COLLAPSE: enable/disable carriage-return collapsing
    - BUILDWATCH_TERM: TERM value passed to the supervised process
    - BUILDWATCH_<ROLE>_COMMAND: default command for a role (e.g. BUILDWATCH_TEST_COMMAND)
    """
    settings_file = path or _default_settings_path()
    raw: dict[str, Any] = {}
    if settings_file.exists() and settings_file.is_file():
        try:
            loaded = json.loads(settings_file.read_text(encoding="utf-8"))
            raw = loaded if isinstance(loaded, dict) else {}
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable settings file %s: %s", settings_file, exc)
            raw = {}

    defaults = default_settings_template().to_dict()
    merged = _deep_merge_dict(defaults, raw) if raw else defaults
    settings = BuildwatchSettings.from_dict(merged)

    # Env overrides apply to the returned structure only (never persisted).
    overrides: dict[str, Any] = {}
    display = str_env("BUILDWATCH_DISPLAY")
    if display:
        overrides["display_policy"] = _parse_display_policy(display, settings.display_policy)
    if os.getenv("BUILDWATCH_CR_COLLAPSE") is not None:
        overrides["carriage_return_collapse"] = truthy_env("BUILDWATCH_CR_COLLAPSE", settings.carriage_return_collapse)
    terminal = str_env("BUILDWATCH_TERM")
    if terminal:
        overrides["terminal"] = terminal

    commands = dict(settings.commands)
    for role in Role:
        command = str_env(f"BUILDWATCH_{role.name}_COMMAND")
        if command:
            commands[role.value] = command
    if commands != settings.commands:
        overrides["commands"] = commands

    return replace(settings, **overrides) if overrides else settings


def save_settings(settings: BuildwatchSettings, path: Path | None = None) -> Path:
    settings_file = path or _default_settings_path()
    settings_file.parent.mkdir(parents=True, exist_ok=True)
    settings_file.write_text(json.dumps(settings.to_dict(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    return settings_file
