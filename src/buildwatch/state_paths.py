from __future__ import annotations

import os
from pathlib import Path


def state_dir(*, cwd: Path | None = None) -> Path:
    """
    Return the base directory for buildwatch state (settings).

    Default: `<cwd>/.buildwatch`
    Override: `BUILDWATCH_STATE_DIR`

    Notes:
    - If BUILDWATCH_STATE_DIR is relative, it is interpreted relative to `cwd` (or Path.cwd()).
    - This does not create directories; callers should mkdir as needed.
    """
    base = (cwd or Path.cwd()).expanduser().resolve()

    raw = os.getenv("BUILDWATCH_STATE_DIR")
    if isinstance(raw, str) and raw.strip():
        p = Path(raw.strip()).expanduser()
        if not p.is_absolute():
            p = (base / p).expanduser()
        return p.resolve()

    return base / ".buildwatch"


def settings_path(*, cwd: Path | None = None) -> Path:
    return state_dir(cwd=cwd) / "settings.json"
