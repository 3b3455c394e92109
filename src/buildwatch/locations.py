"""Pattern-family based extraction of source locations from build output."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any

from buildwatch.errors import PatternError

logger = logging.getLogger(__name__)

GROUP_ROLES = frozenset({"file", "line", "column", "kind"})
_INFO_MARKERS = frozenset({":::", "note", "help", "info"})


class LocationKind(str, Enum):
    ERROR = "error"
    INFO = "info"

    @classmethod
    def from_token(cls, token: str | None) -> "LocationKind":
        if token is not None and token.strip().lower() in _INFO_MARKERS:
            return cls.INFO
        return cls.ERROR


@dataclass(frozen=True)
class LocationRecord:
    """
    One `file:line:column` reference found in a log.

    `char_offset` is the position of the match in the decoded buffer text, counted in
    characters rather than raw process bytes; records sort on it.
    """

    file: str
    line: int
    column: int
    kind: LocationKind
    char_offset: int
    family_id: str = ""

    def resolve(self, base_dir: str | Path | None) -> Path:
        path = Path(self.file).expanduser()
        if base_dir is None or path.is_absolute():
            return path
        return Path(base_dir) / path

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.column}"


def _positive_int(value: str | None) -> int:
    if value is None:
        return 1
    try:
        number = int(value)
    except ValueError:
        return 1
    return number if number >= 1 else 1


@dataclass(frozen=True)
class PatternFamily:
    """
    A named regex plus a mapping from capture-group index to location role.

    Roles are `file` (required), `line`, `column` and `kind`. Unmapped `line`/`column`
    default to 1; an unmapped `kind` means every match is an error.
    """

    id: str
    pattern: str
    group_roles: Mapping[int, str] = field(hash=False)
    regex: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        family_id = str(self.id or "").strip()
        if not family_id:
            raise PatternError(str(self.id), "id is required")
        try:
            regex = re.compile(self.pattern, re.MULTILINE)
        except (re.error, TypeError) as exc:
            raise PatternError(family_id, f"invalid pattern: {exc}") from exc

        roles: dict[int, str] = {}
        for raw_index, raw_role in dict(self.group_roles or {}).items():
            try:
                index = int(raw_index)
            except (TypeError, ValueError) as exc:
                raise PatternError(family_id, f"group index {raw_index!r} is not an integer") from exc
            role = str(raw_role).strip().lower()
            if role not in GROUP_ROLES:
                raise PatternError(family_id, f"unknown group role {raw_role!r}")
            if not 1 <= index <= regex.groups:
                raise PatternError(family_id, f"group {index} does not exist (pattern has {regex.groups})")
            if role in roles.values():
                raise PatternError(family_id, f"role {role!r} is mapped more than once")
            roles[index] = role
        if "file" not in roles.values():
            raise PatternError(family_id, "no capture group is mapped to 'file'")

        object.__setattr__(self, "id", family_id)
        object.__setattr__(self, "group_roles", MappingProxyType(roles))
        object.__setattr__(self, "regex", regex)

    def _group_for(self, role: str) -> int | None:
        for index, mapped in self.group_roles.items():
            if mapped == role:
                return index
        return None

    def records(self, text: str) -> Iterator[LocationRecord]:
        file_group = self._group_for("file")
        line_group = self._group_for("line")
        column_group = self._group_for("column")
        kind_group = self._group_for("kind")
        for match in self.regex.finditer(text):
            file = (match.group(file_group) or "").strip()
            if not file:
                continue
            yield LocationRecord(
                file=file,
                line=_positive_int(match.group(line_group)) if line_group else 1,
                column=_positive_int(match.group(column_group)) if column_group else 1,
                kind=LocationKind.from_token(match.group(kind_group)) if kind_group else LocationKind.ERROR,
                char_offset=match.start(),
                family_id=self.id,
            )


ARROW_FAMILY = PatternFamily(
    id="arrow",
    pattern=r"^[ \t]*-->[ \t]+([^\s:][^:\n]*):(\d+):(\d+)",
    group_roles={1: "file", 2: "line", 3: "column"},
)
COLON_FAMILY = PatternFamily(
    id="colon",
    pattern=r"^[ \t]*(:::)[ \t]+([^\s:][^:\n]*):(\d+):(\d+)",
    group_roles={1: "kind", 2: "file", 3: "line", 4: "column"},
)
PANIC_FAMILY = PatternFamily(
    id="panic",
    pattern=r"thread '[^'\n]*' panicked at (?:'[^'\n]*', )?([^\s:][^:\n]*):(\d+):(\d+)",
    group_roles={1: "file", 2: "line", 3: "column"},
)
DEFAULT_FAMILIES = (ARROW_FAMILY, COLON_FAMILY, PANIC_FAMILY)


def scan(text: str, families: Iterable[PatternFamily]) -> list[LocationRecord]:
    """
    Apply every family to `text` and merge the results in document order.

    Families never short-circuit each other: two families matching the same span both
    contribute a record, ordered by registration.
    """
    records: list[LocationRecord] = []
    for family in families:
        records.extend(family.records(text))
    records.sort(key=lambda record: record.char_offset)
    return records


class PatternRegistry:
    """
    Ordered, append-only set of pattern families.

    Registration swaps in a new tuple, so `snapshot()` taken by a running scan never sees a
    half-updated list.
    """

    def __init__(self, families: Iterable[PatternFamily] = ()) -> None:
        self._lock = threading.Lock()
        self._families: tuple[PatternFamily, ...] = ()
        for family in families:
            self.add(family)

    def add(self, family: PatternFamily) -> PatternFamily:
        with self._lock:
            if any(existing.id == family.id for existing in self._families):
                raise PatternError(family.id, "already registered")
            self._families = (*self._families, family)
        return family

    def register_family(self, id: str, pattern: str, group_roles: Mapping[int, str]) -> PatternFamily:  # noqa: A002
        return self.add(PatternFamily(id=id, pattern=pattern, group_roles=group_roles))

    def snapshot(self) -> tuple[PatternFamily, ...]:
        return self._families

    def ids(self) -> list[str]:
        return [family.id for family in self._families]

    def __len__(self) -> int:
        return len(self._families)

    def __iter__(self) -> Iterator[PatternFamily]:
        return iter(self._families)


def default_registry() -> PatternRegistry:
    return PatternRegistry(DEFAULT_FAMILIES)


def register_families_from_config(registry: PatternRegistry, entries: Iterable[Any]) -> list[PatternError]:
    """Register families described as `{"id", "pattern", "groups"}` dicts; bad entries are skipped."""
    errors: list[PatternError] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        groups = entry.get("groups")
        try:
            registry.register_family(
                str(entry.get("id") or ""),
                str(entry.get("pattern") or ""),
                groups if isinstance(groups, dict) else {},
            )
        except PatternError as exc:
            logger.warning("Skipping pattern family: %s", exc)
            errors.append(exc)
    return errors


class MatcherState(str, Enum):
    NO_MATCHES = "no_matches"
    SCANNING = "scanning"
    MATCHES_READY = "matches_ready"


class LocationMatcher:
    """Keeps the location list of one buffer current and tracks a navigation cursor over it."""

    def __init__(self, registry: PatternRegistry, *, deferred: bool = False) -> None:
        self.registry = registry
        self.deferred = deferred
        self.state = MatcherState.NO_MATCHES
        self._records: tuple[LocationRecord, ...] = ()
        self._cursor = -1
        self._dirty = False
        self._buffer: Any = None
        self._lock = threading.Lock()

    @property
    def records(self) -> tuple[LocationRecord, ...]:
        return self._records

    @property
    def dirty(self) -> bool:
        return self._dirty

    def reset(self) -> None:
        with self._lock:
            self.state = MatcherState.NO_MATCHES
            self._records = ()
            self._cursor = -1
            self._dirty = False

    def on_buffer_changed(self, buffer: Any, changed_from: int = 0) -> None:
        self._buffer = buffer
        if self.deferred:
            self._dirty = True
            return
        self.scan_buffer(buffer)

    def refresh(self) -> tuple[LocationRecord, ...]:
        if self._dirty and self._buffer is not None:
            self.scan_buffer(self._buffer)
        return self._records

    def finalize(self, buffer: Any = None) -> tuple[LocationRecord, ...]:
        target = buffer if buffer is not None else self._buffer
        if target is not None:
            self.scan_buffer(target)
        return self._records

    def scan_buffer(self, buffer: Any) -> tuple[LocationRecord, ...]:
        self._buffer = buffer
        lock = getattr(buffer, "lock", None)
        if lock is not None:
            with lock:
                text = buffer.text
        else:
            text = buffer.text
        return self.scan_text(text)

    def scan_text(self, text: str) -> tuple[LocationRecord, ...]:
        with self._lock:
            self.state = MatcherState.SCANNING
            records = tuple(scan(text, self.registry.snapshot()))
            self._records = records
            self._dirty = False
            if self._cursor >= len(records):
                self._cursor = len(records) - 1
            self.state = MatcherState.MATCHES_READY if records else MatcherState.NO_MATCHES
        return records

    @property
    def current(self) -> LocationRecord | None:
        if 0 <= self._cursor < len(self._records):
            return self._records[self._cursor]
        return None

    def next(self) -> LocationRecord | None:
        self.refresh()
        if self._cursor + 1 >= len(self._records):
            return None
        self._cursor += 1
        return self._records[self._cursor]

    def previous(self) -> LocationRecord | None:
        self.refresh()
        if self._cursor <= 0:
            return None
        self._cursor -= 1
        return self._records[self._cursor]
