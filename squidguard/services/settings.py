from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import yaml

from squidguard.services.errors import ConfigError


DEFAULT_DBDIR = "/var/lib/squidguard/db"


@dataclass(frozen=True)
class GuardSettings:
    dbdir: str = DEFAULT_DBDIR
    categories: Dict[str, str] = field(default_factory=dict)
    redirect: str = ""
    classifier: str = ""
    allow: Tuple[str, ...] = ()
    block: Tuple[str, ...] = ()
    block_ip: bool = False
    groups: str = ""
    oneshot: bool = False
    force_db_update: bool = False
    verbose: bool = False
    debug: bool = False


def _as_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def _as_names(v: Any, key: str) -> Tuple[str, ...]:
    if v is None:
        return ()
    if isinstance(v, str):
        return tuple(p for p in (s.strip() for s in v.split(",")) if p)
    if isinstance(v, (list, tuple)):
        return tuple(str(s).strip() for s in v if str(s).strip())
    raise ConfigError(f"'{key}' must be a list of category names")


def parse_categories(v: Any) -> Dict[str, str]:
    """Normalize category declarations to {name: location}.

    Accepts a mapping, a list of names (location = name), or a list of
    "name=location" strings.
    """

    if v is None:
        return {}
    out: Dict[str, str] = {}
    if isinstance(v, Mapping):
        for name, loc in v.items():
            n = str(name).strip()
            if not n:
                raise ConfigError("Empty category name")
            out[n] = str(loc).strip() if loc not in (None, "") else n
        return out
    if isinstance(v, str):
        v = [v]
    if isinstance(v, (list, tuple)):
        for item in v:
            name, _, loc = str(item).partition("=")
            name = name.strip()
            if not name:
                raise ConfigError(f"Invalid category declaration {item!r}")
            out[name] = loc.strip() or name
        return out
    raise ConfigError("'categories' must be a mapping or a list")


_KNOWN_KEYS = {f for f in GuardSettings.__dataclass_fields__}


def settings_from_mapping(data: Mapping[str, Any]) -> GuardSettings:
    unknown = sorted(set(data) - _KNOWN_KEYS)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")

    s = GuardSettings()
    kw: Dict[str, Any] = {}
    if "dbdir" in data:
        kw["dbdir"] = str(data["dbdir"])
    if "categories" in data:
        kw["categories"] = parse_categories(data["categories"])
    for k in ("redirect", "classifier", "groups"):
        if k in data and data[k] is not None:
            kw[k] = str(data[k])
    for k in ("allow", "block"):
        if k in data:
            kw[k] = _as_names(data[k], k)
    for k in ("block_ip", "oneshot", "force_db_update", "verbose", "debug"):
        if k in data:
            kw[k] = _as_bool(data[k])
    return replace(s, **kw)


def load_settings(path: Optional[str] = None) -> GuardSettings:
    """Read a YAML settings file; no path means built-in defaults."""

    if not path:
        return GuardSettings()
    cfg_path = Path(path)
    try:
        text = cfg_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read configuration {cfg_path}: {e}") from e
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {cfg_path}: {e}") from e
    if not isinstance(data, Mapping):
        raise ConfigError(f"{cfg_path} must contain a mapping at top level")
    return settings_from_mapping(data)


def apply_overrides(settings: GuardSettings, **overrides: Any) -> GuardSettings:
    """Return `settings` with every override that is not None applied."""

    kw = {k: v for k, v in overrides.items() if v is not None}
    if "categories" in kw:
        merged = dict(settings.categories)
        merged.update(parse_categories(kw["categories"]))
        kw["categories"] = merged
    for k in ("allow", "block"):
        if k in kw:
            kw[k] = _as_names(kw[k], k)
    return replace(settings, **kw)


def env_default(name: str, default: str = "") -> str:
    return (os.environ.get(name) or "").strip() or default


def undeclared_categories(settings: GuardSettings) -> List[str]:
    """Category names referenced by the stock policy but not declared."""

    declared = set(settings.categories)
    return [c for c in _unique(settings.allow + settings.block) if c not in declared]


def _unique(items: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for i in items:
        if i not in seen:
            seen.add(i)
            out.append(i)
    return out
