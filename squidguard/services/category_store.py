from __future__ import annotations

import logging
import os
import re
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from squidguard.services.errors import CategoryStoreError, UnknownCategoryError


logger = logging.getLogger(__name__)


# Plaintext sources that get compiled into sorted tables; "expressions" is read as-is.
TABLE_TIERS: Tuple[str, ...] = ("domains", "urls")
EXPRESSIONS = "expressions"
COMPILED_SUFFIX = ".db"


def _strip_comment(line: str) -> str:
    return (line or "").split("#", 1)[0].strip()


def read_source_lines(path: Path) -> Iterator[str]:
    """Yield the non-blank entries of a list file, comments removed."""

    with path.open("r", encoding="utf-8", errors="replace") as f:
        for ln in f:
            t = _strip_comment(ln)
            if t:
                yield t


def compiled_path(source: Path) -> Path:
    return source.with_name(source.name + COMPILED_SUFFIX)


def _mtime(path: Path) -> float:
    try:
        return path.stat().st_mtime
    except FileNotFoundError:
        return 0.0


def needs_rebuild(source: Path, compiled: Path, *, force: bool = False) -> bool:
    if force:
        return True
    return _mtime(source) > _mtime(compiled)


class KeyTable:
    """Read-only handle on a compiled existence-only key table."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._conn: Optional[sqlite3.Connection] = None
        try:
            uri = self.path.resolve().as_uri() + "?mode=ro"
            self._conn = sqlite3.connect(uri, uri=True)
            # Fail here, not on the first request, when the file is not a table.
            self._conn.execute("SELECT 1 FROM keys LIMIT 1").fetchone()
        except sqlite3.Error as e:
            self.close()
            raise CategoryStoreError(f"Cannot open {self.path}: {e}") from e

    def __contains__(self, key: object) -> bool:
        if self._conn is None:
            raise CategoryStoreError(f"{self.path} is closed")
        row = self._conn.execute("SELECT 1 FROM keys WHERE k = ?", (str(key).lower(),)).fetchone()
        return row is not None

    def __len__(self) -> int:
        if self._conn is None:
            return 0
        row = self._conn.execute("SELECT COUNT(*) FROM keys").fetchone()
        return int(row[0]) if row else 0

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __repr__(self) -> str:
        return f"KeyTable({str(self.path)!r})"


def write_table(compiled: Path, keys: Iterable[str]) -> int:
    """Replace `compiled` with a fresh sorted table holding `keys` (lowercased).

    The table is written next to the target and moved into place, so a reader
    opening the path sees either the old or the new table.
    """

    tmp = compiled.with_name(compiled.name + ".buildtmp")
    try:
        if tmp.exists():
            tmp.unlink()
        conn = sqlite3.connect(str(tmp))
        try:
            conn.execute("CREATE TABLE keys (k TEXT PRIMARY KEY) WITHOUT ROWID")
            conn.executemany(
                "INSERT OR IGNORE INTO keys(k) VALUES(?)",
                ((k.lower(),) for k in keys),
            )
            conn.commit()
            row = conn.execute("SELECT COUNT(*) FROM keys").fetchone()
        finally:
            conn.close()
        os.replace(str(tmp), str(compiled))
    except (OSError, sqlite3.Error) as e:
        try:
            tmp.unlink()
        except OSError:
            pass
        raise CategoryStoreError(f"Cannot create {compiled}: {e}") from e
    return int(row[0]) if row else 0


def load_expressions(path: Path) -> Tuple[re.Pattern[str], ...]:
    out: List[re.Pattern[str]] = []
    try:
        for expr in read_source_lines(path):
            try:
                out.append(re.compile(expr, re.IGNORECASE))
            except re.error as e:
                raise CategoryStoreError(f"Invalid expression {expr!r} in {path}: {e}") from e
    except OSError as e:
        raise CategoryStoreError(f"Cannot open {path}: {e}") from e
    return tuple(out)


@dataclass(frozen=True)
class Category:
    name: str
    location: str
    path: Path
    domains: Optional[KeyTable] = None
    urls: Optional[KeyTable] = None
    expressions: Optional[Tuple[re.Pattern[str], ...]] = None

    @property
    def tiers(self) -> List[str]:
        return [t for t in ("domains", "urls", "expressions") if getattr(self, t) is not None]

    def close(self) -> None:
        for t in (self.domains, self.urls):
            if t is not None:
                t.close()


@dataclass(frozen=True)
class BuildResult:
    category: str
    tier: str
    source: Path
    compiled: Path
    built: bool
    keys: int = 0


class CategoryStore:
    """Per-category lookup tiers, opened once before serving.

    Use `CategoryStore.open(dbdir, {name: location})`; the store is not
    modified afterwards and releases its table handles on `close()`.
    """

    def __init__(self, dbdir: str, categories: Optional[Dict[str, Category]] = None):
        self.dbdir = Path(dbdir)
        self._categories: Dict[str, Category] = dict(categories or {})

    @classmethod
    def open(cls, dbdir: str, categories: Mapping[str, str]) -> "CategoryStore":
        loaded: Dict[str, Category] = {}
        try:
            for name, location in categories.items():
                loaded[name] = _load_category(Path(dbdir), name, location)
        except Exception:
            for c in loaded.values():
                c.close()
            raise
        return cls(dbdir, loaded)

    def get(self, name: str) -> Category:
        try:
            return self._categories[name]
        except KeyError:
            raise UnknownCategoryError(name) from None

    def names(self) -> List[str]:
        return list(self._categories)

    def __contains__(self, name: object) -> bool:
        return name in self._categories

    def close(self) -> None:
        for c in self._categories.values():
            c.close()

    def __enter__(self) -> "CategoryStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def _load_category(dbdir: Path, name: str, location: str) -> Category:
    base = dbdir / location
    tables: Dict[str, Optional[KeyTable]] = {}
    try:
        for tier in TABLE_TIERS:
            src = base / tier
            tables[tier] = KeyTable(compiled_path(src)) if src.is_file() else None

        expr_path = base / EXPRESSIONS
        expressions = load_expressions(expr_path) if expr_path.is_file() else None
    except Exception:
        for t in tables.values():
            if t is not None:
                t.close()
        raise

    cat = Category(
        name=name,
        location=location,
        path=base,
        domains=tables.get("domains"),
        urls=tables.get("urls"),
        expressions=expressions,
    )
    logger.debug("Loaded category %s from %s: %s", name, base, ", ".join(cat.tiers) or "no tiers")
    return cat


def build_tables(dbdir: str, categories: Mapping[str, str], *, force: bool = False) -> List[BuildResult]:
    """Create or refresh the compiled tables of the given categories.

    Independent of `CategoryStore.open`. A table is rebuilt when `force` is
    set or its plaintext source is newer; tiers without a source are skipped.
    """

    results: List[BuildResult] = []
    for name, location in categories.items():
        base = Path(dbdir) / location
        for tier in TABLE_TIERS:
            src = base / tier
            if not src.is_file():
                continue
            dst = compiled_path(src)
            if not needs_rebuild(src, dst, force=force):
                logger.info("%s more recent than %s, skipped", dst, src)
                results.append(BuildResult(name, tier, src, dst, built=False))
                continue

            logger.info("Making %s", dst)
            try:
                keys = list(read_source_lines(src))
            except OSError as e:
                raise CategoryStoreError(f"Cannot open {src}: {e}") from e
            n = write_table(dst, keys)
            results.append(BuildResult(name, tier, src, dst, built=True, keys=n))
    return results
