import os
import sqlite3
import time

import pytest

from squidguard.services.category_store import (
    CategoryStore,
    KeyTable,
    build_tables,
    compiled_path,
    needs_rebuild,
    read_source_lines,
)
from squidguard.services.errors import CategoryStoreError, UnknownCategoryError


def _write(path, lines):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def _age(path, seconds=3600):
    past = time.time() - seconds
    os.utime(path, (past, past))


def _keys(db_path):
    conn = sqlite3.connect(str(db_path))
    try:
        return [r[0] for r in conn.execute("SELECT k FROM keys ORDER BY k")]
    finally:
        conn.close()


def test_read_source_lines_strips_comments_and_blanks(tmp_path):
    src = _write(tmp_path / "list", ["# header", "", "Foo.com  # trailing", "   ", "bar.org"])
    assert list(read_source_lines(src)) == ["Foo.com", "bar.org"]


def test_build_lowercases_and_dedupes(tmp_path):
    _write(tmp_path / "porn" / "domains", ["YouPorn.com", "youporn.com", "# comment only", "Example.ORG"])
    results = build_tables(str(tmp_path), {"porn": "porn"})

    assert [(r.tier, r.built, r.keys) for r in results] == [("domains", True, 2)]
    assert _keys(tmp_path / "porn" / "domains.db") == ["example.org", "youporn.com"]


def test_build_skips_missing_sources(tmp_path):
    (tmp_path / "empty").mkdir()
    assert build_tables(str(tmp_path), {"empty": "empty"}) == []
    assert not (tmp_path / "empty" / "domains.db").exists()
    assert not (tmp_path / "empty" / "urls.db").exists()


def test_rebuild_is_idempotent_without_force(tmp_path):
    src = _write(tmp_path / "ads" / "urls", ["ads.example.com/banners/"])
    _age(src)
    build_tables(str(tmp_path), {"ads": "ads"})
    db = compiled_path(src)
    before = (db.stat().st_mtime_ns, db.read_bytes())

    results = build_tables(str(tmp_path), {"ads": "ads"})

    assert [r.built for r in results] == [False]
    assert (db.stat().st_mtime_ns, db.read_bytes()) == before


def test_force_rebuilds(tmp_path):
    src = _write(tmp_path / "ads" / "domains", ["ads.example.com"])
    _age(src)
    build_tables(str(tmp_path), {"ads": "ads"})

    results = build_tables(str(tmp_path), {"ads": "ads"}, force=True)
    assert [r.built for r in results] == [True]


def test_newer_source_triggers_rebuild(tmp_path):
    src = _write(tmp_path / "ads" / "domains", ["ads.example.com"])
    _age(src)
    build_tables(str(tmp_path), {"ads": "ads"})

    _write(src, ["ads.example.com", "tracker.example.net"])
    future = time.time() + 60
    os.utime(src, (future, future))

    results = build_tables(str(tmp_path), {"ads": "ads"})
    assert [(r.built, r.keys) for r in results] == [(True, 2)]
    assert "tracker.example.net" in _keys(compiled_path(src))


def test_needs_rebuild_missing_compiled_is_old(tmp_path):
    src = _write(tmp_path / "domains", ["a.com"])
    assert needs_rebuild(src, tmp_path / "domains.db")


def test_open_loads_present_tiers(tmp_path):
    _write(tmp_path / "mixed" / "domains", ["example.com"])
    _write(tmp_path / "mixed" / "expressions", ["(^|[/.])casino[0-9]*\\.", "# comment"])
    build_tables(str(tmp_path), {"mixed": "mixed"})

    with CategoryStore.open(str(tmp_path), {"mixed": "mixed"}) as store:
        cat = store.get("mixed")
        assert cat.tiers == ["domains", "expressions"]
        assert "example.com" in cat.domains
        assert "EXAMPLE.COM" in cat.domains
        assert "other.com" not in cat.domains
        assert len(cat.expressions) == 1
        assert cat.expressions[0].search("http://www.CASINO7.example/")
        assert store.names() == ["mixed"]
        assert "mixed" in store


def test_category_without_files_has_no_tiers(tmp_path):
    with CategoryStore.open(str(tmp_path), {"nothing": "does/not/exist"}) as store:
        assert store.get("nothing").tiers == []


def test_missing_compiled_table_is_fatal(tmp_path):
    _write(tmp_path / "porn" / "domains", ["youporn.com"])
    with pytest.raises(CategoryStoreError):
        CategoryStore.open(str(tmp_path), {"porn": "porn"})


def test_invalid_expression_is_fatal(tmp_path):
    _write(tmp_path / "bad" / "expressions", ["(unclosed"])
    with pytest.raises(CategoryStoreError):
        CategoryStore.open(str(tmp_path), {"bad": "bad"})


def test_unknown_category(tmp_path):
    store = CategoryStore.open(str(tmp_path), {})
    with pytest.raises(UnknownCategoryError) as ei:
        store.get("nope")
    assert "nope" in str(ei.value)


def test_keytable_is_read_only(tmp_path):
    src = _write(tmp_path / "c" / "domains", ["example.com"])
    build_tables(str(tmp_path), {"c": "c"})
    table = KeyTable(compiled_path(src))
    try:
        with pytest.raises(sqlite3.OperationalError):
            table._conn.execute("INSERT INTO keys(k) VALUES('x.com')")
        assert len(table) == 1
    finally:
        table.close()
    with pytest.raises(CategoryStoreError):
        "example.com" in table


def test_equal_mtimes_are_not_stale(tmp_path):
    src = _write(tmp_path / "ads" / "domains", ["ads.example.com"])
    _age(src)
    build_tables(str(tmp_path), {"ads": "ads"})
    db = compiled_path(src)
    st = src.stat()
    os.utime(db, ns=(st.st_atime_ns, st.st_mtime_ns))

    assert not needs_rebuild(src, db)
    results = build_tables(str(tmp_path), {"ads": "ads"})
    assert [r.built for r in results] == [False]
    assert db.stat().st_mtime_ns == st.st_mtime_ns
