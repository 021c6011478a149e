#!/usr/bin/env python3
"""Compile category domains/urls lists into lookup tables.

Run after updating the plaintext lists, while no redirector uses them:

    squidguard-build --config /etc/squidguard.yaml
"""
from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

from squidguard.services.category_store import build_tables
from squidguard.services.errors import ConfigError, SquidGuardError, describe_error
from squidguard.services.logutil import configure_logging
from squidguard.services.settings import apply_overrides, env_default, load_settings


logger = logging.getLogger("squidguard.tools.sg_build")


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Create/update the compiled tables of squidguard categories.")
    ap.add_argument("--config", default=env_default("SQUIDGUARD_CONFIG"), help="YAML settings file")
    ap.add_argument("--dbdir", default=env_default("SQUIDGUARD_DBDIR") or None)
    ap.add_argument("--category", action="append", metavar="NAME[=LOCATION]", help="Category to compile; repeatable")
    ap.add_argument("--force", action="store_true", default=None, help="Rebuild even when tables are up to date")
    ap.add_argument("-v", "--verbose", action="store_true", default=None)
    args = ap.parse_args(list(argv) if argv is not None else None)

    try:
        settings = apply_overrides(
            load_settings(args.config or None),
            dbdir=args.dbdir,
            categories=args.category,
            force_db_update=args.force,
            verbose=args.verbose,
        )
    except ConfigError as e:
        print(f"[sgbuild] {describe_error(e)}", file=sys.stderr)
        return 2

    configure_logging(verbose=settings.verbose, debug=settings.debug)

    if not settings.categories:
        print("[sgbuild] no categories specified (set --category or 'categories' in --config); skipping", file=sys.stderr)
        return 0

    try:
        results = build_tables(settings.dbdir, settings.categories, force=settings.force_db_update)
    except (SquidGuardError, OSError) as e:
        print(f"[sgbuild] {describe_error(e)}", file=sys.stderr)
        return 1

    built = [r for r in results if r.built]
    for r in built:
        print(f"[sgbuild] built {r.compiled}: {r.keys} keys", file=sys.stderr)
    print(
        f"[sgbuild] {len(built)} tables built, {len(results) - len(built)} up to date, "
        f"{len(settings.categories)} categories",
        file=sys.stderr,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
