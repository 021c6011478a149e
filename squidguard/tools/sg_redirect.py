#!/usr/bin/env python3
"""Squid url_rewrite_program helper: redirect requests by category.

squid.conf:
    url_rewrite_program /usr/bin/squidguard-redirect --config /etc/squidguard.yaml
"""
from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence, TextIO

from squidguard.services.category_store import CategoryStore
from squidguard.services.errors import ConfigError, SquidGuardError, describe_error
from squidguard.services.groups import make_group_oracle
from squidguard.services.logutil import configure_logging
from squidguard.services.matcher import Matcher
from squidguard.services.policy import CategoryPolicy, load_classifier
from squidguard.services.redirector import Redirector
from squidguard.services.settings import (
    GuardSettings,
    apply_overrides,
    env_default,
    load_settings,
    undeclared_categories,
)


logger = logging.getLogger("squidguard.tools.sg_redirect")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Squid redirector: block or redirect requests by URL category.")
    ap.add_argument("--config", default=env_default("SQUIDGUARD_CONFIG"), help="YAML settings file")
    ap.add_argument("--dbdir", default=env_default("SQUIDGUARD_DBDIR") or None, help="Directory holding the category subdirectories")
    ap.add_argument(
        "--category",
        action="append",
        metavar="NAME[=LOCATION]",
        help="Declare a category (location defaults to NAME, relative to --dbdir); repeatable",
    )
    ap.add_argument(
        "--redirect",
        default=env_default("SQUIDGUARD_REDIRECT") or None,
        help="Redirect template (%%a %%n %%i %%u %%p %%t %%%%), or CHECKF to use the classifier result",
    )
    ap.add_argument("--classifier", default=None, help="Custom classifier as module:function")
    ap.add_argument("--block", default=None, help="Comma-separated categories to redirect (stock policy)")
    ap.add_argument("--allow", default=None, help="Comma-separated categories that are never redirected")
    ap.add_argument("--block-ip", action="store_true", default=None, help="Also redirect requests for literal IP addresses")
    ap.add_argument("--groups", choices=["none", "unix", "winbind"], default=None, help="Group membership backend for classifiers")
    ap.add_argument("--oneshot", action="store_true", default=None, help="Handle a single request then exit")
    ap.add_argument("-v", "--verbose", action="store_true", default=None)
    ap.add_argument("-d", "--debug", action="store_true", default=None)
    ap.add_argument("--log-level", default=env_default("SQUIDGUARD_LOG_LEVEL") or None, help="Override the log level (DEBUG, INFO, ...)")
    return ap


def resolve_settings(args: argparse.Namespace) -> GuardSettings:
    s = load_settings(args.config or None)
    return apply_overrides(
        s,
        dbdir=args.dbdir,
        categories=args.category,
        redirect=args.redirect,
        classifier=args.classifier,
        block=args.block,
        allow=args.allow,
        block_ip=args.block_ip,
        groups=args.groups,
        oneshot=args.oneshot,
        verbose=args.verbose,
        debug=args.debug,
    )


def make_classifier(settings: GuardSettings):
    if settings.classifier:
        return load_classifier(settings.classifier)
    if not settings.block and not settings.block_ip:
        return None
    missing = undeclared_categories(settings)
    if missing:
        raise ConfigError(f"Undeclared categories in allow/block: {', '.join(missing)}")
    return CategoryPolicy(allow=settings.allow, block=settings.block, block_ip=settings.block_ip)


def tolerant_stream(stream: TextIO) -> TextIO:
    """Pass undecodable bytes through as surrogates instead of raising.

    Squid forwards URLs byte for byte; one non-UTF-8 request must not end the helper.
    """
    reconfigure = getattr(stream, "reconfigure", None)
    if reconfigure is not None:
        reconfigure(errors="surrogateescape")
    return stream


def serve(settings: GuardSettings, stdin: TextIO, stdout: TextIO) -> int:
    classifier = make_classifier(settings)
    if classifier is None:
        logger.warning("No classifier and no blocked categories configured; every request passes")
    groups = make_group_oracle(settings.groups)

    with CategoryStore.open(settings.dbdir, settings.categories) as store:
        logger.info("Loaded %d categories from %s", len(store.names()), settings.dbdir)
        redirector = Redirector(
            Matcher(store, groups=groups),
            classifier,
            settings.redirect,
            oneshot=settings.oneshot,
        )
        return redirector.run(stdin, stdout)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    try:
        settings = resolve_settings(args)
    except ConfigError as e:
        configure_logging(level=args.log_level)
        logger.error("%s", describe_error(e))
        return 2

    configure_logging(verbose=settings.verbose, debug=settings.debug, level=args.log_level)

    try:
        serve(settings, tolerant_stream(sys.stdin), tolerant_stream(sys.stdout))
    except ConfigError as e:
        logger.error("%s", describe_error(e))
        return 2
    except (SquidGuardError, OSError) as e:
        logger.error("%s", describe_error(e))
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
