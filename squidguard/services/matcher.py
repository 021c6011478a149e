from __future__ import annotations

import ipaddress
import logging
from typing import Iterable, List, Optional

from squidguard.services.category_store import CategoryStore
from squidguard.services.groups import GroupOracle
from squidguard.services.request import Request


logger = logging.getLogger(__name__)


def domain_suffixes(host: Optional[str]) -> List[str]:
    """Return the domains `host` is nested in, top label first.

    www.example.com -> com, example.com, www.example.com
    """

    if not host:
        return []
    labels = host.split(".")
    while labels and not labels[-1]:
        labels.pop()
    n = len(labels)
    return [".".join(labels[i:]) for i in range(n - 1, -1, -1)]


def uri_prefixes(uri: Optional[str]) -> List[str]:
    """Return the URIs containing `uri`, shortest first.

    Every prefix but the full one is also returned with a trailing slash, as
    published url lists carry both "host/dir" and "host/dir/".
    """

    if not uri:
        return []
    parts = uri.split("/")
    while parts and not parts[-1]:
        parts.pop()
    out: List[str] = []
    last = len(parts) - 1
    for i in range(len(parts)):
        sub = "/".join(parts[: i + 1])
        out.append(sub)
        if i < last:
            out.append(sub + "/")
    return out


def is_literal_ip(host: Optional[str]) -> bool:
    h = (host or "").strip()
    if h.startswith("[") and h.endswith("]"):
        h = h[1:-1]
    if not h:
        return False
    try:
        ipaddress.ip_address(h)
    except ValueError:
        return False
    return True


class Matcher:
    """Category membership tests handed to the classifier with every request."""

    def __init__(self, store: CategoryStore, groups: Optional[GroupOracle] = None):
        self.store = store
        self.groups = groups

    def matches(self, request: Request, category: str) -> bool:
        cat = self.store.get(category)

        if cat.domains is not None:
            logger.debug(" Check %s in %s domains", request.host, category)
            for cand in domain_suffixes(request.host.lower()):
                logger.debug("  Check %s", cand)
                if cand in cat.domains:
                    logger.debug("   FOUND")
                    return True

        if cat.urls is not None:
            # authority + optional path + optional query
            what = request.authority_path_query.lower()
            logger.debug(" Check %s in %s urls", what, category)
            for cand in uri_prefixes(what):
                logger.debug("  Check %s", cand)
                if cand in cat.urls:
                    logger.debug("   FOUND")
                    return True

        if cat.expressions is not None:
            logger.debug(" Check %s in %s expressions", request.url, category)
            for rx in cat.expressions:
                logger.debug("  Check %s", rx.pattern)
                if rx.search(request.url):
                    logger.debug("   FOUND")
                    return True

        return False

    def match_any(self, request: Request, categories: Iterable[str]) -> Optional[str]:
        """Return the first of `categories` the request belongs to, or None."""

        if isinstance(categories, str):
            categories = (categories,)
        for name in categories:
            if self.matches(request, name):
                return name
        return None

    def match_all(self, request: Request, categories: Iterable[str]) -> bool:
        if isinstance(categories, str):
            categories = (categories,)
        names = list(categories)
        if not names:
            return False
        return all(self.matches(request, name) for name in names)

    def in_group(self, user: Optional[str], group: str) -> bool:
        if not user or self.groups is None:
            return False
        return self.groups.is_member(user, group)

    def is_ip_request(self, request: Request) -> bool:
        return is_literal_ip(request.host)
