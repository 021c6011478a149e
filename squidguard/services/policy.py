from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Tuple

from squidguard.services.errors import ConfigError
from squidguard.services.matcher import Matcher
from squidguard.services.request import Request


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CategoryPolicy:
    """Classifier driven by category lists instead of code.

    Requests in an `allow` category pass. Otherwise the first `block`
    category the request belongs to is returned, so templates can show it
    through %t. With `block_ip`, requests for a literal IP address are
    blocked too (they bypass every domain list).
    """

    allow: Tuple[str, ...] = field(default_factory=tuple)
    block: Tuple[str, ...] = field(default_factory=tuple)
    block_ip: bool = False

    def __call__(self, matcher: Matcher, request: Request) -> Optional[str]:
        if self.allow and matcher.match_any(request, self.allow):
            return None
        hit = matcher.match_any(request, self.block)
        if hit:
            return hit
        if self.block_ip and matcher.is_ip_request(request):
            return "ip"
        return None


def load_classifier(ref: str) -> Callable[[Matcher, Request], Any]:
    """Import a classifier given as "package.module:attribute"."""

    mod_name, sep, attr = (ref or "").strip().partition(":")
    if not sep or not mod_name or not attr:
        raise ConfigError(f"Classifier must look like 'module:function', got {ref!r}")
    try:
        mod = importlib.import_module(mod_name)
    except ImportError as e:
        raise ConfigError(f"Cannot import classifier module {mod_name}: {e}") from e

    obj: Any = mod
    for part in attr.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError:
            raise ConfigError(f"Classifier {ref!r} not found") from None
    if not callable(obj):
        raise ConfigError(f"Classifier {ref!r} is not callable")
    logger.debug("Using classifier %s", ref)
    return obj
