from __future__ import annotations

import re
from typing import Any, Callable, Dict, Optional

from squidguard.services.errors import RedirectConfigError
from squidguard.services.request import Request


# Special redirect value: use the classifier's return value as the target.
CHECKF = "CHECKF"

_MACRO_RE = re.compile(r"%(.)", re.DOTALL)


def _result_text(result: Any) -> str:
    if result is True:
        return "1"
    return str(result)


def _strip_leading_slash(s: str) -> str:
    return s[1:] if s.startswith("/") else s


_MACROS: Dict[str, Callable[[Request, Any], str]] = {
    "a": lambda req, res: req.addr or "",
    "n": lambda req, res: req.fqdn or "unknown",
    "i": lambda req, res: req.ident or "unknown",
    "u": lambda req, res: req.url,
    "p": lambda req, res: _strip_leading_slash(req.path_query),
    "t": lambda req, res: _result_text(res),
    "%": lambda req, res: "%",
}


def render_template(template: str, request: Request, result: Any) -> str:
    """Expand the %-macros of a redirect template.

    %a client address, %n client FQDN, %i user name, %u requested URL,
    %p path and query without the leading "/", %t classifier result, %% a
    literal "%". Other %-sequences are left untouched. The expansion is a
    single pass, so "%%u" renders as a literal "%u".
    """

    def repl(m: "re.Match[str]") -> str:
        fn = _MACROS.get(m.group(1))
        if fn is None:
            return m.group(0)
        return fn(request, result)

    return _MACRO_RE.sub(repl, template)


def build_target(redirect: Optional[str], request: Request, result: Any) -> str:
    """Return the url_rewrite reply for a classifier result ("" = no redirect)."""

    if not result:
        return ""
    if redirect == CHECKF:
        return _result_text(result)
    if not redirect:
        raise RedirectConfigError("A request was submitted, but redir url is not defined")

    target = render_template(redirect, request, result)
    # Squid cannot rewrite a CONNECT into a plain URL, but it honours a 302.
    if request.method == "CONNECT":
        target = "302:" + target
    return target
