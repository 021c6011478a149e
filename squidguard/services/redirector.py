from __future__ import annotations

import logging
from typing import Any, Callable, Optional, TextIO, Union

from squidguard.services.errors import RedirectConfigError, RequestParseError, clean_text
from squidguard.services.matcher import Matcher
from squidguard.services.redirect import build_target
from squidguard.services.request import Request, parse_request


logger = logging.getLogger(__name__)


Classifier = Callable[[Matcher, Request], Any]


class Redirector:
    """Squid url_rewrite_program driver.

    Reads one request per line and answers each with exactly one line: the
    redirect target, or an empty line to leave the request alone. Squid
    waits for every answer before sending the next request, so each reply is
    flushed as soon as it is written.
    """

    def __init__(
        self,
        matcher: Matcher,
        classifier: Optional[Classifier],
        redirect: Optional[str],
        *,
        oneshot: bool = False,
    ):
        self.matcher = matcher
        self.classifier = classifier
        self.redirect = redirect
        self.oneshot = oneshot

    def handle(self, arg: Union[str, Request]) -> str:
        if self.classifier is None:
            return ""

        if isinstance(arg, Request):
            req = arg
        else:
            try:
                req = parse_request(arg)
            except RequestParseError as e:
                logger.warning("Ignoring request %r: %s", clean_text(str(arg)), e)
                return ""

        result = self.classifier(self.matcher, req)
        return build_target(self.redirect, req, result)

    def run(self, stdin: TextIO, stdout: TextIO) -> int:
        """Serve requests until end of input (or after one, in oneshot mode)."""

        if not self.redirect:
            raise RedirectConfigError("Can not run when redir url is not defined")

        handled = 0
        while True:
            line = stdin.readline()
            if not line:
                break
            line = line.rstrip("\r\n")
            logger.info("Examining %s", clean_text(line, max_len=2000))

            target = self.handle(line)
            if "\n" in target or "\r" in target:
                logger.warning("Redirect target spans several lines, keeping the first: %r", target)
                target = target.splitlines()[0] if target.strip() else ""
            if target:
                logger.info("Returning %s", target)
            stdout.write(target + "\n")
            stdout.flush()
            handled += 1

            if self.oneshot:
                break
        return handled
