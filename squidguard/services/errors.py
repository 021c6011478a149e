from __future__ import annotations

import os
import re


class SquidGuardError(Exception):
    """Base class for redirector failures."""


class ConfigError(SquidGuardError):
    pass


class RedirectConfigError(ConfigError):
    """A redirect was needed but no target template is configured."""


class UnknownCategoryError(SquidGuardError, KeyError):
    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"The requested category {self.name} does not exist"


class CategoryStoreError(SquidGuardError):
    """A compiled table or expression list could not be opened, read or written."""


class RequestParseError(SquidGuardError, ValueError):
    pass


def expose_internal_errors() -> bool:
    return (os.environ.get("SQUIDGUARD_EXPOSE_INTERNAL_ERRORS") or "").strip().lower() in (
        "1",
        "true",
        "yes",
        "on",
    )


def clean_text(text: str, *, max_len: int = 200) -> str:
    s = (text or "").replace("\r", " ").replace("\n", " ").strip()
    # Undecodable request bytes arrive as lone surrogates.
    s = s.encode("utf-8", "backslashreplace").decode("utf-8")
    # Remove other control chars.
    s = "".join(ch if (ch >= " " and ch != "\x7f") else " " for ch in s)
    s = re.sub(r"\s+", " ", s).strip()
    if max_len and len(s) > max_len:
        s = s[: max_len - 3].rstrip() + "..."
    return s


def describe_error(
    e: BaseException,
    *,
    default: str = "Unexpected failure. Re-run with --debug for details.",
    max_len: int = 300,
) -> str:
    """Return a one-line message for a fatal error.

    - SquidGuardError and OSError messages describe misconfiguration and are shown as-is.
    - Anything else is reported generically unless SQUIDGUARD_EXPOSE_INTERNAL_ERRORS is set.
    """
    if expose_internal_errors():
        detail = clean_text(f"{type(e).__name__}: {e}", max_len=max_len)
        return detail or default

    if isinstance(e, (SquidGuardError, OSError)):
        msg = clean_text(str(e), max_len=max_len)
        return msg or default

    return default
