from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urlsplit

from squidguard.services.errors import RequestParseError


_ABSENT = "-"


@dataclass(frozen=True)
class Request:
    """One url_rewrite_program input line, decomposed.

    Squid sends `URL client_ip/fqdn ident method [kv-pairs...]`; absent
    values are sent as "-" and are exposed here as None.
    """

    line: str
    url: str
    scheme: str
    host: str
    port: Optional[int]
    authority: str
    path: str
    query: str
    addr: Optional[str]
    fqdn: Optional[str]
    ident: Optional[str]
    method: Optional[str]
    extras: Tuple[str, ...] = ()

    @property
    def path_query(self) -> str:
        p = self.path or "/"
        if self.query:
            return f"{p}?{self.query}"
        return p

    @property
    def authority_path_query(self) -> str:
        # CONNECT targets carry no path.
        if not self.path and not self.query:
            return self.authority
        return self.authority + self.path_query


def _absent(value: Optional[str]) -> Optional[str]:
    if value is None or value == "" or value == _ABSENT:
        return None
    return value


def _split_client(field: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    if not field:
        return None, None
    if "/" in field:
        addr, fqdn = field.split("/", 1)
        return _absent(addr), _absent(fqdn)
    return _absent(field), None


def _split_url(url: str) -> Tuple[str, str, Optional[int], str, str, str]:
    """Return (scheme, host, port, authority, path, query)."""

    if "://" not in url:
        # CONNECT requests: "host:port" with no scheme or path.
        authority = url.split("/", 1)[0]
        parts = urlsplit("//" + authority)
        return "", (parts.hostname or "").lower(), _port(parts), authority, "", ""

    parts = urlsplit(url)
    return (
        parts.scheme.lower(),
        (parts.hostname or "").lower(),
        _port(parts),
        parts.netloc,
        parts.path,
        parts.query,
    )


def _port(parts) -> Optional[int]:
    try:
        return parts.port
    except ValueError:
        return None


def parse_request(line: str) -> Request:
    raw = (line or "").rstrip("\r\n")
    fields = raw.split()
    if not fields:
        raise RequestParseError("missing URL field in request line")

    url = fields[0]
    try:
        scheme, host, port, authority, path, query = _split_url(url)
    except ValueError as e:
        raise RequestParseError(f"malformed URL {url!r}: {e}") from e

    addr, fqdn = _split_client(fields[1] if len(fields) > 1 else None)
    ident = _absent(fields[2]) if len(fields) > 2 else None
    method = _absent(fields[3]) if len(fields) > 3 else None

    return Request(
        line=raw,
        url=url,
        scheme=scheme,
        host=host,
        port=port,
        authority=authority,
        path=path,
        query=query,
        addr=addr,
        fqdn=fqdn,
        ident=ident,
        method=method.upper() if method else None,
        extras=tuple(fields[4:]),
    )
