"""URL normalization and same-origin checks.

Pure functions with no I/O. ``normalize_url`` is the identity used for
deduplicating pages within a site, so it must be idempotent.
"""

from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .errors import MalformedURL

DEFAULT_PORTS = {"http": 80, "https": 443}


def _split(url: str):
    if not isinstance(url, str) or not url.strip():
        raise MalformedURL(f"Invalid URL: {url!r}")
    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except ValueError as e:
        raise MalformedURL(f"Invalid URL: {url} ({e})") from e
    scheme = parts.scheme.lower()
    if scheme not in DEFAULT_PORTS or not parts.hostname:
        raise MalformedURL(f"Invalid URL: {url}")
    return parts, scheme, port


def normalize_url(url: str) -> str:
    """Return the canonical form of ``url``.

    Lowercases scheme and host, drops the fragment and default ports, strips
    trailing slashes (except the root path) and sorts query parameters by key,
    then by value for repeated keys.

    Raises:
        MalformedURL: if ``url`` is not an absolute http(s) URL.
    """
    parts, scheme, port = _split(url)

    host = parts.hostname
    if ":" in host:
        host = f"[{host}]"
    netloc = host
    if port is not None and port != DEFAULT_PORTS[scheme]:
        netloc = f"{host}:{port}"
    if parts.username:
        userinfo = parts.username
        if parts.password:
            userinfo += f":{parts.password}"
        netloc = f"{userinfo}@{netloc}"

    path = parts.path or "/"
    if path != "/":
        path = path.rstrip("/") or "/"

    query = ""
    if parts.query:
        pairs = sorted(parse_qsl(parts.query, keep_blank_values=True))
        query = urlencode(pairs)

    return urlunsplit((scheme, netloc, path, query, ""))


def _effective_port(url: str):
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if not scheme or not parts.hostname:
        raise ValueError(f"not an absolute URL: {url}")
    return scheme, parts.hostname, parts.port or DEFAULT_PORTS.get(scheme)


def same_origin(a: str, b: str) -> bool:
    """True when scheme, host and effective port match. Invalid input is never same-origin."""
    try:
        return _effective_port(a) == _effective_port(b)
    except (ValueError, TypeError, AttributeError):
        return False


def origin_of(url: str) -> str:
    """``scheme://host[:port]`` of an already valid URL."""
    parts, scheme, port = _split(url)
    netloc = parts.hostname
    if port is not None and port != DEFAULT_PORTS[scheme]:
        netloc = f"{netloc}:{port}"
    return f"{scheme}://{netloc}"


def extract_domain(url: str) -> str:
    """Lowercased hostname of ``url``.

    Raises:
        MalformedURL: if the URL is invalid or its host has no dot.
    """
    parts, _, _ = _split(url)
    hostname = parts.hostname.lower()
    if "." not in hostname:
        raise MalformedURL(f"Invalid domain: {hostname}")
    return hostname


def is_within_domain_limit(url: str, domain_limit: Optional[str]) -> bool:
    """True when ``url`` is on ``domain_limit`` or one of its subdomains."""
    if not domain_limit:
        return True
    try:
        domain = extract_domain(url)
    except MalformedURL:
        return False
    limit = domain_limit.lower().strip(".")
    return domain == limit or domain.endswith(f".{limit}")
