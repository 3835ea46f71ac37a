import hashlib
import re
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

import tldextract


class InvalidUrlError(ValueError):
    pass


_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z\d+.-]*://")
_HOST_RE = re.compile(r"^[a-z0-9-]+(\.[a-z0-9-]+)+$|^\d{1,3}(\.\d{1,3}){3}$")

# Bundled public suffix snapshot; no fetch at runtime
_extract = tldextract.TLDExtract(suffix_list_urls=())


def normalize_url(raw: Optional[str]) -> str:
    """
    Canonical form used for hashing: http(s) scheme, lowercase host,
    no fragment, no default port, and "/" for an empty path.
    """
    value = (raw or "").strip()
    if not value:
        raise InvalidUrlError("Please provide a URL.")

    if not _SCHEME_RE.match(value):
        value = "https://" + value

    try:
        parts = urlsplit(value)
        port = parts.port
    except ValueError as e:
        raise InvalidUrlError(f"Malformed URL: {e}") from e

    scheme = parts.scheme.lower()
    if scheme not in ("http", "https"):
        raise InvalidUrlError("Only http(s) URLs can be rated.")

    host = (parts.hostname or "").rstrip(".")
    if not _HOST_RE.match(host):
        raise InvalidUrlError("Please enter a valid website domain.")

    netloc = host
    if port and not ((scheme == "http" and port == 80) or (scheme == "https" and port == 443)):
        netloc = f"{host}:{port}"

    return urlunsplit((scheme, netloc, parts.path or "/", parts.query, ""))


def extract_domain(normalized_url: str) -> str:
    """Hostname without a leading "www."."""
    host = urlsplit(normalized_url).hostname or ""
    return host[4:] if host.startswith("www.") else host


def hash_url(normalized_url: str) -> str:
    return hashlib.sha256(normalized_url.encode("utf-8")).hexdigest()


def hash_user(subject: str) -> str:
    return hashlib.sha256(subject.encode("utf-8")).hexdigest()


def registrable_domain(domain: str) -> str:
    """Registrable domain used for registry lookups (a.b.example.com -> example.com, news.bbc.co.uk -> bbc.co.uk)."""
    ext = _extract(domain)
    if ext.domain and ext.suffix:
        return f"{ext.domain}.{ext.suffix}"
    return domain
