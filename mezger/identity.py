"""
Stable listing identity.

A ListingID is "<source>-<digest>" where digest is the first 16 hex chars
of the SHA-256 of the normalised link. The source prefix keeps ids readable
in the JSON document; the digest keeps them fixed-length and collision
resistant across distinct links.
"""
import hashlib
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

from mezger.errors import MalformedRecord

_DIGEST_LEN = 16


def normalize_link(link: str, base_url: Optional[str] = None) -> str:
    """
    Canonicalise a listing URL before identity resolution.

    Resolves relative links against base_url, lower-cases scheme and host,
    drops the fragment, default ports and trailing slashes, and sorts the
    query string.
    """
    link = (link or "").strip()
    if not link or link == "#":
        return ""
    if base_url:
        link = urljoin(base_url, link)

    parts  = urlsplit(link)
    scheme = parts.scheme.lower()
    netloc = parts.netloc.lower()
    if (scheme == "http" and netloc.endswith(":80")) or (scheme == "https" and netloc.endswith(":443")):
        netloc = netloc.rsplit(":", 1)[0]

    path  = parts.path.rstrip("/")
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    return urlunsplit((scheme, netloc, path, query, ""))


def resolve(source: str, link: str) -> str:
    """Derive the ListingID for (source, link). Pure; rejects an empty link."""
    if not link or not link.strip():
        raise MalformedRecord(f"[{source}] cannot resolve id for empty link")
    if not source or not source.strip():
        raise MalformedRecord(f"cannot resolve id for {link!r} without a source")
    digest = hashlib.sha256(link.strip().encode("utf-8")).hexdigest()[:_DIGEST_LEN]
    return f"{source.strip()}-{digest}"
