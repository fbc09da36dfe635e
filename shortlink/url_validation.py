"""Target URL validation.

Format checking is delegated to the ``validators`` library; on top of it the
service refuses destinations that would turn a redirect into a pivot toward
internal infrastructure: non-HTTP schemes, loopback / private / link-local
hosts and well-known datastore ports.
"""

import ipaddress
from urllib.parse import urlsplit

import validators

__all__ = ["MAX_URL_LENGTH", "validate_target_url"]

MAX_URL_LENGTH = 2048
ALLOWED_SCHEMES = frozenset({"http", "https"})
BLOCKED_HOSTNAMES = frozenset({"localhost", "localhost.localdomain"})
BLOCKED_PORTS = frozenset({6379, 5432, 3306, 27017, 11211, 9200})


def _is_internal_host(hostname: str) -> bool:
    host = hostname.lower().strip("[]")
    if host in BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return (
        address.is_loopback
        or address.is_private
        or address.is_link_local
        or address.is_unspecified
        or address.is_reserved
    )


def validate_target_url(url: str) -> str:
    """Return the trimmed URL or raise ``ValueError`` describing the problem."""
    candidate = (url or "").strip()
    if not candidate:
        raise ValueError("URL must not be empty")
    if len(candidate) > MAX_URL_LENGTH:
        raise ValueError(f"URL must be at most {MAX_URL_LENGTH} characters")

    parts = urlsplit(candidate)
    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise ValueError("Only http and https URLs are allowed")
    if not parts.hostname:
        raise ValueError("URL must include a host")
    if _is_internal_host(parts.hostname):
        raise ValueError("Internal network addresses are not allowed")
    try:
        port = parts.port
    except ValueError as exc:
        raise ValueError("URL port is invalid") from exc
    if port in BLOCKED_PORTS:
        raise ValueError(f"Port {port} is not allowed")
    if not validators.url(candidate):
        raise ValueError("Invalid URL provided")
    return candidate
