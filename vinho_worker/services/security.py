"""
Image URL validation.

The extraction and embedding services hand image URLs to third-party
APIs that fetch them server-side, so only HTTPS URLs on the storage
hosts we trust are allowed through.
"""

import ipaddress
import logging
from typing import Optional
from urllib.parse import urlparse

from ..config import Config
from ..errors import ImageUrlRejectedError

logger = logging.getLogger(__name__)

# Host names that resolve to internal or cloud metadata services
BLOCKED_HOST_NAMES = [
    "localhost",
    "metadata.google",
]


def is_internal_address(hostname: str) -> bool:
    """True for an IP literal in loopback, private, link-local or reserved space."""
    try:
        address = ipaddress.ip_address(hostname.strip("[]"))
    except ValueError:
        return False
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_unspecified
        or address.is_reserved
    )


def is_valid_image_url(url: Optional[str], trusted_hosts: Optional[list[str]] = None) -> bool:
    """
    Check an image URL against the SSRF policy.

    Args:
        url: Candidate image URL
        trusted_hosts: Host suffixes to allow. Defaults to Config.trusted_image_hosts()

    Returns:
        True if the URL is HTTPS, not an internal address and on a trusted host
    """
    if not url:
        return False

    try:
        parsed = urlparse(url)
    except ValueError:
        logger.info(f"Rejected unparseable image URL: {url[:200]}")
        return False

    if parsed.scheme != "https":
        logger.info(f"Rejected non-HTTPS image URL: {url[:200]}")
        return False

    hostname = (parsed.hostname or "").lower()
    if not hostname:
        return False

    if is_internal_address(hostname) or any(name in hostname for name in BLOCKED_HOST_NAMES):
        logger.info(f"Rejected blocked image host: {hostname}")
        return False

    if trusted_hosts is None:
        trusted_hosts = Config.trusted_image_hosts()

    for suffix in trusted_hosts:
        suffix = suffix.lower()
        if hostname.endswith(suffix) or hostname == suffix.lstrip("."):
            return True

    logger.info(f"Rejected untrusted image host: {hostname}")
    return False


def require_valid_image_url(url: Optional[str]) -> str:
    """Return the URL unchanged, or raise ImageUrlRejectedError."""
    if not is_valid_image_url(url):
        raise ImageUrlRejectedError(url or "")
    return url
