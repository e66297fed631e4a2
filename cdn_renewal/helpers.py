"""
Common utility functions.

Provides helper functions for expiry arithmetic, certificate naming,
PEM text handling and private temporary files.
"""

import os
import re
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes

# Renew once a certificate has this many seconds or fewer left (30 days).
RENEWAL_THRESHOLD_SECONDS = 30 * 24 * 60 * 60

FINGERPRINT_LENGTH = 16


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp from the API into an aware UTC datetime.

    Accepts a trailing "Z" and naive values (which are taken as UTC).

    Args:
        value: Timestamp string, e.g. "2026-11-02T12:00:00Z"

    Returns:
        Timezone-aware UTC datetime

    Raises:
        ValueError: If the value is not a valid timestamp
    """
    if not isinstance(value, str) or not value:
        raise ValueError(f"Invalid timestamp: {value!r}")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def seconds_remaining(not_after: datetime, now: Optional[datetime] = None) -> int:
    """
    Whole seconds left until expiry (negative once expired).

    Args:
        not_after: Certificate expiry (timezone-aware; naive is taken as UTC)
        now: Reference instant, defaults to the current time

    Returns:
        Integer seconds, truncated toward zero
    """
    if not_after.tzinfo is None:
        not_after = not_after.replace(tzinfo=timezone.utc)
    if now is None:
        now = utcnow()
    return int((not_after - now).total_seconds())


def needs_renewal(remaining: int, threshold: int = RENEWAL_THRESHOLD_SECONDS) -> bool:
    """True once the remaining lifetime is at or below the threshold."""
    return remaining <= threshold


def format_days_remaining(remaining: Optional[int]) -> Union[int, str]:
    """
    Convert remaining seconds to whole days.

    Returns:
        Number of days remaining (negative if expired), or "unknown"
    """
    if remaining is None:
        return "unknown"
    return int(remaining // 86400)


def format_expiration_status(remaining: Optional[int]) -> str:
    """
    Format a human-readable expiration status.

    Args:
        remaining: Seconds until expiry

    Returns:
        Formatted status string
    """
    days = format_days_remaining(remaining)

    if isinstance(days, str):
        return "Unknown expiration"

    if remaining < 0:
        return f"EXPIRED ({abs(days)} days ago)"
    elif days == 0:
        return "EXPIRES TODAY"
    elif needs_renewal(remaining):
        return f"EXPIRING in {days} day{'s' if days != 1 else ''}"
    else:
        return f"Valid ({days} days remaining)"


def certificate_fingerprint(leaf_pem: bytes) -> str:
    """
    SHA-1 fingerprint of a PEM leaf certificate, as lowercase hex.

    This is the digest of the DER encoding, the same value the certificate
    API reports as sha1_fingerprint.

    Raises:
        ValueError: If the data is not a PEM certificate
    """
    cert = x509.load_pem_x509_certificate(leaf_pem)
    return cert.fingerprint(hashes.SHA1()).hex()


def sanitize_domain(domain: str) -> str:
    """
    Turn a domain into a name-safe label.

    "*.Example.com" becomes "wildcard-example-com".
    """
    name = domain.strip().lower()
    if name.startswith("*."):
        name = "wildcard." + name[2:]
    name = re.sub(r"[^a-z0-9]+", "-", name)
    return name.strip("-")


def certificate_name(domain: str, leaf_pem: bytes) -> str:
    """
    Derive the store name for a certificate from its domain and leaf.

    Identical leaf bytes for the same domain always give the same name.

    Examples:
        >>> certificate_name("example.com", leaf)
        "example-com-3f2a9c0d11b4e6a7"
    """
    fingerprint = certificate_fingerprint(leaf_pem)[:FINGERPRINT_LENGTH]
    return f"{sanitize_domain(domain)}-{fingerprint}"


def certificate_not_after(leaf_pem: bytes) -> datetime:
    """Expiry of a PEM certificate (timezone-aware UTC)."""
    cert = x509.load_pem_x509_certificate(leaf_pem)
    return cert.not_valid_after_utc


def pem_to_text(data: bytes) -> str:
    """
    Decode PEM material for a JSON string field, byte-for-byte.

    Raises:
        ValueError: If the material is empty or not ASCII
    """
    if not data:
        raise ValueError("PEM material is empty")
    try:
        return data.decode("ascii")
    except UnicodeDecodeError as e:
        raise ValueError(f"PEM material is not ASCII text: {e}") from e


@contextmanager
def private_temp_file(
    prefix: str,
    suffix: str = "",
    content: Optional[str] = None,
    mode: int = 0o600,
    directory: Optional[str] = None,
) -> Iterator[str]:
    """
    Create a private temporary file and always remove it afterwards.

    Removal happens on every exit path, including exceptions and
    KeyboardInterrupt.

    Args:
        prefix: File name prefix
        suffix: File name suffix
        content: Optional text to write into the file
        mode: Permission bits applied before content is written
        directory: Where to create the file, defaults to the system temp dir

    Yields:
        Path of the temporary file
    """
    fd, path = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=directory)
    try:
        try:
            os.fchmod(fd, mode)
            if content:
                os.write(fd, content.encode())
        finally:
            os.close(fd)
        yield path
    finally:
        if os.path.exists(path):
            os.unlink(path)
