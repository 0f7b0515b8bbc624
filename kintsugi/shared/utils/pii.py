"""Keep identities and chat text out of the logs.

Reviewer ids are logged as a keyed HMAC-SHA256, so the same reviewer
always maps to the same token but the token cannot be reversed or
recomputed without the service's salt. Message text is never logged;
log lines carry an unkeyed fingerprint instead, which is enough to
correlate entries that refer to the same text.
"""
import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

MIN_SALT_LENGTH = 32
AUDIT_FINGERPRINT_LENGTH = 16

# Set once at startup from PII_HASH_SALT
_pii_key: Optional[bytes] = None


def _utf8(text: str) -> bytes:
    # Lone surrogates survive JSON decoding; hash them rather than fail
    return text.encode("utf-8", "surrogatepass")


def configure_pii_salt(salt: str) -> None:
    """Install the secret used by ``hash_pii``.

    Raises:
        ValueError: If the salt is shorter than MIN_SALT_LENGTH
    """
    global _pii_key
    if not salt or len(salt) < MIN_SALT_LENGTH:
        logger.critical("PII_SALT_REJECTED", extra={"min_length": MIN_SALT_LENGTH})
        raise ValueError(f"PII salt must be at least {MIN_SALT_LENGTH} characters")

    _pii_key = _utf8(salt)
    logger.info("PII_SALT_CONFIGURED")


def hash_pii(value: str) -> str:
    """Stable, non-reversible token for an identifier (64 hex chars).

    Raises:
        RuntimeError: If configure_pii_salt() has not been called
    """
    if _pii_key is None:
        logger.critical("PII_HASH_UNCONFIGURED")
        raise RuntimeError("PII salt not configured. Call configure_pii_salt() first.")

    return hmac.new(_pii_key, _utf8(value), hashlib.sha256).hexdigest()


def hash_text_for_audit(text: str) -> str:
    """Short fingerprint of message text for log correlation."""
    return hashlib.sha256(_utf8(text)).hexdigest()[:AUDIT_FINGERPRINT_LENGTH]
