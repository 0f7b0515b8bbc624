"""Shared utilities for Kintsugi services."""
from .event_loop import BackgroundEventLoop
from .pii import hash_pii, hash_text_for_audit, configure_pii_salt
from .text import excerpt, is_blank

__all__ = [
    "BackgroundEventLoop",
    "hash_pii",
    "hash_text_for_audit",
    "configure_pii_salt",
    "excerpt",
    "is_blank",
]
