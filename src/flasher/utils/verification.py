"""Digest helpers for firmware buffers."""

import hashlib
import logging


def compute_md5(data: bytes) -> str:
    """Compute the MD5 hex digest of a firmware buffer.

    Args:
        data: Firmware binary

    Returns:
        32-character hex MD5 hash string
    """
    return hashlib.md5(data).hexdigest()


def verify_md5(data: bytes, expected_md5: str) -> bool:
    """Check a buffer against an expected MD5 digest.

    Raises:
        ValueError: If expected_md5 is not a 32-char hex string
    """
    logger = logging.getLogger("flasher.verification")

    if not isinstance(expected_md5, str) or len(expected_md5) != 32:
        raise ValueError(f"Invalid MD5 format: {expected_md5} (must be 32-char hex)")

    actual_md5 = compute_md5(data)
    match = actual_md5 == expected_md5.lower()
    if not match:
        logger.error(f"MD5 mismatch: expected {expected_md5}, got {actual_md5}")
    return match
