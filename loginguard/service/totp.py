"""RFC 6238 time-based one-time passwords for authenticator apps.

Authenticator apps default to HMAC-SHA1, six digits and a 30 second step;
those are the parameters used here.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import time
from typing import Optional
from urllib.parse import quote

from loginguard.logging import get_logger

logger = get_logger(__name__)

INTERVAL = 30
DIGITS = 6


def generate_secret() -> str:
    return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    return f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer)}&digits={DIGITS}"


def generate_code(secret: str, timestamp: float, *, interval: int = INTERVAL) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**DIGITS
    )
    return str(code_int).zfill(DIGITS)


def verify_code(
    secret: Optional[str],
    code: Optional[str],
    *,
    now: Optional[float] = None,
    window: int = 1,
    interval: int = INTERVAL,
) -> bool:
    """Accept the current step or one adjacent step for clock skew."""
    if not secret or not code:
        return False
    normalized = code.replace(" ", "").replace("-", "")
    if len(normalized) != DIGITS or not normalized.isdigit():
        return False
    timestamp = time.time() if now is None else now
    for offset in range(-window, window + 1):
        generated = generate_code(secret, timestamp + offset * interval, interval=interval)
        # Constant-time comparison
        if generated and hmac.compare_digest(generated, normalized):
            return True
    return False
