"""Common storage utilities shared between memory and postgres implementations.

Both back ends normalize emails, validate field updates and encrypt
two-factor secrets the same way; the helpers live here so the two stores
cannot drift apart.
"""

from __future__ import annotations

import base64
import hashlib
import os
import uuid
from datetime import datetime, timezone
from ipaddress import ip_address
from typing import Any, Dict, Iterable, Optional

from cryptography.fernet import Fernet, InvalidToken

from loginguard.logging import get_logger
from loginguard.storage.errors import UnknownFieldError
from loginguard.storage.models import USER_MUTABLE_FIELDS

logger = get_logger(__name__)


# ============================================================================
# FIELD HELPERS
# ============================================================================

def normalize_email(email: str) -> str:
    """Emails are unique case-insensitively; stores keep the lowered form."""
    return (email or "").strip().lower()


def validate_user_fields(fields: Iterable[str]) -> None:
    unknown = set(fields) - USER_MUTABLE_FIELDS
    if unknown:
        raise UnknownFieldError(unknown)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes coming back from storage as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_ip_address(raw_ip: Any) -> Optional[str]:
    """Return a canonical textual IP, or None when the value is not an address."""
    if raw_ip is None:
        return None
    stripped = str(raw_ip).strip()
    if not stripped:
        return None
    try:
        return str(ip_address(stripped))
    except ValueError:
        return None


# ============================================================================
# TWO-FACTOR SECRET ENCRYPTION
# ============================================================================

def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_secret_cipher(key_material: Optional[str]) -> Fernet:
    """Build the Fernet cipher used for two-factor secrets at rest."""
    material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
    if not material:
        raise RuntimeError(
            "MFA_SECRET_KEY or JWT_SECRET must be set to store two-factor secrets"
        )
    return Fernet(_derive_cipher_key(material))


def encrypt_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return secret
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return secret
    try:
        return cipher.decrypt(secret.encode()).decode()
    except InvalidToken:
        logger.warning("mfa_secret_decrypt_failed")
        return None


def encrypt_fields(cipher: Fernet, fields: Dict[str, Any]) -> Dict[str, Any]:
    if "two_factor_secret" not in fields:
        return fields
    stored = dict(fields)
    stored["two_factor_secret"] = encrypt_secret(cipher, fields["two_factor_secret"])
    return stored


def generate_uuid() -> str:
    return str(uuid.uuid4())


def parse_user_id(raw: Any) -> Optional[str]:
    """Canonical UUID text, or None for anything a UUID column would reject."""
    if raw is None:
        return None
    try:
        return str(uuid.UUID(str(raw).strip()))
    except ValueError:
        return None
