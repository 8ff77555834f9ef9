from __future__ import annotations

import hashlib
import secrets
from datetime import datetime

ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
DEFAULT_CODE_LENGTH = 8
DEFAULT_CODE_PREFIX = "CEL-"


def generate_referral_code(
    length: int = DEFAULT_CODE_LENGTH,
    *,
    prefix: str = DEFAULT_CODE_PREFIX,
) -> str:
    """Generates a prefixed uppercase referral code with low typo ambiguity."""
    if length <= 0:
        raise ValueError("length must be positive")
    return prefix + "".join(secrets.choice(ALPHABET) for _ in range(length))


def derive_fallback_referral_code(
    owner_user_id: str,
    *,
    at: datetime,
    length: int = DEFAULT_CODE_LENGTH,
    prefix: str = DEFAULT_CODE_PREFIX,
) -> str:
    """Builds a code from the owner id and a timestamp, used once random codes keep colliding."""
    if length <= 0:
        raise ValueError("length must be positive")
    seed = f"{owner_user_id}:{at.timestamp():.6f}".encode("utf-8")
    digest = hashlib.sha256(seed).hexdigest().upper()
    return prefix + digest[:length]


def normalize_referral_code(raw_code: str | None) -> str:
    if raw_code is None:
        return ""
    return raw_code.strip().upper()
