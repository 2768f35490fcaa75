from __future__ import annotations

import re
from typing import List

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatewarden.config import PasswordPolicy
from gatewarden.logging import get_logger

logger = get_logger(__name__)

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_NUMBER = re.compile(r"\d")
_SYMBOL = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")


def validate_password(password: str, policy: PasswordPolicy) -> List[str]:
    """Return every policy violation for ``password``; empty means acceptable."""
    errors: List[str] = []
    if len(password) < policy.min_length:
        errors.append(f"Password must be at least {policy.min_length} characters long")
    if policy.require_upper and not _UPPER.search(password):
        errors.append("Password must contain at least one uppercase letter")
    if policy.require_lower and not _LOWER.search(password):
        errors.append("Password must contain at least one lowercase letter")
    if policy.require_number and not _NUMBER.search(password):
        errors.append("Password must contain at least one number")
    if policy.require_symbol and not _SYMBOL.search(password):
        errors.append("Password must contain at least one special character")
    return errors


def describe_policy(policy: PasswordPolicy) -> List[str]:
    requirements = [f"At least {policy.min_length} characters"]
    if policy.require_upper:
        requirements.append("One uppercase letter")
    if policy.require_lower:
        requirements.append("One lowercase letter")
    if policy.require_number:
        requirements.append("One number")
    if policy.require_symbol:
        requirements.append("One special character")
    return requirements


class PasswordHashing:
    """Argon2id hashing shared by login, reset and change flows."""

    def __init__(self) -> None:
        self._hasher = PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, stored_hash: str | None, password: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            logger.warning("password_hash_unparseable")
            return True
