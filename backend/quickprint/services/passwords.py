# Overview: Password and backup-code hashing.

"""
Password hashing

SECURITY NOTES:
- Account passwords use Argon2id (argon2-cffi defaults, memory-hard)
- Backup codes use bcrypt (cost factor 12), one hash per code
- Minimum 8 characters with at least one letter and one digit
- Verification never raises on a bad or foreign hash; it returns False
"""

from __future__ import annotations

import re
import secrets
import string

import bcrypt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

_hasher = PasswordHasher()

BACKUP_CODE_COUNT = 10
_BACKUP_ALPHABET = string.ascii_uppercase + string.digits


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Requirements:
    - Minimum 8 characters
    - At least one letter
    - At least one digit

    Raises PasswordValidationError if requirements not met.
    """
    if not password or len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters")

    if not re.search(r"[A-Za-z]", password):
        raise PasswordValidationError("Password must contain at least one letter")

    if not re.search(r"\d", password):
        raise PasswordValidationError("Password must contain at least one digit")


def hash_password(password: str) -> str:
    """Validate then hash with Argon2id."""
    validate_password_strength(password)
    return _hasher.hash(password)


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password or not password_hash:
        return False
    try:
        return _hasher.verify(password_hash, password)
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return False


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> list[str]:
    """Plaintext codes in XXXX-XXXX form. Shown to the user exactly once."""
    codes = []
    for _ in range(count):
        raw = "".join(secrets.choice(_BACKUP_ALPHABET) for _ in range(8))
        codes.append(f"{raw[:4]}-{raw[4:]}")
    return codes


def normalize_backup_code(code: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9]", "", code or "").upper()
    return f"{cleaned[:4]}-{cleaned[4:]}" if len(cleaned) == 8 else cleaned


def hash_backup_code(code: str) -> str:
    salt = bcrypt.gensalt(rounds=12)
    return bcrypt.hashpw(normalize_backup_code(code).encode("utf-8"), salt).decode("utf-8")


def verify_backup_code(code: str, code_hash: str) -> bool:
    try:
        return bcrypt.checkpw(normalize_backup_code(code).encode("utf-8"), code_hash.encode("utf-8"))
    except ValueError:
        return False
