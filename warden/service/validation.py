from __future__ import annotations

import re
import unicodedata
from typing import List

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def normalize_email(value: str) -> str:
    """Canonical lookup form: trimmed, NFKC, lower-cased."""
    return unicodedata.normalize("NFKC", value).strip().lower()


def validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_email(value)
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def password_policy_violations(
    password: str, *, min_length: int = 8, max_length: int = 128
) -> List[str]:
    """Return every rule the password breaks; empty means acceptable."""
    if not isinstance(password, str):
        return ["password must be a string"]
    violations: List[str] = []
    if len(password) < min_length:
        violations.append(f"password must be at least {min_length} characters")
    if len(password) > max_length:
        violations.append(f"password must be at most {max_length} characters")
    if not any(c.isupper() for c in password):
        violations.append("password must contain an uppercase letter")
    if not any(c.islower() for c in password):
        violations.append("password must contain a lowercase letter")
    if not any(c.isdigit() for c in password):
        violations.append("password must contain a digit")
    if all(c.isalnum() for c in password):
        violations.append("password must contain a special character")
    return violations
