from __future__ import annotations

import unicodedata
from dataclasses import dataclass
from typing import Iterable, Optional

from invitely.service.primitives import constant_time_equals

MIN_PASSWORD_LENGTH = 8
# bcrypt-compatible upper bound
MAX_PASSWORD_LENGTH = 72

COMMON_PASSWORDS = (
    "Password1!",
    "Password123!",
    "P@ssw0rd",
    "P@ssw0rd1",
    "P@ssword1",
    "Passw0rd!",
    "Qwerty123!",
    "Qwerty1!",
    "Welcome1!",
    "Welcome123!",
    "Admin123!",
    "Abc123!@#",
    "Letmein1!",
    "Iloveyou1!",
    "Summer2024!",
    "Winter2024!",
    "Changeme1!",
    "Wedding2024!",
)


def _is_symbol(char: str) -> bool:
    # Unicode punctuation (P*) or symbol (S*); whitespace and controls do not count
    return unicodedata.category(char)[0] in "PS"


@dataclass(frozen=True)
class PolicyViolation:
    rule: str
    reason: str


class PasswordPolicy:
    """Structural password rules enforced at register and reset.

    Rules are evaluated in a fixed order and only the first violation is
    reported.
    """

    def __init__(self, common_passwords: Iterable[str] = COMMON_PASSWORDS) -> None:
        self._common = tuple(p.lower() for p in common_passwords)

    def _is_common(self, password: str) -> bool:
        candidate = password.lower()
        found = False
        # Compare against every entry so timing does not reveal list position
        for common in self._common:
            if constant_time_equals(candidate, common):
                found = True
        return found

    def check(self, password: str) -> Optional[PolicyViolation]:
        if len(password) < MIN_PASSWORD_LENGTH:
            return PolicyViolation(
                "min_length",
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
            )
        if len(password) > MAX_PASSWORD_LENGTH:
            return PolicyViolation(
                "max_length",
                f"password must be at most {MAX_PASSWORD_LENGTH} characters",
            )
        if not any(c.isupper() for c in password):
            return PolicyViolation(
                "uppercase", "password must contain at least one uppercase letter"
            )
        if not any(c.islower() for c in password):
            return PolicyViolation(
                "lowercase", "password must contain at least one lowercase letter"
            )
        if not any(c.isdigit() for c in password):
            return PolicyViolation("digit", "password must contain at least one digit")
        if not any(_is_symbol(c) for c in password):
            return PolicyViolation(
                "symbol", "password must contain at least one special character"
            )
        if self._is_common(password):
            return PolicyViolation("common", "password is too common")
        return None
