from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, List

SYMBOLS = "@$!%*?&"
MIN_LENGTH = 8
MAX_LENGTH = 128

COMMON_PASSWORDS: FrozenSet[str] = frozenset(
    {
        "123456",
        "password",
        "123456789",
        "qwerty",
        "abc123",
        "password123",
        "admin",
        "letmein",
        "welcome",
        "12345678",
    }
)

_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"[0-9]")
_REPEATED = re.compile(r"(.)\1{2,}")
_SEQUENCE = re.compile(r"123|abc|qwe", re.IGNORECASE)


class PasswordStrength(str, Enum):
    WEAK = "weak"
    MEDIUM = "medium"
    STRONG = "strong"
    VERY_STRONG = "very-strong"


@dataclass
class PasswordCheck:
    valid: bool
    violations: List[str] = field(default_factory=list)
    strength: PasswordStrength = PasswordStrength.WEAK


class PasswordPolicy:
    """Password rules and a strength heuristic for every principal class."""

    def __init__(
        self,
        *,
        min_length: int = MIN_LENGTH,
        max_length: int = MAX_LENGTH,
        symbols: str = SYMBOLS,
        common_passwords: FrozenSet[str] = COMMON_PASSWORDS,
    ) -> None:
        self.min_length = min_length
        self.max_length = max_length
        self.symbols = symbols
        self.common_passwords = frozenset(p.lower() for p in common_passwords)

    def validate(self, password: str) -> PasswordCheck:
        password = password or ""
        violations: List[str] = []
        if len(password) < self.min_length:
            violations.append(
                f"Password must be at least {self.min_length} characters long"
            )
        if len(password) > self.max_length:
            violations.append(
                f"Password must be no more than {self.max_length} characters long"
            )
        if not _LOWER.search(password):
            violations.append("Password must contain at least one lowercase letter")
        if not _UPPER.search(password):
            violations.append("Password must contain at least one uppercase letter")
        if not _DIGIT.search(password):
            violations.append("Password must contain at least one number")
        if not any(c in self.symbols for c in password):
            violations.append(
                f"Password must contain at least one special character ({self.symbols})"
            )
        if password.lower() in self.common_passwords:
            violations.append("Password is too common, please choose a stronger one")
        return PasswordCheck(
            valid=not violations,
            violations=violations,
            strength=self.score(password),
        )

    def score(self, password: str) -> PasswordStrength:
        password = password or ""
        points = min(len(password) * 2, 20)
        if _LOWER.search(password):
            points += 5
        if _UPPER.search(password):
            points += 5
        if _DIGIT.search(password):
            points += 5
        if any(c in self.symbols for c in password):
            points += 10
        if any(
            not (c.isascii() and c.isalnum()) and c not in self.symbols
            for c in password
        ):
            points += 5
        if _REPEATED.search(password):
            points -= 10
        if _SEQUENCE.search(password):
            points -= 15

        if points < 30:
            return PasswordStrength.WEAK
        if points < 60:
            return PasswordStrength.MEDIUM
        if points < 90:
            return PasswordStrength.STRONG
        return PasswordStrength.VERY_STRONG
