from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from autovault.logging import get_logger
from autovault.storage.models import PASSWORD_HISTORY_SIZE, Account

logger = get_logger(__name__)

MIN_LENGTH = 8
MAX_LENGTH = 32

MSG_LENGTH = f"Password must be between {MIN_LENGTH} and {MAX_LENGTH} characters"
MSG_UPPERCASE = "Password must contain at least one uppercase letter"
MSG_LOWERCASE = "Password must contain at least one lowercase letter"
MSG_NUMBER = "Password must contain at least one number"
MSG_PERSONAL_INFO = "Password must not contain your username or email"
MSG_REUSED = "Password has been used recently. Please choose a different password"

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"[0-9]")


class PasswordHashing:
    """One-way salted hashing (argon2id)."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, plain: str) -> str:
        return self._hasher.hash(plain)

    def verify(self, plain: str, digest: str) -> bool:
        try:
            return self._hasher.verify(digest, plain)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False


@dataclass
class PasswordCheck:
    errors: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def validate_strength(password: str) -> List[str]:
    errors: List[str] = []
    if len(password) < MIN_LENGTH or len(password) > MAX_LENGTH:
        errors.append(MSG_LENGTH)
    if not _UPPER.search(password):
        errors.append(MSG_UPPERCASE)
    if not _LOWER.search(password):
        errors.append(MSG_LOWERCASE)
    if not _DIGIT.search(password):
        errors.append(MSG_NUMBER)
    return errors


def contains_personal_info(password: str, username: str, email: str) -> bool:
    """Case-insensitive containment in either direction.

    Compares against the username and against the local part of the email.
    """
    lowered = password.lower()
    candidates = [username.lower(), email.split("@", 1)[0].lower()]
    for candidate in candidates:
        if not candidate:
            continue
        if candidate in lowered or lowered in candidate:
            return True
    return False


class PasswordPolicy:
    """Strength, personal-info and history rules for new passwords."""

    def __init__(
        self, hashing: PasswordHashing, *, history_size: int = PASSWORD_HISTORY_SIZE
    ) -> None:
        self.hashing = hashing
        self.history_size = history_size

    validate_strength = staticmethod(validate_strength)
    contains_personal_info = staticmethod(contains_personal_info)

    def check_history_reuse(self, password: str, history: Iterable[str]) -> bool:
        recent = list(history)[-self.history_size :]
        return any(self.hashing.verify(password, digest) for digest in recent)

    def validate(self, password: str, account: Optional[Account] = None) -> PasswordCheck:
        """Run every rule that applies.

        Without an account (registration) only strength is checked.
        """
        check = PasswordCheck(errors=validate_strength(password))
        if account is None:
            return check
        if contains_personal_info(password, account.username, account.email):
            check.errors.append(MSG_PERSONAL_INFO)
        if self.check_history_reuse(password, account.password_history):
            check.errors.append(MSG_REUSED)
        if check.errors:
            logger.info(
                "password_policy_rejected",
                account_id=account.id,
                reasons=len(check.errors),
            )
        return check
