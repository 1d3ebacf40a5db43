from __future__ import annotations

import base64
import hashlib
import hmac
import io
import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from urllib.parse import quote, urlencode

import qrcode
from cryptography.fernet import Fernet, InvalidToken
from qrcode.image.pil import PilImage

from autovault.logging import get_logger
from autovault.storage.models import (
    MFA_TOTP,
    Account,
    BackupCode,
    MFASecretRecord,
    utcnow,
)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
TOTP_WINDOW = 2
BACKUP_CODE_COUNT = 8
EMAIL_OTP_TTL = timedelta(minutes=10)

KIND_TOTP = "totp"
KIND_BACKUP = "backup"
KIND_EMAIL = "email"

OTP_MISSING = "No OTP found. Please request a new one."
OTP_EXPIRED = "OTP has expired. Please request a new one."
OTP_INVALID = "Invalid OTP. Please try again."

_NON_ALNUM = re.compile(r"[^A-Z0-9]")

logger = get_logger(__name__)


class MFACipher:
    """Symmetric encryption for TOTP seeds and backup codes at rest.

    Fernet tokens carry their own IV next to the ciphertext.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("MFA encryption key is not configured")
        self._fernet = Fernet(self._derive_cipher_key(key_material))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, plain: str) -> str:
        return self._fernet.encrypt(plain.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            logger.error("mfa_secret_decrypt_failed")
            raise RuntimeError("stored MFA secret cannot be decrypted") from exc


def generate_secret(num_bytes: int = 20) -> str:
    return base64.b32encode(secrets.token_bytes(num_bytes)).decode().rstrip("=")


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code (HMAC-SHA1) for ``timestamp``; empty string for a bad seed."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    timestamp: Optional[float] = None,
    *,
    window: int = TOTP_WINDOW,
    interval: int = TOTP_INTERVAL,
) -> bool:
    candidate = (code or "").strip().replace(" ", "")
    if not candidate.isdigit() or len(candidate) != TOTP_DIGITS:
        return False
    now = time.time() if timestamp is None else timestamp
    for offset in range(-window, window + 1):
        expected = generate_totp(secret, now + offset * interval, interval=interval)
        if expected and hmac.compare_digest(expected, candidate):
            return True
    return False


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> List[str]:
    return [secrets.token_hex(4).upper() for _ in range(count)]


def normalize_backup_code(code: str) -> str:
    return _NON_ALNUM.sub("", (code or "").upper())


def build_otpauth_uri(secret: str, account_name: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account_name}")
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_INTERVAL,
        }
    )
    return f"otpauth://totp/{label}?{params}"


def render_qr_data_url(payload: str) -> str:
    qr = qrcode.QRCode(version=1, box_size=10, border=5)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(image_factory=PilImage, fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode()


def hash_otp(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


@dataclass
class MFASetup:
    secret: str
    otpauth_uri: str
    qr_code: str
    backup_codes: List[str] = field(default_factory=list)


@dataclass
class MFAResult:
    valid: bool
    kind: Optional[str] = None
    remaining_backup_codes: Optional[int] = None


@dataclass
class OtpCheck:
    valid: bool
    message: Optional[str] = None


class MFAEngine:
    """TOTP seeds, backup codes and email one-time codes.

    Invalid codes come back as results; lockout counters and audit events
    belong to the caller.
    """

    def __init__(
        self,
        store,
        cipher: MFACipher,
        *,
        issuer: str = "AutoVault",
        email_otp_ttl: timedelta = EMAIL_OTP_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cipher = cipher
        self.issuer = issuer
        self.email_otp_ttl = email_otp_ttl
        self._clock = clock

    def _encrypt_codes(self, codes: List[str]) -> List[BackupCode]:
        return [BackupCode(encrypted_code=self.cipher.encrypt(code)) for code in codes]

    def begin_setup(self, account: Account) -> MFASetup:
        """Start (or restart) TOTP enrollment.

        Replaces any prior record. The account flags stay untouched until
        ``verify_and_enable`` sees a valid code.
        """
        secret = generate_secret()
        codes = generate_backup_codes()
        self.store.save_mfa_secret(
            MFASecretRecord(
                account_id=account.id,
                encrypted_secret=self.cipher.encrypt(secret),
                backup_codes=self._encrypt_codes(codes),
            )
        )
        uri = build_otpauth_uri(secret, account.email, self.issuer)
        logger.info("mfa_setup_started", account_id=account.id)
        return MFASetup(
            secret=secret,
            otpauth_uri=uri,
            qr_code=render_qr_data_url(uri),
            backup_codes=codes,
        )

    def verify_and_enable(
        self, account: Account, code: str, *, timestamp: Optional[float] = None
    ) -> bool:
        record = self.store.get_mfa_secret(account.id)
        if record is None:
            return False
        secret = self.cipher.decrypt(record.encrypted_secret)
        if not verify_totp(secret, code, timestamp):
            return False
        self.store.set_mfa_flags(account.id, enabled=True, method=MFA_TOTP)
        logger.info("mfa_enabled", account_id=account.id)
        return True

    def verify_login(
        self, account: Account, code: str, *, timestamp: Optional[float] = None
    ) -> MFAResult:
        record = self.store.get_mfa_secret(account.id)
        if record is None:
            return MFAResult(valid=False)
        secret = self.cipher.decrypt(record.encrypted_secret)
        if verify_totp(secret, code, timestamp):
            return MFAResult(valid=True, kind=KIND_TOTP)

        candidate = normalize_backup_code(code)
        if not candidate:
            return MFAResult(valid=False)
        for index, backup in enumerate(record.backup_codes):
            if backup.used:
                continue
            if not hmac.compare_digest(self.cipher.decrypt(backup.encrypted_code), candidate):
                continue
            # Conditional update: a concurrent request that consumed the same
            # code first makes this one fail.
            if not self.store.consume_backup_code(account.id, index, now=self._clock()):
                return MFAResult(valid=False)
            remaining = record.remaining_backup_codes - 1
            logger.info(
                "mfa_backup_code_consumed", account_id=account.id, remaining=remaining
            )
            return MFAResult(valid=True, kind=KIND_BACKUP, remaining_backup_codes=remaining)
        return MFAResult(valid=False)

    def regenerate_backup_codes(self, account: Account) -> List[str]:
        codes = generate_backup_codes()
        if not self.store.replace_backup_codes(account.id, self._encrypt_codes(codes)):
            raise LookupError("no MFA record for account")
        return codes

    def disable(self, account: Account) -> None:
        """Delete the secret record; account flags are the caller's job."""
        self.store.delete_mfa_secret(account.id)

    def remaining_backup_codes(self, account: Account) -> int:
        record = self.store.get_mfa_secret(account.id)
        return record.remaining_backup_codes if record else 0

    def issue_email_otp(self, account: Account) -> str:
        code = str(secrets.randbelow(900000) + 100000)
        self.store.set_email_otp(account.id, hash_otp(code), self._clock() + self.email_otp_ttl)
        return code

    def verify_email_otp(self, account: Account, code: str) -> OtpCheck:
        if not account.otp_hash or not account.otp_expires_at:
            return OtpCheck(valid=False, message=OTP_MISSING)
        if self._clock() >= account.otp_expires_at:
            return OtpCheck(valid=False, message=OTP_EXPIRED)
        if not hmac.compare_digest(account.otp_hash, hash_otp((code or "").strip())):
            return OtpCheck(valid=False, message=OTP_INVALID)
        return OtpCheck(valid=True)
