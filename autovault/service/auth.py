from __future__ import annotations

import asyncio
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from autovault.logging import get_logger
from autovault.service.audit import AuditTrail
from autovault.service.email import EmailService
from autovault.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from autovault.service.lockout import LockoutPolicy, is_locked, locked_message
from autovault.service.mfa import KIND_BACKUP, KIND_EMAIL, MFAEngine, MFASetup
from autovault.service.passwords import PasswordHashing, PasswordPolicy
from autovault.service.sessions import IssuedToken, SessionIssuer, password_version
from autovault.service.tasks import TaskRunner
from autovault.storage.errors import ConstraintViolation
from autovault.storage.expiring import ExpiringStore
from autovault.storage.models import (
    ACCOUNT_STATUSES,
    MFA_EMAIL,
    MFA_NONE,
    MFA_TOTP,
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
    TOKEN_EMAIL_VERIFICATION,
    TOKEN_PASSWORD_RESET,
    Account,
    RequestContext,
    VerificationToken,
    utcnow,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"
INVALID_MFA_CODE = "Invalid verification code"
MFA_SESSION_EXPIRED = "Verification session expired. Please log in again."
RESEND_MESSAGE = (
    "If an account with that email exists and is unverified, a new verification link has been sent."
)
RESET_MESSAGE = "If an account with that email exists, a password reset link has been sent."

EMAIL_VERIFICATION_TTL = timedelta(hours=24)
PASSWORD_RESET_TTL = timedelta(minutes=15)

LOGIN_SUCCESS = "success"
LOGIN_MFA_REQUIRED = "mfa_required"
LOGIN_INVALID = "invalid"
LOGIN_LOCKED = "locked"
LOGIN_INACTIVE = "inactive"
LOGIN_OTP_UNDELIVERED = "otp_undelivered"
LOGIN_EXPIRED = "expired"


@dataclass
class LoginOutcome:
    """Result of a credential or MFA check; the route maps it to HTTP."""

    status: str
    message: Optional[str] = None
    account: Optional[Account] = None
    token: Optional[IssuedToken] = None
    mfa_method: Optional[str] = None
    mfa_kind: Optional[str] = None
    remaining_backup_codes: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status == LOGIN_SUCCESS


def _hash_token(raw: str) -> str:
    return hashlib.sha256(raw.encode()).hexdigest()


class AuthService:
    """Registration, login, MFA login and credential maintenance flows."""

    def __init__(
        self,
        store,
        *,
        hashing: PasswordHashing,
        policy: PasswordPolicy,
        sessions: SessionIssuer,
        mfa: MFAEngine,
        audit: AuditTrail,
        email: EmailService,
        tasks: TaskRunner,
        pending: ExpiringStore,
        lockout: LockoutPolicy = LockoutPolicy(),
        pending_ttl: timedelta = timedelta(minutes=10),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hashing = hashing
        self.policy = policy
        self.sessions = sessions
        self.mfa = mfa
        self.audit = audit
        self.email = email
        self.tasks = tasks
        self.pending = pending
        self.lockout = lockout
        self.pending_ttl = pending_ttl
        self._clock = clock
        # Unknown identities still pay for one hash comparison
        self._dummy_hash = hashing.hash(secrets.token_urlsafe(16))

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _pending_key(account_id: str) -> str:
        return f"auth:mfa:pending:{account_id}"

    # registration and identity
    def register(
        self,
        username: str,
        email: str,
        password: str,
        context: Optional[RequestContext] = None,
        *,
        role: str = "normal",
    ) -> Account:
        check = self.policy.validate(password)
        if not check.is_valid:
            raise ValidationError(
                "Password does not meet requirements", detail={"errors": check.errors}
            )
        try:
            account = self.store.create_account(
                username, email, self.hashing.hash(password), role
            )
        except ConstraintViolation as exc:
            # Registration accepts this enumeration exposure
            raise ConflictError("User already exists", detail=exc.detail) from exc
        self._send_verification(account)
        self.audit.record(
            "USER_REGISTERED",
            actor_id=account.id,
            actor_name=account.username,
            detail={"email": account.email, "role": account.role},
            context=context,
        )
        logger.info("account_registered", account_id=account.id)
        return account

    def get_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("Account not found")
        return account

    async def authenticate(self, token: Optional[str]) -> Optional[Account]:
        """Resolve a presented token to an active account, or None."""
        claims = await self.sessions.authenticate(token)
        if claims is None:
            return None
        account = self.store.get_account(str(claims["sub"]))
        if account is None or not account.is_active:
            return None
        # Tokens minted before the latest password change carry a stale version
        if claims.get("pwv") != password_version(account):
            return None
        return account

    # login
    async def login(
        self, identity: str, password: str, context: Optional[RequestContext] = None
    ) -> LoginOutcome:
        now = self._now()
        account = self.store.find_by_identity(identity)
        if account is None:
            self.hashing.verify(password, self._dummy_hash)
            self.audit.record(
                "LOGIN_FAILED",
                outcome=OUTCOME_FAILURE,
                detail={"identity": identity, "reason": "unknown_account"},
                context=context,
            )
            return LoginOutcome(LOGIN_INVALID, message=INVALID_CREDENTIALS)

        if is_locked(account, now):
            self.audit.record(
                "LOGIN_BLOCKED",
                outcome=OUTCOME_FAILURE,
                actor_id=account.id,
                actor_name=account.username,
                detail={"reason": "account_locked"},
                context=context,
            )
            return LoginOutcome(
                LOGIN_LOCKED, message=locked_message(account, now), account=account
            )

        if not account.is_active:
            self.audit.record(
                "LOGIN_FAILED",
                outcome=OUTCOME_FAILURE,
                actor_id=account.id,
                actor_name=account.username,
                detail={"reason": f"account_{account.status}"},
                context=context,
            )
            return LoginOutcome(
                LOGIN_INACTIVE,
                message=f"Account is {account.status}. Please contact support.",
            )

        if not self.hashing.verify(password, account.password_hash):
            return self._record_password_failure(account, identity, now, context)

        if account.mfa_enabled:
            return await self._begin_mfa_login(account, context)
        return self._complete_login(account, context, action="LOGIN_SUCCESS")

    def _record_password_failure(
        self,
        account: Account,
        identity: str,
        now: datetime,
        context: Optional[RequestContext],
    ) -> LoginOutcome:
        updated = self.store.record_failed_attempt(
            account.id,
            threshold=self.lockout.threshold,
            lock_duration=self.lockout.lock_duration,
            now=now,
        )
        self.audit.record(
            "LOGIN_FAILED",
            outcome=OUTCOME_FAILURE,
            actor_id=account.id,
            actor_name=account.username,
            detail={
                "identity": identity,
                "reason": "invalid_password",
                "attempts": updated.failed_login_attempts,
            },
            context=context,
        )
        if is_locked(updated, now):
            self.audit.record(
                "ACCOUNT_LOCKED",
                outcome=OUTCOME_FAILURE,
                actor_id=account.id,
                actor_name=account.username,
                detail={
                    "attempts": updated.failed_login_attempts,
                    "locked_until": updated.locked_until.isoformat(),
                },
                context=context,
            )
            logger.warning(
                "account_locked",
                account_id=account.id,
                attempts=updated.failed_login_attempts,
            )
            return LoginOutcome(
                LOGIN_LOCKED, message=locked_message(updated, now), account=updated
            )
        return LoginOutcome(LOGIN_INVALID, message=INVALID_CREDENTIALS)

    async def _begin_mfa_login(
        self, account: Account, context: Optional[RequestContext]
    ) -> LoginOutcome:
        self.store.clear_failed_attempts(account.id)
        await self.pending.set(
            self._pending_key(account.id),
            account.mfa_method,
            int(self.pending_ttl.total_seconds()),
        )
        if account.mfa_method == MFA_EMAIL:
            code = self.mfa.issue_email_otp(account)
            ttl_minutes = int(self.mfa.email_otp_ttl.total_seconds() // 60)
            # The code is the requested artifact, so delivery failure is visible
            sent = await asyncio.to_thread(
                self.email.send_login_otp, account.email, account.username, code, ttl_minutes
            )
            if not sent:
                logger.error("login_otp_delivery_failed", account_id=account.id)
                return LoginOutcome(
                    LOGIN_OTP_UNDELIVERED,
                    message="Failed to send verification code. Please try again.",
                )
            self.audit.record(
                "MFA_OTP_SENT",
                actor_id=account.id,
                actor_name=account.username,
                detail={"method": MFA_EMAIL},
                context=context,
            )
            return LoginOutcome(
                LOGIN_MFA_REQUIRED,
                message="Verification code sent to your email",
                account=account,
                mfa_method=MFA_EMAIL,
            )
        return LoginOutcome(
            LOGIN_MFA_REQUIRED,
            message="Please enter your authenticator code",
            account=account,
            mfa_method=MFA_TOTP,
        )

    def _complete_login(
        self,
        account: Account,
        context: Optional[RequestContext],
        *,
        action: str,
        detail: Optional[Dict[str, Any]] = None,
    ) -> LoginOutcome:
        ctx = context or RequestContext()
        previous_ip = account.last_login_ip
        updated = self.store.record_success(account.id, ip=ctx.ip, now=self._now())
        issued = self.sessions.issue(updated)
        self.audit.record(
            action,
            actor_id=updated.id,
            actor_name=updated.username,
            detail=detail or {},
            context=context,
        )
        if previous_ip and ctx.ip and previous_ip != ctx.ip:
            self.tasks.submit(
                "email:new_device",
                self.email.send_new_device_notice,
                updated.email,
                updated.username,
                ctx.ip,
                ctx.user_agent,
            )
        return LoginOutcome(
            LOGIN_SUCCESS, message="Login successful", account=updated, token=issued
        )

    async def verify_mfa_login(
        self, account_id: str, code: str, context: Optional[RequestContext] = None
    ) -> LoginOutcome:
        """Second step of an MFA login started by ``login``."""
        now = self._now()
        account = self.store.get_account(account_id) if account_id else None
        if account is None or not await self.pending.exists(self._pending_key(account.id)):
            return LoginOutcome(LOGIN_EXPIRED, message=MFA_SESSION_EXPIRED)
        if is_locked(account, now):
            return LoginOutcome(
                LOGIN_LOCKED, message=locked_message(account, now), account=account
            )
        if not account.is_active:
            return LoginOutcome(
                LOGIN_INACTIVE,
                message=f"Account is {account.status}. Please contact support.",
            )
        if not account.mfa_enabled:
            await self.pending.clear(self._pending_key(account.id))
            return LoginOutcome(LOGIN_EXPIRED, message=MFA_SESSION_EXPIRED)

        remaining = None
        message = INVALID_MFA_CODE
        if account.mfa_method == MFA_EMAIL:
            check = self.mfa.verify_email_otp(account, code)
            # Consumed after success or a counted failure alike
            self.store.clear_email_otp(account.id)
            valid, kind = check.valid, KIND_EMAIL
            message = check.message or message
        else:
            result = self.mfa.verify_login(account, code)
            valid, kind, remaining = result.valid, result.kind, result.remaining_backup_codes

        if not valid:
            return await self._record_mfa_failure(account, message, now, context)

        await self.pending.clear(self._pending_key(account.id))
        outcome = self._complete_login(
            account, context, action="MFA_LOGIN_SUCCESS", detail={"mfaType": kind}
        )
        outcome.mfa_kind = kind
        if kind == KIND_BACKUP:
            outcome.remaining_backup_codes = remaining
            outcome.message = f"Backup code used. {remaining} backup codes remaining."
        return outcome

    async def _record_mfa_failure(
        self,
        account: Account,
        message: str,
        now: datetime,
        context: Optional[RequestContext],
    ) -> LoginOutcome:
        updated = self.store.record_mfa_failure(
            account.id,
            threshold=self.lockout.mfa_threshold,
            lock_duration=self.lockout.mfa_lock_duration,
            now=now,
        )
        self.audit.record(
            "MFA_LOGIN_FAILED",
            outcome=OUTCOME_FAILURE,
            actor_id=account.id,
            actor_name=account.username,
            detail={"method": account.mfa_method, "attempts": updated.otp_attempts},
            context=context,
        )
        if is_locked(updated, now):
            await self.pending.clear(self._pending_key(account.id))
            self.audit.record(
                "MFA_LOGIN_LOCKED",
                outcome=OUTCOME_FAILURE,
                actor_id=account.id,
                actor_name=account.username,
                detail={"locked_until": updated.locked_until.isoformat()},
                context=context,
            )
            logger.warning("mfa_login_locked", account_id=account.id)
            return LoginOutcome(
                LOGIN_LOCKED,
                message=(
                    "Too many failed verification attempts. Your account has been locked. "
                    + locked_message(updated, now)
                ),
                account=updated,
            )
        return LoginOutcome(LOGIN_INVALID, message=message)

    async def logout(
        self,
        token: Optional[str],
        account: Optional[Account] = None,
        context: Optional[RequestContext] = None,
    ) -> bool:
        revoked = await self.sessions.revoke(token)
        self.audit.record(
            "LOGOUT",
            actor_id=account.id if account else None,
            actor_name=account.username if account else None,
            context=context,
        )
        return revoked

    # passwords
    def _confirm_password(self, account: Account, password: Optional[str], purpose: str) -> None:
        if not password:
            raise ValidationError(f"Password is required to {purpose}")
        if not self.hashing.verify(password, account.password_hash):
            raise AuthenticationError("Incorrect password")

    def _check_new_password(self, account: Account, new_password: str) -> None:
        check = self.policy.validate(new_password, account)
        if not check.is_valid:
            raise ValidationError(
                "Password does not meet requirements", detail={"errors": check.errors}
            )

    def _apply_new_password(self, account: Account, new_password: str) -> Account:
        self._check_new_password(account, new_password)
        return self._store_password(account, new_password)

    def _store_password(self, account: Account, new_password: str) -> Account:
        return self.store.update_password(
            account.id,
            self.hashing.hash(new_password),
            history_size=self.policy.history_size,
            now=self._now(),
        )

    def change_password(
        self,
        account: Account,
        current_password: str,
        new_password: str,
        context: Optional[RequestContext] = None,
    ) -> Account:
        if not self.hashing.verify(current_password or "", account.password_hash):
            raise AuthenticationError("Current password is incorrect")
        updated = self._apply_new_password(account, new_password)
        self.audit.record(
            "PASSWORD_CHANGED",
            actor_id=account.id,
            actor_name=account.username,
            context=context,
        )
        return updated

    def request_password_reset(
        self, email: str, context: Optional[RequestContext] = None
    ) -> str:
        account = self.store.find_by_identity(email)
        if account is not None and account.email == email.strip().lower():
            raw = self._issue_verification_token(account, TOKEN_PASSWORD_RESET, PASSWORD_RESET_TTL)
            self.tasks.submit(
                "email:password_reset", self.email.send_password_reset, account.email, raw
            )
            self.audit.record(
                "PASSWORD_RESET_REQUESTED",
                actor_id=account.id,
                actor_name=account.username,
                context=context,
            )
        return RESET_MESSAGE

    def reset_password(
        self, raw_token: str, new_password: str, context: Optional[RequestContext] = None
    ) -> Account:
        """Set a new password from a reset link.

        The link stays usable until a password that passes the policy has
        been stored.
        """
        token_hash = _hash_token(raw_token)
        token = self.store.find_verification_token(token_hash, TOKEN_PASSWORD_RESET)
        account = self.store.get_account(token.account_id) if token else None
        if token is None or account is None or token.is_expired(self._now()):
            raise ValidationError("Invalid or expired reset token")
        self._check_new_password(account, new_password)
        if self.store.consume_verification_token(token_hash, TOKEN_PASSWORD_RESET) is None:
            raise ValidationError("Invalid or expired reset token")
        updated = self._store_password(account, new_password)
        self.audit.record(
            "PASSWORD_RESET",
            actor_id=account.id,
            actor_name=account.username,
            context=context,
        )
        return updated

    # email verification
    def _issue_verification_token(self, account: Account, kind: str, ttl: timedelta) -> str:
        raw = secrets.token_urlsafe(32)
        self.store.create_verification_token(
            VerificationToken(
                token_hash=_hash_token(raw),
                account_id=account.id,
                kind=kind,
                expires_at=self._now() + ttl,
            )
        )
        return raw

    def _send_verification(self, account: Account) -> None:
        raw = self._issue_verification_token(
            account, TOKEN_EMAIL_VERIFICATION, EMAIL_VERIFICATION_TTL
        )
        self.tasks.submit(
            "email:verification",
            self.email.send_email_verification,
            account.email,
            account.username,
            raw,
        )

    def verify_email(self, raw_token: str, context: Optional[RequestContext] = None) -> str:
        token = self.store.consume_verification_token(
            _hash_token(raw_token or ""), TOKEN_EMAIL_VERIFICATION
        )
        if token is None:
            raise ValidationError("Invalid verification link")
        if token.is_expired(self._now()):
            raise ValidationError("Verification link has expired. Please request a new one.")
        account = self.store.get_account(token.account_id)
        if account is None:
            raise ValidationError("Invalid verification link")
        if account.email_verified:
            return "Email already verified"
        self.store.mark_email_verified(account.id)
        self.audit.record(
            "EMAIL_VERIFIED",
            actor_id=account.id,
            actor_name=account.username,
            context=context,
        )
        return "Email verified successfully"

    def resend_verification(self, email: str) -> str:
        account = self.store.find_by_identity(email)
        if (
            account is not None
            and account.email == email.strip().lower()
            and not account.email_verified
        ):
            self._send_verification(account)
        return RESEND_MESSAGE

    # MFA management
    def mfa_status(self, account: Account) -> Dict[str, Any]:
        return {
            "enabled": account.mfa_enabled,
            "method": account.mfa_method,
            "remainingBackupCodes": self.mfa.remaining_backup_codes(account)
            if account.mfa_method == MFA_TOTP
            else 0,
        }

    def begin_mfa_setup(
        self, account: Account, context: Optional[RequestContext] = None
    ) -> MFASetup:
        if account.mfa_enabled:
            raise ConflictError("MFA is already enabled. Disable it before setting up again.")
        setup = self.mfa.begin_setup(account)
        self.audit.record(
            "MFA_SETUP_INITIATED",
            actor_id=account.id,
            actor_name=account.username,
            context=context,
        )
        return setup

    def confirm_mfa_setup(
        self, account: Account, code: str, context: Optional[RequestContext] = None
    ) -> Account:
        if account.mfa_enabled:
            raise ConflictError("MFA is already enabled")
        if not self.mfa.verify_and_enable(account, code):
            raise ValidationError("Invalid verification code. Please try again.")
        self.audit.record(
            "MFA_ENABLED",
            actor_id=account.id,
            actor_name=account.username,
            detail={"method": MFA_TOTP},
            context=context,
        )
        return self.get_account(account.id)

    def enable_email_mfa(
        self, account: Account, password: str, context: Optional[RequestContext] = None
    ) -> Account:
        self._confirm_password(account, password, "enable MFA")
        if account.mfa_enabled:
            raise ConflictError("MFA is already enabled")
        updated = self.store.set_mfa_flags(account.id, enabled=True, method=MFA_EMAIL)
        self.audit.record(
            "MFA_ENABLED",
            actor_id=account.id,
            actor_name=account.username,
            detail={"method": MFA_EMAIL},
            context=context,
        )
        return updated

    def disable_mfa(
        self, account: Account, password: str, context: Optional[RequestContext] = None
    ) -> Account:
        self._confirm_password(account, password, "disable MFA")
        if not account.mfa_enabled:
            raise ValidationError("MFA is not enabled")
        self.mfa.disable(account)
        self.store.clear_email_otp(account.id)
        updated = self.store.set_mfa_flags(account.id, enabled=False, method=MFA_NONE)
        self.audit.record(
            "MFA_DISABLED",
            actor_id=account.id,
            actor_name=account.username,
            detail={"previous_method": account.mfa_method},
            context=context,
        )
        return updated

    def regenerate_backup_codes(
        self, account: Account, password: str, context: Optional[RequestContext] = None
    ) -> List[str]:
        self._confirm_password(account, password, "regenerate backup codes")
        if not (account.mfa_enabled and account.mfa_method == MFA_TOTP):
            raise ValidationError("TOTP-based MFA is not enabled")
        codes = self.mfa.regenerate_backup_codes(account)
        self.audit.record(
            "MFA_BACKUP_CODES_REGENERATED",
            actor_id=account.id,
            actor_name=account.username,
            context=context,
        )
        return codes

    # administration
    def set_account_status(
        self,
        actor: Account,
        account_id: str,
        status: str,
        context: Optional[RequestContext] = None,
    ) -> Account:
        if status not in ACCOUNT_STATUSES:
            raise ValidationError(
                "status must be one of: " + ", ".join(sorted(ACCOUNT_STATUSES)),
                detail={"field": "status"},
            )
        if actor.id == account_id:
            raise ValidationError("Administrators cannot change their own status")
        target = self.get_account(account_id)
        updated = self.store.set_account_status(target.id, status)
        self.audit.record(
            "ACCOUNT_STATUS_CHANGED",
            outcome=OUTCOME_SUCCESS,
            actor_id=actor.id,
            actor_name=actor.username,
            detail={"target_id": target.id, "from": target.status, "to": status},
            context=context,
        )
        return updated
