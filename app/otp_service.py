from __future__ import annotations

import hashlib
import hmac
import logging
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from html import escape
from typing import Callable

from app.database import DatabaseError
from app.notifications import MessageSender
from app.security_repository import SecurityRepository, parse_timestamp, to_iso, utcnow

logger = logging.getLogger(__name__)

DEVICE_VERIFICATION_PURPOSE = "device_verification"
DEFAULT_OTP_CODE_TTL_SECONDS = 300
DEFAULT_OTP_MAX_ATTEMPTS = 5
DEFAULT_OTP_CODE_LENGTH = 6
DEFAULT_OTP_RESEND_COOLDOWN_SECONDS = 30
OTP_EMAIL_SUBJECT = "Device Verification Code"


def _parse_bool(raw_value: str | None, default: bool, variable_name: str) -> bool:
    if raw_value is None or not raw_value.strip():
        return default
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{variable_name} must be a boolean value (true/false).")


@dataclass(frozen=True)
class OtpSettings:
    signing_secret: str
    code_ttl_seconds: int = DEFAULT_OTP_CODE_TTL_SECONDS
    max_attempts: int = DEFAULT_OTP_MAX_ATTEMPTS
    code_length: int = DEFAULT_OTP_CODE_LENGTH
    resend_cooldown_seconds: int = DEFAULT_OTP_RESEND_COOLDOWN_SECONDS
    enable_dev_code_in_response: bool = False

    def __post_init__(self) -> None:
        if not self.signing_secret:
            raise ValueError("OTP_SIGNING_SECRET must not be empty.")
        if self.code_ttl_seconds <= 0:
            raise ValueError("OTP_CODE_TTL_SECONDS must be greater than 0.")
        if self.max_attempts <= 0:
            raise ValueError("OTP_MAX_ATTEMPTS must be greater than 0.")
        if not 4 <= self.code_length <= 10:
            raise ValueError("OTP code length must be between 4 and 10.")
        if self.resend_cooldown_seconds < 0:
            raise ValueError("OTP_RESEND_COOLDOWN_SECONDS must be greater than or equal to 0.")

    @classmethod
    def from_env(cls) -> "OtpSettings":
        signing_secret = os.getenv("OTP_SIGNING_SECRET", "").strip()
        raw_ttl = os.getenv("OTP_CODE_TTL_SECONDS", str(DEFAULT_OTP_CODE_TTL_SECONDS)).strip()
        raw_max_attempts = os.getenv("OTP_MAX_ATTEMPTS", str(DEFAULT_OTP_MAX_ATTEMPTS)).strip()
        raw_cooldown = os.getenv("OTP_RESEND_COOLDOWN_SECONDS", str(DEFAULT_OTP_RESEND_COOLDOWN_SECONDS)).strip()
        try:
            code_ttl_seconds = int(raw_ttl)
            max_attempts = int(raw_max_attempts)
            resend_cooldown_seconds = int(raw_cooldown)
        except ValueError as exc:
            raise ValueError(
                "OTP_CODE_TTL_SECONDS, OTP_MAX_ATTEMPTS, and OTP_RESEND_COOLDOWN_SECONDS must be integer values."
            ) from exc

        return cls(
            signing_secret=signing_secret,
            code_ttl_seconds=code_ttl_seconds,
            max_attempts=max_attempts,
            resend_cooldown_seconds=resend_cooldown_seconds,
            enable_dev_code_in_response=_parse_bool(
                os.getenv("ENABLE_DEV_OTP_CODE_IN_RESPONSE"),
                False,
                "ENABLE_DEV_OTP_CODE_IN_RESPONSE",
            ),
        )


class OtpError(Exception):
    """A user-facing OTP failure; the message is safe to show to the caller."""


class OtpFormatError(OtpError):
    pass


class OtpNotFoundError(OtpError):
    pass


class OtpExpiredError(OtpError):
    pass


class OtpLockedError(OtpError):
    pass


class OtpInvalidCodeError(OtpError):
    def __init__(self, attempts_remaining: int) -> None:
        plural = "" if attempts_remaining == 1 else "s"
        super().__init__(f"Invalid code. {attempts_remaining} attempt{plural} remaining.")
        self.attempts_remaining = attempts_remaining


@dataclass(frozen=True)
class OtpIssueResult:
    sent: bool
    expires_at: datetime | None
    challenge_id: str | None = None
    provider: str | None = None
    error: str | None = None
    dev_code: str | None = None


@dataclass(frozen=True)
class OtpVerifyResult:
    valid: bool
    challenge_id: str


def generate_otp_code(code_length: int = DEFAULT_OTP_CODE_LENGTH) -> str:
    return f"{secrets.randbelow(10 ** code_length):0{code_length}d}"


def hash_otp_code(*, user_id: str, purpose: str, code: str, signing_secret: str) -> str:
    payload = f"{user_id}:{purpose}:{code}".encode("utf-8")
    return hmac.new(signing_secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def render_otp_email(recipient_name: str, code: str, ttl_minutes: int, max_attempts: int) -> str:
    return (
        f"<p>Hello <strong>{escape(recipient_name)}</strong>,</p>"
        "<p>We detected a login from an unrecognized device. "
        "Enter the verification code below to confirm your identity:</p>"
        f"<p style=\"font-size:32px;font-family:monospace;letter-spacing:8px\"><strong>{code}</strong></p>"
        f"<p>This code expires in {ttl_minutes} minutes. Maximum {max_attempts} attempts allowed.</p>"
        "<p>If you did not try to sign in, ignore this email and never share this code.</p>"
    )


class OtpService:
    """Issues and verifies hashed, short-lived numeric codes.

    Lifecycle per (user, purpose): issued -> verified | expired | attempts exhausted.
    Every terminal outcome sets ``verified`` so the row can never match again.
    """

    def __init__(
        self,
        repository: SecurityRepository,
        sender: MessageSender,
        settings: OtpSettings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._sender = sender
        self._settings = settings
        self._clock = clock

    @property
    def settings(self) -> OtpSettings:
        return self._settings

    def issue(
        self,
        *,
        user_id: str,
        destination: str,
        recipient_name: str,
        purpose: str = DEVICE_VERIFICATION_PURPOSE,
    ) -> OtpIssueResult:
        try:
            self._repository.invalidate_pending_otps(user_id=user_id, purpose=purpose)
        except DatabaseError as exc:
            logger.warning("otp_invalidate_failed user_id=%s error=%s", user_id, str(exc))

        code = generate_otp_code(self._settings.code_length)
        now = self._clock()
        expires_at = now + timedelta(seconds=self._settings.code_ttl_seconds)
        try:
            challenge = self._repository.insert_otp(
                {
                    "user_id": user_id,
                    "otp_hash": hash_otp_code(
                        user_id=user_id,
                        purpose=purpose,
                        code=code,
                        signing_secret=self._settings.signing_secret,
                    ),
                    "expires_at": to_iso(expires_at),
                    "attempt_count": 0,
                    "verified": False,
                    "purpose": purpose,
                    "created_at": to_iso(now),
                }
            )
        except DatabaseError as exc:
            logger.error("otp_store_failed user_id=%s error=%s", user_id, str(exc))
            return OtpIssueResult(sent=False, expires_at=None, error="Failed to generate verification code")

        delivery = self._sender.send(
            destination,
            OTP_EMAIL_SUBJECT,
            render_otp_email(
                recipient_name,
                code,
                ttl_minutes=max(1, self._settings.code_ttl_seconds // 60),
                max_attempts=self._settings.max_attempts,
            ),
        )
        if delivery.success:
            logger.info("otp_sent user_id=%s provider=%s", user_id, delivery.provider)
        else:
            logger.error("otp_delivery_failed user_id=%s provider=%s error=%s", user_id, delivery.provider, delivery.error)

        return OtpIssueResult(
            sent=delivery.success,
            expires_at=expires_at,
            challenge_id=str(challenge["id"]) if challenge.get("id") is not None else None,
            provider=delivery.provider,
            error=None if delivery.success else "Failed to send verification code",
            dev_code=code if self._settings.enable_dev_code_in_response else None,
        )

    def verify(self, *, user_id: str, code: str, purpose: str = DEVICE_VERIFICATION_PURPOSE) -> OtpVerifyResult:
        normalized = (code or "").strip()
        if len(normalized) != self._settings.code_length or not normalized.isdigit():
            raise OtpFormatError(f"Enter the {self._settings.code_length}-digit verification code.")

        challenge = self._repository.get_latest_pending_otp(user_id=user_id, purpose=purpose)
        if not challenge:
            raise OtpNotFoundError("No pending verification found. Please request a new code.")

        challenge_id = str(challenge["id"])
        if parse_timestamp(challenge["expires_at"]) <= self._clock():
            self._repository.update_otp(otp_id=challenge_id, updates={"verified": True})
            raise OtpExpiredError("Verification code has expired. Please request a new code.")

        attempts = int(challenge.get("attempt_count") or 0)
        if attempts >= self._settings.max_attempts:
            self._repository.update_otp(otp_id=challenge_id, updates={"verified": True})
            raise OtpLockedError("Too many failed attempts. Please request a new code.")

        # The attempt is spent before comparing so a crash cannot yield a free retry.
        attempts += 1
        self._repository.update_otp(otp_id=challenge_id, updates={"attempt_count": attempts})

        expected_hash = hash_otp_code(
            user_id=user_id,
            purpose=purpose,
            code=normalized,
            signing_secret=self._settings.signing_secret,
        )
        if not hmac.compare_digest(expected_hash, str(challenge.get("otp_hash", ""))):
            raise OtpInvalidCodeError(max(self._settings.max_attempts - attempts, 0))

        self._repository.update_otp(
            otp_id=challenge_id,
            updates={"verified": True, "verified_at": to_iso(self._clock())},
        )
        return OtpVerifyResult(valid=True, challenge_id=challenge_id)

    def cleanup_expired(self) -> int:
        removed = self._repository.delete_expired_verified_otps(before=self._clock())
        logger.info("otp_cleanup_complete removed=%s", removed)
        return removed
