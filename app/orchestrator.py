from __future__ import annotations

import logging
import os
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Callable, Mapping, Protocol

from app.browser_privacy import PrivacyProbe, ReportedPrivacyProbe
from app.database import DatabaseError
from app.device_trust import (
    EVENT_LOGIN_SUCCESS,
    EVENT_OTP_FAILED,
    EVENT_SUSPICIOUS_ENVIRONMENT,
    DeviceRiskAssessment,
    DeviceTrustStatus,
    DeviceTrustStore,
    unavailable_device_risk,
)
from app.fingerprint import FingerprintSettings, collect_fingerprint
from app.login_flow import (
    Cancelled,
    CredentialsAccepted,
    CredentialsRejected,
    DeviceEvaluated,
    Effect,
    InvalidTransitionError,
    LoginFlow,
    LoginFlowNotFoundError,
    LoginState,
    OtpAccepted,
    OtpIssued,
    OtpRejected,
    ResendRequested,
    Transition,
    resend_available_in,
    transition,
)
from app.otp_service import OtpError, OtpFormatError, OtpIssueResult, OtpNotFoundError, OtpService
from app.risk_engine import AnonymityRiskEngine, AnonymitySignals, RiskAssessment, unavailable_assessment
from app.security import AuthenticatedUser, InvalidCredentialsError
from app.security_repository import SecurityRepository, utcnow

logger = logging.getLogger(__name__)

DEFAULT_LOGIN_FLOW_TTL_SECONDS = 900
DEFAULT_DEVICE_CHECK_TIMEOUT_SECONDS = 5.0


class PasswordVerifier(Protocol):
    def verify_password(self, email: str, password: str) -> AuthenticatedUser: ...


@dataclass(frozen=True)
class LoginFlowSettings:
    ttl_seconds: int = DEFAULT_LOGIN_FLOW_TTL_SECONDS
    device_check_timeout_seconds: float = DEFAULT_DEVICE_CHECK_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if self.ttl_seconds <= 0:
            raise ValueError("LOGIN_FLOW_TTL_SECONDS must be greater than 0.")
        if self.device_check_timeout_seconds <= 0:
            raise ValueError("DEVICE_CHECK_TIMEOUT_SECONDS must be greater than 0.")

    @classmethod
    def from_env(cls) -> "LoginFlowSettings":
        raw_ttl = os.getenv("LOGIN_FLOW_TTL_SECONDS", str(DEFAULT_LOGIN_FLOW_TTL_SECONDS)).strip()
        raw_timeout = os.getenv(
            "DEVICE_CHECK_TIMEOUT_SECONDS",
            str(DEFAULT_DEVICE_CHECK_TIMEOUT_SECONDS),
        ).strip()
        try:
            ttl_seconds = int(raw_ttl)
        except ValueError as exc:
            raise ValueError("LOGIN_FLOW_TTL_SECONDS must be an integer value.") from exc
        try:
            device_check_timeout_seconds = float(raw_timeout)
        except ValueError as exc:
            raise ValueError("DEVICE_CHECK_TIMEOUT_SECONDS must be a numeric value.") from exc
        return cls(ttl_seconds=ttl_seconds, device_check_timeout_seconds=device_check_timeout_seconds)


class InMemoryLoginFlowStore:
    """Holds in-progress login flows for this process, expiring idle ones."""

    def __init__(self, settings: LoginFlowSettings, clock: Callable[[], datetime] = utcnow) -> None:
        self._ttl = timedelta(seconds=settings.ttl_seconds)
        self._clock = clock
        self._flows: dict[str, tuple[LoginFlow, datetime]] = {}
        self._lock = Lock()

    def _purge_expired(self, now: datetime) -> None:
        expired = [flow_id for flow_id, (_, expires_at) in self._flows.items() if expires_at <= now]
        for flow_id in expired:
            del self._flows[flow_id]

    def save(self, flow: LoginFlow) -> None:
        now = self._clock()
        with self._lock:
            self._purge_expired(now)
            self._flows[flow.flow_id] = (flow, now + self._ttl)

    def get(self, flow_id: str) -> LoginFlow:
        with self._lock:
            self._purge_expired(self._clock())
            entry = self._flows.get(flow_id)
        if entry is None:
            raise LoginFlowNotFoundError("Login session was not found or has expired. Please sign in again.")
        return entry[0]

    def discard(self, flow_id: str) -> None:
        with self._lock:
            self._flows.pop(flow_id, None)


@dataclass(frozen=True)
class DeviceCheckOutcome:
    flow: LoginFlow
    trusted: bool
    device_known: bool
    device_label: str
    suspicious_environment: bool
    environment_flags: tuple[str, ...]
    risk_assessment: RiskAssessment
    device_risk: DeviceRiskAssessment
    otp: OtpIssueResult | None = None


@dataclass(frozen=True)
class OtpIssueOutcome:
    flow: LoginFlow
    otp: OtpIssueResult
    resend_available_in: int


class LoginOrchestrator:
    """Drives a login through the explicit state machine in ``app.login_flow``.

    Each public method loads the flow, feeds one event into ``transition`` and
    executes the returned effects. Only policy and input errors reach callers;
    signal failures are absorbed by the providers.
    """

    def __init__(
        self,
        *,
        password_verifier: PasswordVerifier,
        repository: SecurityRepository,
        trust_store: DeviceTrustStore,
        risk_engine: AnonymityRiskEngine,
        otp_service: OtpService,
        flow_store: InMemoryLoginFlowStore,
        fingerprint_settings: FingerprintSettings,
        executor: ThreadPoolExecutor,
        clock: Callable[[], datetime] = utcnow,
        device_check_timeout_seconds: float = DEFAULT_DEVICE_CHECK_TIMEOUT_SECONDS,
    ) -> None:
        self._password_verifier = password_verifier
        self._repository = repository
        self._trust_store = trust_store
        self._risk_engine = risk_engine
        self._otp_service = otp_service
        self._flow_store = flow_store
        self._fingerprint_settings = fingerprint_settings
        self._executor = executor
        self._clock = clock
        self._device_check_timeout_seconds = device_check_timeout_seconds

    def _apply(self, flow: LoginFlow, event: Any) -> Transition:
        result = transition(flow, event)
        if result.flow.state is not flow.state:
            logger.info(
                "login_flow_transition flow_id=%s from_state=%s to_state=%s",
                flow.flow_id,
                flow.state.value,
                result.flow.state.value,
            )
        return result

    def _require_state(self, flow: LoginFlow, expected: LoginState) -> None:
        if flow.state is not expected:
            raise InvalidTransitionError(
                f"Login flow is in {flow.state.value}; expected {expected.value}."
            )

    def _resolve_profile(self, user: AuthenticatedUser) -> tuple[str, str]:
        try:
            profile = self._repository.get_profile(user.user_id) or {}
        except DatabaseError as exc:
            logger.warning("profile_lookup_failed user_id=%s error=%s", user.user_id, str(exc))
            profile = {}
        role = str(profile.get("role") or "user")
        display_name = str(profile.get("full_name") or user.email.split("@", 1)[0])
        return role, display_name

    def login(self, email: str, password: str) -> LoginFlow:
        flow = LoginFlow(flow_id=str(uuid.uuid4()), email=email.strip().lower())
        try:
            user = self._password_verifier.verify_password(flow.email, password)
        except InvalidCredentialsError as exc:
            self._apply(flow, CredentialsRejected(error=str(exc)))
            logger.info("login_credentials_rejected flow_id=%s", flow.flow_id)
            raise

        role, display_name = self._resolve_profile(user)
        result = self._apply(
            flow,
            CredentialsAccepted(user_id=user.user_id, display_name=display_name, role=role),
        )
        self._flow_store.save(result.flow)
        return result.flow

    def _evaluate_device(
        self,
        *,
        user_id: str,
        device_hash: str,
        ip_address: str,
    ) -> tuple[DeviceTrustStatus, DeviceRiskAssessment]:
        status = self._trust_store.lookup(user_id=user_id, device_hash=device_hash)
        self._trust_store.record_login(
            user_id=user_id,
            device_hash=device_hash,
            ip_address=ip_address,
            device=status.device,
        )
        device_risk = self._trust_store.evaluate(user_id=user_id, device_hash=device_hash, ip_address=ip_address)
        if device_risk.risk_flag and status.trusted:
            status = replace(status, trusted=False)
        return status, device_risk

    def check_device(
        self,
        flow_id: str,
        *,
        fingerprint: Mapping[str, Any],
        ip_address: str,
        privacy_probe: PrivacyProbe | None = None,
    ) -> DeviceCheckOutcome:
        flow = self._flow_store.get(flow_id)
        self._require_state(flow, LoginState.DEVICE_CHECK)
        user_id = str(flow.user_id)

        device = collect_fingerprint(fingerprint, self._fingerprint_settings)
        if device.environment.suspicious:
            self._trust_store.log_event(
                user_id=user_id,
                event_type=EVENT_SUSPICIOUS_ENVIRONMENT,
                device_hash=device.device_hash,
                ip_address=ip_address,
                metadata={"flags": list(device.environment.flags)},
            )

        trust_future = self._executor.submit(
            self._evaluate_device,
            user_id=user_id,
            device_hash=device.device_hash,
            ip_address=ip_address,
        )
        risk_future = self._executor.submit(
            self._risk_engine.assess,
            AnonymitySignals(
                user_id=user_id,
                ip_address=ip_address,
                privacy_probe=privacy_probe or ReportedPrivacyProbe(),
            ),
        )
        deadline = time.monotonic() + self._device_check_timeout_seconds
        try:
            trust_status, device_risk = trust_future.result(timeout=deadline - time.monotonic())
        except TimeoutError:
            trust_future.cancel()
            logger.warning("device_trust_timed_out flow_id=%s user_id=%s", flow_id, user_id)
            trust_status = DeviceTrustStatus(known=False, trusted=False)
            device_risk = unavailable_device_risk("Check timed out")
        try:
            assessment = risk_future.result(timeout=max(0.0, deadline - time.monotonic()))
        except TimeoutError:
            risk_future.cancel()
            logger.warning("risk_assessment_timed_out flow_id=%s user_id=%s", flow_id, user_id)
            assessment = unavailable_assessment("Risk assessment timed out")

        result = self._apply(
            flow,
            DeviceEvaluated(
                device_hash=device.device_hash,
                device_label=device.label,
                ip_address=ip_address,
                trusted=trust_status.trusted,
                requires_otp=assessment.requires_otp,
                risk_level=assessment.level,
            ),
        )
        if trust_status.trusted and assessment.requires_otp:
            logger.warning(
                "trusted_device_otp_forced flow_id=%s user_id=%s risk_level=%s",
                flow_id,
                user_id,
                assessment.level,
            )

        updated, otp = self._run_effects(result)
        return DeviceCheckOutcome(
            flow=updated,
            trusted=trust_status.trusted,
            device_known=trust_status.known,
            device_label=device.label,
            suspicious_environment=device.environment.suspicious,
            environment_flags=device.environment.flags,
            risk_assessment=assessment,
            device_risk=device_risk,
            otp=otp,
        )

    def _issue_otp(self, flow: LoginFlow) -> tuple[LoginFlow, OtpIssueResult]:
        otp = self._otp_service.issue(
            user_id=str(flow.user_id),
            destination=flow.email,
            recipient_name=flow.display_name or flow.email,
        )
        result = self._apply(
            flow,
            OtpIssued(at=self._clock(), sent=otp.sent, error=otp.error, stored=otp.expires_at is not None),
        )
        return result.flow, otp

    def _record_success(self, flow: LoginFlow) -> None:
        self._trust_store.log_event(
            user_id=str(flow.user_id),
            event_type=EVENT_LOGIN_SUCCESS,
            device_hash=flow.device_hash,
            ip_address=flow.ip_address,
            metadata={"risk_level": flow.risk_level, "redirect_to": flow.redirect_to},
        )
        logger.info("login_succeeded flow_id=%s user_id=%s", flow.flow_id, flow.user_id)

    def _register_device(self, flow: LoginFlow) -> None:
        try:
            self._trust_store.register_device(
                user_id=str(flow.user_id),
                device_hash=str(flow.device_hash),
                label=flow.device_label or "Unknown device",
                ip_address=flow.ip_address,
            )
        except DatabaseError as exc:
            logger.error("device_registration_failed flow_id=%s user_id=%s error=%s", flow.flow_id, flow.user_id, str(exc))

    def _run_effects(self, result: Transition) -> tuple[LoginFlow, OtpIssueResult | None]:
        flow = result.flow
        otp: OtpIssueResult | None = None
        for effect in result.effects:
            if effect is Effect.ISSUE_OTP:
                flow, otp = self._issue_otp(flow)
            elif effect is Effect.REGISTER_DEVICE:
                self._register_device(flow)
            elif effect is Effect.RECORD_SUCCESS:
                self._record_success(flow)
            elif effect is Effect.DISCARD_FLOW:
                self._flow_store.discard(flow.flow_id)

        if flow.state not in (LoginState.SUCCESS, LoginState.CANCELLED):
            self._flow_store.save(flow)
        return flow, otp

    def resend_otp(self, flow_id: str) -> OtpIssueOutcome:
        flow = self._flow_store.get(flow_id)
        cooldown = self._otp_service.settings.resend_cooldown_seconds
        result = self._apply(flow, ResendRequested(at=self._clock(), cooldown_seconds=cooldown))
        updated, otp = self._run_effects(result)
        return OtpIssueOutcome(flow=updated, otp=otp, resend_available_in=cooldown)

    def resend_available_in(self, flow: LoginFlow) -> int:
        return resend_available_in(flow, self._clock(), self._otp_service.settings.resend_cooldown_seconds)

    def verify_otp(self, flow_id: str, code: str) -> LoginFlow:
        flow = self._flow_store.get(flow_id)
        self._require_state(flow, LoginState.OTP_VERIFY)
        user_id = str(flow.user_id)

        try:
            self._otp_service.verify(user_id=user_id, code=code)
        except OtpError as exc:
            if not isinstance(exc, (OtpFormatError, OtpNotFoundError)):
                self._trust_store.log_event(
                    user_id=user_id,
                    event_type=EVENT_OTP_FAILED,
                    device_hash=flow.device_hash,
                    ip_address=flow.ip_address,
                    metadata={"reason": type(exc).__name__},
                )
            rejected = self._apply(
                flow,
                OtpRejected(error=str(exc), attempts_remaining=getattr(exc, "attempts_remaining", None)),
            )
            self._flow_store.save(rejected.flow)
            logger.info("otp_rejected flow_id=%s user_id=%s reason=%s", flow_id, user_id, type(exc).__name__)
            raise

        updated, _ = self._run_effects(self._apply(flow, OtpAccepted()))
        return updated

    def cancel(self, flow_id: str) -> LoginFlow:
        flow = self._flow_store.get(flow_id)
        updated, _ = self._run_effects(self._apply(flow, Cancelled()))
        logger.info("login_flow_cancelled flow_id=%s", flow_id)
        return updated
