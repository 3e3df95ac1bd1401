from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum

ADMIN_REDIRECT = "/"
USER_REDIRECT = "/user/dashboard"


class LoginState(str, Enum):
    CREDENTIALS = "CREDENTIALS"
    DEVICE_CHECK = "DEVICE_CHECK"
    OTP_VERIFY = "OTP_VERIFY"
    SUCCESS = "SUCCESS"
    CANCELLED = "CANCELLED"


TERMINAL_STATES = frozenset({LoginState.SUCCESS, LoginState.CANCELLED})


class Effect(str, Enum):
    RUN_DEVICE_CHECK = "run_device_check"
    ISSUE_OTP = "issue_otp"
    REGISTER_DEVICE = "register_device"
    RECORD_SUCCESS = "record_success"
    REDIRECT = "redirect"
    DISCARD_FLOW = "discard_flow"


class LoginFlowError(Exception):
    pass


class LoginFlowNotFoundError(LoginFlowError):
    pass


class InvalidTransitionError(LoginFlowError):
    pass


class ResendCooldownError(LoginFlowError):
    def __init__(self, retry_after: int) -> None:
        super().__init__(f"Please wait {retry_after} seconds before requesting a new code.")
        self.retry_after = retry_after


@dataclass(frozen=True)
class LoginFlow:
    flow_id: str
    email: str
    state: LoginState = LoginState.CREDENTIALS
    user_id: str | None = None
    display_name: str | None = None
    role: str | None = None
    device_hash: str | None = None
    device_label: str | None = None
    ip_address: str | None = None
    risk_level: str | None = None
    otp_sent_at: datetime | None = None
    attempts_remaining: int | None = None
    error: str | None = None
    redirect_to: str | None = None

    @property
    def next_step(self) -> str:
        return self.state.value.lower()


@dataclass(frozen=True)
class CredentialsRejected:
    error: str


@dataclass(frozen=True)
class CredentialsAccepted:
    user_id: str
    display_name: str
    role: str


@dataclass(frozen=True)
class DeviceEvaluated:
    device_hash: str
    device_label: str
    ip_address: str
    trusted: bool
    requires_otp: bool
    risk_level: str


@dataclass(frozen=True)
class OtpIssued:
    at: datetime
    sent: bool
    error: str | None = None
    stored: bool = True


@dataclass(frozen=True)
class ResendRequested:
    at: datetime
    cooldown_seconds: int


@dataclass(frozen=True)
class OtpRejected:
    error: str
    attempts_remaining: int | None = None


@dataclass(frozen=True)
class OtpAccepted:
    pass


@dataclass(frozen=True)
class Cancelled:
    pass


LoginEvent = (
    CredentialsRejected
    | CredentialsAccepted
    | DeviceEvaluated
    | OtpIssued
    | ResendRequested
    | OtpRejected
    | OtpAccepted
    | Cancelled
)


@dataclass(frozen=True)
class Transition:
    flow: LoginFlow
    effects: tuple[Effect, ...] = ()


def redirect_for_role(role: str | None) -> str:
    return ADMIN_REDIRECT if role == "admin" else USER_REDIRECT


def resend_available_in(flow: LoginFlow, now: datetime, cooldown_seconds: int) -> int:
    if flow.otp_sent_at is None:
        return 0
    remaining = cooldown_seconds - (now - flow.otp_sent_at).total_seconds()
    return max(0, math.ceil(remaining))


def _succeed(flow: LoginFlow, effects: tuple[Effect, ...]) -> Transition:
    return Transition(
        flow=replace(
            flow,
            state=LoginState.SUCCESS,
            error=None,
            attempts_remaining=None,
            redirect_to=redirect_for_role(flow.role),
        ),
        effects=effects + (Effect.RECORD_SUCCESS, Effect.REDIRECT, Effect.DISCARD_FLOW),
    )


def transition(flow: LoginFlow, event: LoginEvent) -> Transition:
    """Pure login step function: no I/O, the caller executes the returned effects."""
    if flow.state in TERMINAL_STATES:
        raise InvalidTransitionError(f"Login flow is already {flow.state.value}.")

    if isinstance(event, Cancelled):
        return Transition(flow=replace(flow, state=LoginState.CANCELLED, error=None), effects=(Effect.DISCARD_FLOW,))

    if flow.state is LoginState.CREDENTIALS:
        if isinstance(event, CredentialsRejected):
            return Transition(flow=replace(flow, error=event.error))
        if isinstance(event, CredentialsAccepted):
            return Transition(
                flow=replace(
                    flow,
                    state=LoginState.DEVICE_CHECK,
                    user_id=event.user_id,
                    display_name=event.display_name,
                    role=event.role,
                    error=None,
                ),
                effects=(Effect.RUN_DEVICE_CHECK,),
            )

    elif flow.state is LoginState.DEVICE_CHECK:
        if isinstance(event, DeviceEvaluated):
            evaluated = replace(
                flow,
                device_hash=event.device_hash,
                device_label=event.device_label,
                ip_address=event.ip_address,
                risk_level=event.risk_level,
            )
            if event.trusted and not event.requires_otp:
                return _succeed(evaluated, ())
            return Transition(
                flow=replace(evaluated, state=LoginState.OTP_VERIFY, error=None),
                effects=(Effect.ISSUE_OTP,),
            )

    elif flow.state is LoginState.OTP_VERIFY:
        if isinstance(event, OtpIssued):
            # The resend cooldown only starts once a challenge exists.
            sent_at = event.at if event.stored else None
            return Transition(
                flow=replace(flow, otp_sent_at=sent_at, error=event.error, attempts_remaining=None),
            )
        if isinstance(event, ResendRequested):
            retry_after = resend_available_in(flow, event.at, event.cooldown_seconds)
            if retry_after > 0:
                raise ResendCooldownError(retry_after)
            return Transition(flow=replace(flow, error=None), effects=(Effect.ISSUE_OTP,))
        if isinstance(event, OtpRejected):
            return Transition(flow=replace(flow, error=event.error, attempts_remaining=event.attempts_remaining))
        if isinstance(event, OtpAccepted):
            return _succeed(flow, (Effect.REGISTER_DEVICE,))

    raise InvalidTransitionError(
        f"Event {type(event).__name__} is not valid while the login flow is in {flow.state.value}."
    )
