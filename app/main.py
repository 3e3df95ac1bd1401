from __future__ import annotations

import ipaddress
import logging
import os
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Literal

import httpx
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from app.browser_privacy import ReportedPrivacyProbe
from app.database import DatabaseError, SupabaseConfig, create_supabase_client
from app.device_trust import DeviceTrustStore
from app.fingerprint import FingerprintSettings
from app.geo_anomaly import GeoAnomalyDetector
from app.ip_intelligence import IPIntelligenceClient, IPIntelligenceSettings
from app.login_flow import (
    InvalidTransitionError,
    LoginFlow,
    LoginFlowError,
    LoginFlowNotFoundError,
    ResendCooldownError,
)
from app.notifications import EmailSettings, build_message_sender
from app.orchestrator import InMemoryLoginFlowStore, LoginFlowSettings, LoginOrchestrator
from app.otp_service import (
    OtpError,
    OtpExpiredError,
    OtpInvalidCodeError,
    OtpLockedError,
    OtpService,
    OtpSettings,
)
from app.rate_limit import InMemoryRateLimiter, RateLimitSettings, enforce_auth_rate_limit
from app.risk_engine import DEFAULT_SIGNAL_TIMEOUT_SECONDS, AnonymityRiskEngine, RiskThresholds
from app.security import (
    AuthContext,
    InvalidCredentialsError,
    SupabasePasswordVerifier,
    SupabaseUserTokenVerifier,
    authenticate_admin_request,
    authenticate_user,
    load_admin_auth_settings,
)
from app.security_repository import SecurityRepository
from app.tor_detector import TorDetectorSettings, TorExitNodeCache

load_dotenv()

DEFAULT_RISK_MEDIUM_THRESHOLD = 0.30
DEFAULT_RISK_HIGH_THRESHOLD = 0.60
DEFAULT_RATE_LIMIT_ENABLED = True
DEFAULT_RATE_LIMIT_REQUESTS = 30
DEFAULT_RATE_LIMIT_WINDOW_SECONDS = 60
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_EVENT_HISTORY_LIMIT = 50
SIGNAL_WORKERS = 16
LOGIN_WORKERS = 8
REQUEST_ID_HEADER = "X-Request-ID"
FORWARDED_FOR_HEADER = "X-Forwarded-For"
ATTEMPTS_REMAINING_HEADER = "X-OTP-Attempts-Remaining"

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network

logger = logging.getLogger("login_guard_api")


def _configure_logging() -> None:
    log_level_name = os.getenv("LOG_LEVEL", DEFAULT_LOG_LEVEL).strip().upper() or DEFAULT_LOG_LEVEL
    log_level = getattr(logging, log_level_name, logging.INFO)

    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    else:
        logging.getLogger().setLevel(log_level)

    logger.setLevel(log_level)


_configure_logging()


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1, max_length=256)

    model_config = ConfigDict(extra="forbid")


class LoginResponse(BaseModel):
    flow_id: str
    status: str
    next_step: str
    message: str


class FingerprintPayload(BaseModel):
    user_agent: str | None = Field(default=None, max_length=1024)
    platform: str | None = Field(default=None, max_length=128)
    screen_resolution: str | None = Field(default=None, max_length=32)
    timezone: str | None = Field(default=None, max_length=64)
    app_version: str | None = Field(default=None, max_length=1024)
    language: str | None = Field(default=None, max_length=35)
    color_depth: int | None = Field(default=None, ge=0, le=64)
    hardware_concurrency: int | None = Field(default=None, ge=0, le=1024)
    is_headless: bool = False
    is_webdriver: bool = False
    is_emulator: bool = False

    model_config = ConfigDict(extra="forbid")


class PrivacyPayload(BaseModel):
    is_tor_browser: bool = False
    canvas_blocked: bool = False
    webgl_blocked: bool = False
    webrtc_disabled: bool = False
    audio_blocked: bool = False
    entropy_score: int = Field(default=100, ge=0, le=100)

    model_config = ConfigDict(extra="forbid")

    def to_probe(self) -> ReportedPrivacyProbe:
        return ReportedPrivacyProbe(
            tor_browser=self.is_tor_browser,
            canvas=self.canvas_blocked,
            webgl=self.webgl_blocked,
            webrtc=self.webrtc_disabled,
            audio=self.audio_blocked,
            entropy=self.entropy_score,
        )


class DeviceCheckRequest(BaseModel):
    flow_id: str = Field(..., min_length=8, max_length=64)
    fingerprint: FingerprintPayload
    privacy: PrivacyPayload = Field(default_factory=PrivacyPayload)

    model_config = ConfigDict(extra="forbid")


class RiskAssessmentResponse(BaseModel):
    score: float = Field(..., ge=0.0, le=1.0)
    level: Literal["LOW", "MEDIUM", "HIGH"]
    requires_otp: bool
    signals: dict[str, bool]
    details: list[str]
    action_taken: str


class DeviceCheckResponse(BaseModel):
    flow_id: str
    trusted: bool
    device_known: bool
    device_label: str
    state: str
    next_step: str
    redirect_to: str | None = None
    risk_assessment: RiskAssessmentResponse
    device_risk_score: float
    device_risk_flag: bool
    suspicious_environment: bool
    environment_flags: list[str]
    otp_sent: bool
    otp_expires_at: datetime | None = None
    resend_available_in: int | None = None
    dev_code: str | None = None
    message: str
    request_id: str


class FlowRequest(BaseModel):
    flow_id: str = Field(..., min_length=8, max_length=64)

    model_config = ConfigDict(extra="forbid")


class OtpIssueResponse(BaseModel):
    flow_id: str
    sent: bool
    state: str
    expires_at: datetime | None = None
    resend_available_in: int
    message: str
    dev_code: str | None = None


class OtpVerifyRequest(BaseModel):
    flow_id: str = Field(..., min_length=8, max_length=64)
    code: str = Field(..., max_length=16)

    model_config = ConfigDict(extra="forbid")


class OtpVerifyResponse(BaseModel):
    valid: bool
    state: str
    redirect_to: str
    message: str


class CancelResponse(BaseModel):
    flow_id: str
    state: str


class TrustedDeviceItem(BaseModel):
    device_id: str
    device_name: str | None = None
    ip_address: str | None = None
    first_seen: datetime | None = None
    last_seen: datetime | None = None
    trusted_status: bool
    risk_flag: bool


class TrustedDeviceListResponse(BaseModel):
    items: list[TrustedDeviceItem]


class SecurityEventItem(BaseModel):
    event_id: str
    event_type: str
    device_hash: str | None = None
    ip_address: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class SecurityEventListResponse(BaseModel):
    items: list[SecurityEventItem]
    limit: int


class DeviceRemovedResponse(BaseModel):
    device_id: str
    removed: bool
    message: str


class TorCacheStatsResponse(BaseModel):
    total_nodes: int
    last_refresh: datetime | None = None
    fresh: bool


class TorRefreshResponse(BaseModel):
    count: int
    source: str
    refreshed_at: datetime | None = None


class OtpCleanupResponse(BaseModel):
    removed: int


class ClearRiskFlagResponse(BaseModel):
    device_id: str
    user_id: str
    risk_flag: bool
    message: str


def _parse_cors_origins(raw_origins: str | None) -> list[str]:
    if not raw_origins:
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    if raw_origins.strip() == "*":
        return ["*"]
    return [origin.strip() for origin in raw_origins.split(",") if origin.strip()]


def _parse_trusted_proxies(raw_proxies: str | None) -> tuple[IPNetwork, ...]:
    if not raw_proxies:
        return ()
    networks: list[IPNetwork] = []
    for entry in raw_proxies.split(","):
        entry = entry.strip()
        if not entry:
            continue
        try:
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError as exc:
            raise ValueError(f"TRUSTED_PROXIES entry '{entry}' is not an IP address or network.") from exc
    return tuple(networks)


def _parse_bool_env(raw_value: str | None, default: bool, variable_name: str) -> bool:
    if raw_value is None or not raw_value.strip():
        return default
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{variable_name} must be a boolean value (true/false).")


def _load_risk_thresholds() -> RiskThresholds:
    raw_medium = os.getenv("RISK_MEDIUM_THRESHOLD", str(DEFAULT_RISK_MEDIUM_THRESHOLD)).strip()
    raw_high = os.getenv("RISK_HIGH_THRESHOLD", str(DEFAULT_RISK_HIGH_THRESHOLD)).strip()
    try:
        medium = float(raw_medium)
        high = float(raw_high)
    except ValueError as exc:
        raise ValueError("RISK_MEDIUM_THRESHOLD and RISK_HIGH_THRESHOLD must be numeric values.") from exc

    return RiskThresholds(medium=medium, high=high)


def _load_signal_timeout_seconds() -> float:
    raw_timeout = os.getenv("SIGNAL_TIMEOUT_SECONDS", str(DEFAULT_SIGNAL_TIMEOUT_SECONDS)).strip()
    try:
        timeout_seconds = float(raw_timeout)
    except ValueError as exc:
        raise ValueError("SIGNAL_TIMEOUT_SECONDS must be a numeric value.") from exc
    if timeout_seconds <= 0:
        raise ValueError("SIGNAL_TIMEOUT_SECONDS must be greater than 0.")
    return timeout_seconds


def _load_rate_limit_settings() -> RateLimitSettings:
    enabled = _parse_bool_env(
        os.getenv("RATE_LIMIT_ENABLED"),
        DEFAULT_RATE_LIMIT_ENABLED,
        "RATE_LIMIT_ENABLED",
    )
    raw_requests = os.getenv("RATE_LIMIT_REQUESTS", str(DEFAULT_RATE_LIMIT_REQUESTS)).strip()
    raw_window_seconds = os.getenv("RATE_LIMIT_WINDOW_SECONDS", str(DEFAULT_RATE_LIMIT_WINDOW_SECONDS)).strip()

    try:
        requests = int(raw_requests)
        window_seconds = int(raw_window_seconds)
    except ValueError as exc:
        raise ValueError(
            "RATE_LIMIT_REQUESTS and RATE_LIMIT_WINDOW_SECONDS must be integer values."
        ) from exc

    return RateLimitSettings(enabled=enabled, requests=requests, window_seconds=window_seconds)


def _build_http_client() -> httpx.Client:
    return httpx.Client(follow_redirects=True, headers={"User-Agent": "login-guard/1.0"})


def _parse_ip(value: str) -> IPAddress | None:
    try:
        return ipaddress.ip_address(value.strip())
    except ValueError:
        return None


def _is_trusted_proxy(address: str, trusted_proxies: tuple[IPNetwork, ...]) -> bool:
    parsed = _parse_ip(address)
    return parsed is not None and any(
        parsed.version == network.version and parsed in network for network in trusted_proxies
    )


def _resolve_client_ip(request: Request, trusted_proxies: tuple[IPNetwork, ...]) -> str:
    """Address to score: the socket peer, or the nearest untrusted X-Forwarded-For hop behind our proxies."""
    peer = request.client.host if request.client else "unknown"
    if not _is_trusted_proxy(peer, trusted_proxies):
        return peer

    hops = [hop.strip() for hop in request.headers.get(FORWARDED_FOR_HEADER, "").split(",") if hop.strip()]
    for hop in reversed(hops):
        if _is_trusted_proxy(hop, trusted_proxies):
            continue
        parsed = _parse_ip(hop)
        return str(parsed) if parsed is not None else "unknown"
    return peer


def _flow_error_response(exc: LoginFlowError) -> HTTPException:
    if isinstance(exc, LoginFlowNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ResendCooldownError):
        return HTTPException(
            status_code=429,
            detail=str(exc),
            headers={"Retry-After": str(exc.retry_after)},
        )
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _otp_error_response(exc: OtpError) -> HTTPException:
    if isinstance(exc, OtpInvalidCodeError):
        return HTTPException(
            status_code=401,
            detail=str(exc),
            headers={ATTEMPTS_REMAINING_HEADER: str(exc.attempts_remaining)},
        )
    if isinstance(exc, OtpExpiredError):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, OtpLockedError):
        return HTTPException(status_code=403, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _map_trusted_device(row: dict[str, Any]) -> TrustedDeviceItem:
    return TrustedDeviceItem(
        device_id=str(row["id"]),
        device_name=row.get("device_name"),
        ip_address=row.get("ip_address"),
        first_seen=row.get("first_seen"),
        last_seen=row.get("last_seen"),
        trusted_status=bool(row.get("trusted_status", False)),
        risk_flag=bool(row.get("risk_flag", False)),
    )


def _map_security_event(row: dict[str, Any]) -> SecurityEventItem:
    return SecurityEventItem(
        event_id=str(row["id"]),
        event_type=str(row["event_type"]),
        device_hash=row.get("device_hash"),
        ip_address=row.get("ip_address"),
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
    )


def _otp_message(flow: LoginFlow, sent: bool) -> str:
    if sent:
        return f"A verification code was sent to {flow.email}."
    return flow.error or "Failed to send verification code. Request a new code."


@asynccontextmanager
async def lifespan(app: FastAPI):
    supabase_config = SupabaseConfig.from_env()
    repository = SecurityRepository(create_supabase_client(supabase_config))
    auth_client = create_supabase_client(supabase_config)

    fingerprint_settings = FingerprintSettings.from_env()
    otp_settings = OtpSettings.from_env()
    tor_settings = TorDetectorSettings.from_env()
    ip_intel_settings = IPIntelligenceSettings.from_env()
    email_settings = EmailSettings.from_env()
    flow_settings = LoginFlowSettings.from_env()
    admin_auth_settings = load_admin_auth_settings()
    risk_thresholds = _load_risk_thresholds()
    rate_limit_settings = _load_rate_limit_settings()
    signal_timeout_seconds = _load_signal_timeout_seconds()
    if signal_timeout_seconds >= flow_settings.device_check_timeout_seconds:
        raise ValueError("SIGNAL_TIMEOUT_SECONDS must be less than DEVICE_CHECK_TIMEOUT_SECONDS.")
    trusted_proxies = _parse_trusted_proxies(os.getenv("TRUSTED_PROXIES"))

    http_client = _build_http_client()
    signal_executor = ThreadPoolExecutor(max_workers=SIGNAL_WORKERS, thread_name_prefix="risk-signals")
    login_executor = ThreadPoolExecutor(max_workers=LOGIN_WORKERS, thread_name_prefix="login-checks")

    trust_store = DeviceTrustStore(repository)
    tor_cache = TorExitNodeCache(repository, tor_settings, http_client)
    risk_engine = AnonymityRiskEngine(
        repository=repository,
        tor_cache=tor_cache,
        ip_intelligence=IPIntelligenceClient(ip_intel_settings, http_client),
        geo_detector=GeoAnomalyDetector(repository),
        trust_store=trust_store,
        thresholds=risk_thresholds,
        executor=signal_executor,
        signal_timeout_seconds=signal_timeout_seconds,
    )
    otp_service = OtpService(repository, build_message_sender(email_settings, http_client), otp_settings)
    orchestrator = LoginOrchestrator(
        password_verifier=SupabasePasswordVerifier(auth_client),
        repository=repository,
        trust_store=trust_store,
        risk_engine=risk_engine,
        otp_service=otp_service,
        flow_store=InMemoryLoginFlowStore(flow_settings),
        fingerprint_settings=fingerprint_settings,
        executor=login_executor,
        device_check_timeout_seconds=flow_settings.device_check_timeout_seconds,
    )

    app.state.security_repo = repository
    app.state.user_token_verifier = SupabaseUserTokenVerifier(auth_client)
    app.state.admin_auth_settings = admin_auth_settings
    app.state.rate_limit_settings = rate_limit_settings
    app.state.rate_limiter = InMemoryRateLimiter(settings=rate_limit_settings)
    app.state.trusted_proxies = trusted_proxies
    app.state.trust_store = trust_store
    app.state.tor_cache = tor_cache
    app.state.otp_service = otp_service
    app.state.orchestrator = orchestrator
    logger.info(
        "service_started risk_medium=%.2f risk_high=%.2f email_provider=%s trusted_proxies=%s",
        risk_thresholds.medium,
        risk_thresholds.high,
        "RESEND" if email_settings.resend_enabled else "SIMULATION",
        len(trusted_proxies),
    )

    try:
        yield
    finally:
        login_executor.shutdown(wait=True)
        signal_executor.shutdown(wait=True)
        http_client.close()


app = FastAPI(
    title="Login Guard: Step-Up Authentication API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_cors_origins(os.getenv("CORS_ALLOWED_ORIGINS")),
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context_and_logging_middleware(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER, "").strip() or str(uuid.uuid4())
    request.state.request_id = request_id
    start_time = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception:
        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.exception(
            "request_failed request_id=%s method=%s path=%s duration_ms=%.2f",
            request_id,
            request.method,
            request.url.path,
            duration_ms,
        )
        raise

    duration_ms = (time.perf_counter() - start_time) * 1000
    response.headers[REQUEST_ID_HEADER] = request_id
    logger.info(
        "request_complete request_id=%s method=%s path=%s status_code=%s duration_ms=%.2f",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


@app.get("/health")
def health_check() -> dict[str, str]:
    return {
        "status": "ok",
        "service": "login-guard-backend",
    }


@app.post("/auth/login", response_model=LoginResponse)
def login(
    request: Request,
    payload: LoginRequest,
    __: None = Depends(enforce_auth_rate_limit),
) -> LoginResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    try:
        flow = app.state.orchestrator.login(payload.email, payload.password)
    except InvalidCredentialsError as exc:
        logger.info("login_rejected request_id=%s", request_id)
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("login_internal_error request_id=%s", request_id)
        raise HTTPException(status_code=500, detail="Internal server error during sign-in.") from exc

    logger.info("login_credentials_accepted request_id=%s flow_id=%s", request_id, flow.flow_id)
    return LoginResponse(
        flow_id=flow.flow_id,
        status=flow.state.value,
        next_step=flow.next_step,
        message="Credentials verified. Checking device.",
    )


@app.post("/auth/device-check", response_model=DeviceCheckResponse)
def check_device(
    request: Request,
    payload: DeviceCheckRequest,
    __: None = Depends(enforce_auth_rate_limit),
) -> DeviceCheckResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    orchestrator: LoginOrchestrator = app.state.orchestrator
    try:
        outcome = orchestrator.check_device(
            payload.flow_id,
            fingerprint=payload.fingerprint.model_dump(),
            ip_address=_resolve_client_ip(request, app.state.trusted_proxies),
            privacy_probe=payload.privacy.to_probe(),
        )
    except LoginFlowError as exc:
        raise _flow_error_response(exc) from exc
    except DatabaseError as exc:
        logger.error("device_check_db_error request_id=%s error=%s", request_id, str(exc))
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("device_check_internal_error request_id=%s", request_id)
        raise HTTPException(status_code=500, detail="Internal server error during device check.") from exc

    flow = outcome.flow
    otp = outcome.otp
    if otp is None:
        message = "Device recognized. Sign-in complete."
    else:
        message = _otp_message(flow, otp.sent)

    logger.info(
        "device_check_complete request_id=%s flow_id=%s trusted=%s risk_level=%s state=%s",
        request_id,
        flow.flow_id,
        outcome.trusted,
        outcome.risk_assessment.level,
        flow.state.value,
    )
    return DeviceCheckResponse(
        flow_id=flow.flow_id,
        trusted=outcome.trusted,
        device_known=outcome.device_known,
        device_label=outcome.device_label,
        state=flow.state.value,
        next_step=flow.next_step,
        redirect_to=flow.redirect_to,
        risk_assessment=RiskAssessmentResponse(**outcome.risk_assessment.to_dict()),
        device_risk_score=outcome.device_risk.risk_score,
        device_risk_flag=outcome.device_risk.risk_flag,
        suspicious_environment=outcome.suspicious_environment,
        environment_flags=list(outcome.environment_flags),
        otp_sent=bool(otp and otp.sent),
        otp_expires_at=otp.expires_at if otp else None,
        resend_available_in=orchestrator.resend_available_in(flow) if otp else None,
        dev_code=otp.dev_code if otp else None,
        message=message,
        request_id=request_id,
    )


@app.post("/auth/otp/issue", response_model=OtpIssueResponse)
def resend_otp(
    request: Request,
    payload: FlowRequest,
    __: None = Depends(enforce_auth_rate_limit),
) -> OtpIssueResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    try:
        outcome = app.state.orchestrator.resend_otp(payload.flow_id)
    except LoginFlowError as exc:
        logger.info("otp_resend_refused request_id=%s error=%s", request_id, str(exc))
        raise _flow_error_response(exc) from exc
    except Exception as exc:
        logger.exception("otp_resend_internal_error request_id=%s", request_id)
        raise HTTPException(status_code=500, detail="Internal server error during code delivery.") from exc

    return OtpIssueResponse(
        flow_id=outcome.flow.flow_id,
        sent=outcome.otp.sent,
        state=outcome.flow.state.value,
        expires_at=outcome.otp.expires_at,
        resend_available_in=outcome.resend_available_in,
        message=_otp_message(outcome.flow, outcome.otp.sent),
        dev_code=outcome.otp.dev_code,
    )


@app.post("/auth/otp/verify", response_model=OtpVerifyResponse)
def verify_otp(
    request: Request,
    payload: OtpVerifyRequest,
    __: None = Depends(enforce_auth_rate_limit),
) -> OtpVerifyResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    try:
        flow = app.state.orchestrator.verify_otp(payload.flow_id, payload.code)
    except OtpError as exc:
        raise _otp_error_response(exc) from exc
    except LoginFlowError as exc:
        raise _flow_error_response(exc) from exc
    except DatabaseError as exc:
        logger.error("otp_verify_db_error request_id=%s error=%s", request_id, str(exc))
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("otp_verify_internal_error request_id=%s", request_id)
        raise HTTPException(status_code=500, detail="Internal server error during code verification.") from exc

    return OtpVerifyResponse(
        valid=True,
        state=flow.state.value,
        redirect_to=str(flow.redirect_to),
        message="Device verified. Sign-in complete.",
    )


@app.post("/auth/cancel", response_model=CancelResponse)
def cancel_login(payload: FlowRequest) -> CancelResponse:
    try:
        flow = app.state.orchestrator.cancel(payload.flow_id)
    except LoginFlowError as exc:
        raise _flow_error_response(exc) from exc
    return CancelResponse(flow_id=flow.flow_id, state=flow.state.value)


@app.get("/devices", response_model=TrustedDeviceListResponse)
def list_trusted_devices(auth_context: AuthContext = Depends(authenticate_user)) -> TrustedDeviceListResponse:
    try:
        rows = app.state.trust_store.list_devices(auth_context.principal)
    except DatabaseError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return TrustedDeviceListResponse(items=[_map_trusted_device(row) for row in rows])


@app.get("/devices/events", response_model=SecurityEventListResponse)
def list_security_events(
    auth_context: AuthContext = Depends(authenticate_user),
    limit: int = Query(DEFAULT_EVENT_HISTORY_LIMIT, ge=1, le=200),
) -> SecurityEventListResponse:
    try:
        rows = app.state.trust_store.list_events(auth_context.principal, limit=limit)
    except DatabaseError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return SecurityEventListResponse(items=[_map_security_event(row) for row in rows], limit=limit)


@app.delete("/devices/{device_id}", response_model=DeviceRemovedResponse)
def remove_trusted_device(
    device_id: str,
    auth_context: AuthContext = Depends(authenticate_user),
) -> DeviceRemovedResponse:
    try:
        removed = app.state.trust_store.remove_device(user_id=auth_context.principal, device_id=device_id)
    except DatabaseError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    if not removed:
        raise HTTPException(status_code=404, detail="Device was not found.")
    logger.info("device_removed user_id=%s device_id=%s", auth_context.principal, device_id)
    return DeviceRemovedResponse(device_id=device_id, removed=True, message="Device removed.")


@app.get("/admin/tor-cache", response_model=TorCacheStatsResponse)
def get_tor_cache_stats(_: AuthContext = Depends(authenticate_admin_request)) -> TorCacheStatsResponse:
    try:
        stats = app.state.tor_cache.stats()
    except DatabaseError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return TorCacheStatsResponse(total_nodes=stats.total_nodes, last_refresh=stats.last_refresh, fresh=stats.fresh)


@app.post("/admin/tor-cache/refresh", response_model=TorRefreshResponse)
def refresh_tor_cache(_: AuthContext = Depends(authenticate_admin_request)) -> TorRefreshResponse:
    result = app.state.tor_cache.refresh(force=True)
    logger.info("admin_tor_refresh source=%s count=%s", result.source, result.count)
    return TorRefreshResponse(count=result.count, source=result.source, refreshed_at=result.refreshed_at)


@app.post("/admin/otp/cleanup", response_model=OtpCleanupResponse)
def cleanup_otp_codes(_: AuthContext = Depends(authenticate_admin_request)) -> OtpCleanupResponse:
    try:
        removed = app.state.otp_service.cleanup_expired()
    except DatabaseError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return OtpCleanupResponse(removed=removed)


@app.post("/admin/devices/{device_id}/clear-risk-flag", response_model=ClearRiskFlagResponse)
def clear_device_risk_flag(
    device_id: str,
    _: AuthContext = Depends(authenticate_admin_request),
) -> ClearRiskFlagResponse:
    try:
        device = app.state.trust_store.clear_risk_flag(device_id)
    except DatabaseError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    if not device:
        raise HTTPException(status_code=404, detail="Device was not found.")
    logger.warning("admin_risk_flag_cleared device_id=%s user_id=%s", device_id, device.get("user_id"))
    return ClearRiskFlagResponse(
        device_id=device_id,
        user_id=str(device["user_id"]),
        risk_flag=bool(device.get("risk_flag", False)),
        message="Device risk flag cleared.",
    )
