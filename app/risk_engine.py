from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, TypeVar

from app.browser_privacy import BrowserPrivacyResult, PrivacyProbe, ReportedPrivacyProbe, evaluate_browser_privacy
from app.database import DatabaseError
from app.device_trust import EVENT_ANONYMITY_HIGH_RISK, DeviceTrustStore
from app.geo_anomaly import GeoAnomalyDetector, GeoAnomalyResult
from app.ip_intelligence import NO_SIGNAL, IPIntelligenceClient, IPIntelligenceResult
from app.security_repository import SecurityRepository, to_iso, utcnow
from app.tor_detector import TorExitNodeCache, TorLookupResult

logger = logging.getLogger(__name__)

RISK_WEIGHTS = {
    "tor_exit_match": 0.30,
    "proxy_flag": 0.15,
    "vpn_hosting": 0.15,
    "geo_jump": 0.15,
    "fingerprint_hardened": 0.15,
    "repeated_tor_usage": 0.10,
}
TOR_BROWSER_PARTIAL_FACTOR = 0.7
REPEATED_TOR_WINDOW = timedelta(days=7)
REPEATED_TOR_MIN_LOGINS = 3
DEFAULT_SIGNAL_TIMEOUT_SECONDS = 3.0

ACTION_NONE = "none"
ACTION_WARN = "warn"
ACTION_FORCE_OTP = "force_otp"
ACTION_FORCE_OTP_HIGH_MONITORING = "force_otp_high_monitoring"

T = TypeVar("T")


@dataclass(frozen=True)
class RiskThresholds:
    medium: float = 0.30
    high: float = 0.60

    def __post_init__(self) -> None:
        if not 0.0 <= self.medium <= 1.0:
            raise ValueError("RISK_MEDIUM_THRESHOLD must be between 0 and 1.")
        if not 0.0 <= self.high <= 1.0:
            raise ValueError("RISK_HIGH_THRESHOLD must be between 0 and 1.")
        if self.medium >= self.high:
            raise ValueError("RISK_MEDIUM_THRESHOLD must be less than RISK_HIGH_THRESHOLD.")


@dataclass(frozen=True)
class AnonymitySignals:
    user_id: str
    ip_address: str
    privacy_probe: PrivacyProbe = field(default_factory=ReportedPrivacyProbe)


@dataclass(frozen=True)
class CollectedSignals:
    tor: TorLookupResult
    ip_intel: IPIntelligenceResult
    privacy: BrowserPrivacyResult
    geo: GeoAnomalyResult
    repeated_tor: bool


@dataclass(frozen=True)
class RiskAssessment:
    score: float
    level: str
    requires_otp: bool
    signals: dict[str, bool]
    details: tuple[str, ...]
    action_taken: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "level": self.level,
            "requires_otp": self.requires_otp,
            "signals": dict(self.signals),
            "details": list(self.details),
            "action_taken": self.action_taken,
        }


NEUTRAL_SIGNALS = {
    "tor_exit_match": False,
    "tor_browser": False,
    "proxy_flag": False,
    "vpn_detected": False,
    "hosting_detected": False,
    "geo_anomaly": False,
    "fingerprint_hardened": False,
    "repeated_tor_usage": False,
}


def unavailable_assessment(reason: str) -> RiskAssessment:
    """Neutral LOW assessment used when the whole assessment could not finish."""
    return RiskAssessment(
        score=0.0,
        level="LOW",
        requires_otp=False,
        signals=dict(NEUTRAL_SIGNALS),
        details=(reason,),
        action_taken=ACTION_NONE,
    )


def determine_level(score: float, thresholds: RiskThresholds) -> str:
    if score >= thresholds.high:
        return "HIGH"
    if score >= thresholds.medium:
        return "MEDIUM"
    return "LOW"


def evaluate_risk(
    collected: CollectedSignals,
    thresholds: RiskThresholds,
    ip_address: str = "unknown",
) -> RiskAssessment:
    """Weighted aggregation of every signal into one score, level and action."""
    details: list[str] = []
    raw_score = 0.0

    tor_exit_match = collected.tor.is_tor
    if tor_exit_match:
        raw_score += RISK_WEIGHTS["tor_exit_match"]
        details.append(f"IP {ip_address} is a known Tor exit node (confidence: {collected.tor.confidence})")

    tor_browser = collected.privacy.is_tor_browser
    if tor_browser and not tor_exit_match:
        raw_score += RISK_WEIGHTS["tor_exit_match"] * TOR_BROWSER_PARTIAL_FACTOR
        details.append("Tor Browser signature detected (possible bridge relay)")

    ip_intel = collected.ip_intel
    if ip_intel.is_proxy:
        raw_score += RISK_WEIGHTS["proxy_flag"]
        details.append(f"Proxy detected: {ip_intel.isp}")
    if ip_intel.is_vpn or ip_intel.is_hosting:
        raw_score += RISK_WEIGHTS["vpn_hosting"]
        if ip_intel.is_vpn:
            details.append(f"VPN provider: {ip_intel.isp}")
        else:
            details.append(f"Hosting/datacenter: {ip_intel.org}")
    for provider_detail in ip_intel.details:
        if not any(provider_detail in existing for existing in details):
            details.append(provider_detail)

    if collected.geo.geo_anomaly:
        raw_score += RISK_WEIGHTS["geo_jump"]
        details.append(collected.geo.details)

    hardened = collected.privacy.fingerprint_hardened
    if hardened:
        raw_score += RISK_WEIGHTS["fingerprint_hardened"]
        details.append(f"Fingerprint hardening: {', '.join(collected.privacy.privacy_flags)}")

    if collected.repeated_tor:
        raw_score += RISK_WEIGHTS["repeated_tor_usage"]
        details.append("Repeated Tor/anonymity network usage detected (>=3 in 7 days)")

    score = min(1.0, max(0.0, round(raw_score, 4)))
    level = determine_level(score, thresholds)

    if level == "HIGH":
        action_taken = ACTION_FORCE_OTP_HIGH_MONITORING if collected.repeated_tor else ACTION_FORCE_OTP
    elif level == "MEDIUM":
        action_taken = ACTION_WARN
    else:
        action_taken = ACTION_NONE

    return RiskAssessment(
        score=score,
        level=level,
        requires_otp=level == "HIGH",
        signals={
            "tor_exit_match": tor_exit_match,
            "tor_browser": tor_browser,
            "proxy_flag": ip_intel.is_proxy,
            "vpn_detected": ip_intel.is_vpn,
            "hosting_detected": ip_intel.is_hosting,
            "geo_anomaly": collected.geo.geo_anomaly,
            "fingerprint_hardened": hardened,
            "repeated_tor_usage": collected.repeated_tor,
        },
        details=tuple(details),
        action_taken=action_taken,
    )


class AnonymityRiskEngine:
    """Collects every anonymity signal for a login and records the outcome.

    Tor lookup, IP intelligence, browser-privacy evaluation and the repeated-Tor
    lookback run concurrently on the engine's own executor. The geo check waits
    on IP intelligence because it needs the resolved location. All of them
    share one deadline of ``signal_timeout_seconds``; a signal still running
    at the deadline is replaced by its neutral default.
    """

    def __init__(
        self,
        *,
        repository: SecurityRepository,
        tor_cache: TorExitNodeCache,
        ip_intelligence: IPIntelligenceClient,
        geo_detector: GeoAnomalyDetector,
        trust_store: DeviceTrustStore,
        thresholds: RiskThresholds,
        executor: ThreadPoolExecutor,
        clock: Callable[[], datetime] = utcnow,
        signal_timeout_seconds: float = DEFAULT_SIGNAL_TIMEOUT_SECONDS,
    ) -> None:
        if signal_timeout_seconds <= 0:
            raise ValueError("SIGNAL_TIMEOUT_SECONDS must be greater than 0.")
        self._repository = repository
        self._tor_cache = tor_cache
        self._ip_intelligence = ip_intelligence
        self._geo_detector = geo_detector
        self._trust_store = trust_store
        self._thresholds = thresholds
        self._executor = executor
        self._clock = clock
        self._signal_timeout_seconds = signal_timeout_seconds

    @staticmethod
    def _result_or_default(future: Future[T], default: T, signal_name: str, deadline: float) -> T:
        try:
            return future.result(timeout=max(0.0, deadline - time.monotonic()))
        except TimeoutError:
            future.cancel()
            logger.warning("signal_collection_timed_out signal=%s", signal_name)
            return default
        except Exception:
            logger.exception("signal_collection_failed signal=%s", signal_name)
            return default

    def _check_repeated_tor_usage(self, user_id: str) -> bool:
        since = self._clock() - REPEATED_TOR_WINDOW
        try:
            count = self._repository.count_tor_access_logs_since(user_id=user_id, since=since)
        except DatabaseError as exc:
            logger.warning("repeated_tor_check_failed user_id=%s error=%s", user_id, str(exc))
            return False
        return count >= REPEATED_TOR_MIN_LOGINS

    def collect(self, signals: AnonymitySignals) -> CollectedSignals:
        deadline = time.monotonic() + self._signal_timeout_seconds
        tor_future = self._executor.submit(self._tor_cache.lookup, signals.ip_address)
        intel_future = self._executor.submit(self._ip_intelligence.check, signals.ip_address)
        privacy_future = self._executor.submit(evaluate_browser_privacy, signals.privacy_probe)
        repeated_future = self._executor.submit(self._check_repeated_tor_usage, signals.user_id)

        ip_intel = self._result_or_default(intel_future, NO_SIGNAL, "ip_intelligence", deadline)
        geo_future = self._executor.submit(
            self._geo_detector.check,
            user_id=signals.user_id,
            country=ip_intel.country,
            lat=ip_intel.lat,
            lon=ip_intel.lon,
        )

        return CollectedSignals(
            tor=self._result_or_default(
                tor_future,
                TorLookupResult(is_tor=False, confidence="LOW"),
                "tor",
                deadline,
            ),
            ip_intel=ip_intel,
            privacy=self._result_or_default(
                privacy_future,
                evaluate_browser_privacy(ReportedPrivacyProbe()),
                "browser_privacy",
                deadline,
            ),
            geo=self._result_or_default(
                geo_future,
                GeoAnomalyResult(False, 0.0, 0.0, None, "Geo check unavailable"),
                "geo_anomaly",
                deadline,
            ),
            repeated_tor=self._result_or_default(repeated_future, False, "repeated_tor", deadline),
        )

    def assess(self, signals: AnonymitySignals) -> RiskAssessment:
        collected = self.collect(signals)
        assessment = evaluate_risk(collected, self._thresholds, signals.ip_address)
        self._record(signals, collected, assessment)
        logger.info(
            "anonymity_assessed user_id=%s score=%.2f level=%s action=%s",
            signals.user_id,
            assessment.score,
            assessment.level,
            assessment.action_taken,
        )
        return assessment

    def _record(self, signals: AnonymitySignals, collected: CollectedSignals, assessment: RiskAssessment) -> None:
        ip_intel = collected.ip_intel
        log_payload = {
            "user_id": signals.user_id,
            "ip_address": signals.ip_address,
            "tor_detected": assessment.signals["tor_exit_match"] or assessment.signals["tor_browser"],
            "proxy_detected": ip_intel.is_proxy,
            "vpn_detected": ip_intel.is_vpn,
            "hosting_detected": ip_intel.is_hosting,
            "geo_anomaly": collected.geo.geo_anomaly,
            "fingerprint_hardened": assessment.signals["fingerprint_hardened"],
            "risk_score": assessment.score,
            "risk_level": assessment.level,
            "action_taken": assessment.action_taken,
            "metadata": {
                "country": ip_intel.country,
                "city": ip_intel.city,
                "lat": ip_intel.lat,
                "lon": ip_intel.lon,
                "isp": ip_intel.isp,
                "org": ip_intel.org,
                "entropy_score": collected.privacy.entropy_score,
                "privacy_flags": list(collected.privacy.privacy_flags),
                "details": list(assessment.details),
            },
            "created_at": to_iso(self._clock()),
        }
        try:
            self._repository.insert_access_log(log_payload)
        except DatabaseError as exc:
            logger.error("access_log_write_failed user_id=%s error=%s", signals.user_id, str(exc))

        if assessment.level != "HIGH":
            return

        self._trust_store.log_event(
            user_id=signals.user_id,
            event_type=EVENT_ANONYMITY_HIGH_RISK,
            ip_address=signals.ip_address,
            metadata={
                "score": assessment.score,
                "level": assessment.level,
                "details": list(assessment.details),
                "action_taken": assessment.action_taken,
            },
        )

        if collected.repeated_tor:
            try:
                self._repository.update_monitoring_level(user_id=signals.user_id, monitoring_level="HIGH")
                logger.warning("monitoring_escalated user_id=%s level=HIGH", signals.user_id)
            except DatabaseError as exc:
                logger.error("monitoring_escalation_failed user_id=%s error=%s", signals.user_id, str(exc))
