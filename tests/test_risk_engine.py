from __future__ import annotations

import itertools
import threading
import time
import unittest
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from app.browser_privacy import ReportedPrivacyProbe, evaluate_browser_privacy
from app.device_trust import EVENT_ANONYMITY_HIGH_RISK, DeviceTrustStore
from app.geo_anomaly import GeoAnomalyDetector, GeoAnomalyResult
from app.ip_intelligence import IPIntelligenceResult
from app.risk_engine import (
    ACTION_FORCE_OTP,
    ACTION_FORCE_OTP_HIGH_MONITORING,
    ACTION_NONE,
    ACTION_WARN,
    AnonymityRiskEngine,
    AnonymitySignals,
    CollectedSignals,
    DEFAULT_SIGNAL_TIMEOUT_SECONDS,
    RiskThresholds,
    determine_level,
    evaluate_risk,
    unavailable_assessment,
)
from app.security_repository import to_iso
from app.tor_detector import TorLookupResult
from tests.fakes import (
    FIXED_NOW,
    FakeSecurityRepository,
    FixedClock,
    GatedPrivacyProbe,
    StubIPIntelligence,
    StubTorCache,
)

TOR_IP = "185.220.101.45"
HOME_IP = "81.2.69.160"

NO_GEO = GeoAnomalyResult(False, 0.0, 0.0, None, "First login - no history to compare")


def collected(
    *,
    tor: bool = False,
    tor_browser: bool = False,
    proxy: bool = False,
    vpn: bool = False,
    hosting: bool = False,
    geo: bool = False,
    hardened: bool = False,
    repeated: bool = False,
) -> CollectedSignals:
    return CollectedSignals(
        tor=TorLookupResult(is_tor=tor, confidence="HIGH"),
        ip_intel=IPIntelligenceResult(
            is_proxy=proxy,
            is_vpn=vpn,
            is_hosting=hosting,
            isp="Example ISP",
            org="Example Org",
        ),
        privacy=evaluate_browser_privacy(ReportedPrivacyProbe(tor_browser=tor_browser, canvas=hardened)),
        geo=GeoAnomalyResult(geo, 17000.0, 10.0, "United Kingdom", "Impossible travel") if geo else NO_GEO,
        repeated_tor=repeated,
    )


class EvaluateRiskTests(unittest.TestCase):
    def setUp(self) -> None:
        self.thresholds = RiskThresholds()

    def test_no_signals_is_low(self) -> None:
        assessment = evaluate_risk(collected(), self.thresholds, HOME_IP)

        self.assertEqual(assessment.score, 0.0)
        self.assertEqual(assessment.level, "LOW")
        self.assertFalse(assessment.requires_otp)
        self.assertEqual(assessment.action_taken, ACTION_NONE)

    def test_tor_browser_without_exit_match_scores_partially(self) -> None:
        assessment = evaluate_risk(collected(tor_browser=True), self.thresholds, HOME_IP)

        self.assertAlmostEqual(assessment.score, 0.21)
        self.assertEqual(assessment.level, "LOW")
        self.assertIn("Tor Browser signature detected (possible bridge relay)", assessment.details)

    def test_tor_browser_is_not_added_on_top_of_exit_match(self) -> None:
        exit_only = evaluate_risk(collected(tor=True), self.thresholds, TOR_IP)
        both = evaluate_risk(collected(tor=True, tor_browser=True), self.thresholds, TOR_IP)

        self.assertAlmostEqual(exit_only.score, 0.30)
        self.assertAlmostEqual(both.score, 0.30)
        self.assertEqual(both.level, "MEDIUM")
        self.assertEqual(both.action_taken, ACTION_WARN)

    def test_tor_with_anonymising_network_is_high(self) -> None:
        assessment = evaluate_risk(collected(tor=True, proxy=True, vpn=True), self.thresholds, TOR_IP)

        self.assertAlmostEqual(assessment.score, 0.60)
        self.assertEqual(assessment.level, "HIGH")
        self.assertTrue(assessment.requires_otp)
        self.assertEqual(assessment.action_taken, ACTION_FORCE_OTP)
        self.assertIn(f"IP {TOR_IP} is a known Tor exit node (confidence: HIGH)", assessment.details)

    def test_vpn_and_hosting_share_one_weight(self) -> None:
        assessment = evaluate_risk(collected(vpn=True, hosting=True), self.thresholds, HOME_IP)

        self.assertAlmostEqual(assessment.score, 0.15)

    def test_repeated_tor_usage_escalates_action(self) -> None:
        assessment = evaluate_risk(
            collected(tor=True, proxy=True, vpn=True, repeated=True),
            self.thresholds,
            TOR_IP,
        )

        self.assertAlmostEqual(assessment.score, 0.70)
        self.assertEqual(assessment.action_taken, ACTION_FORCE_OTP_HIGH_MONITORING)

    def test_score_bounds_and_otp_requirement_hold_for_every_combination(self) -> None:
        names = ("tor", "tor_browser", "proxy", "vpn", "hosting", "geo", "hardened", "repeated")
        for flags in itertools.product((False, True), repeat=len(names)):
            signals = dict(zip(names, flags))
            with self.subTest(**signals):
                assessment = evaluate_risk(collected(**signals), self.thresholds, HOME_IP)
                self.assertGreaterEqual(assessment.score, 0.0)
                self.assertLessEqual(assessment.score, 1.0)
                self.assertEqual(assessment.requires_otp, assessment.level == "HIGH")

    def test_custom_thresholds(self) -> None:
        thresholds = RiskThresholds(medium=0.1, high=0.2)

        self.assertEqual(determine_level(0.21, thresholds), "HIGH")
        self.assertEqual(determine_level(0.15, thresholds), "MEDIUM")
        self.assertEqual(determine_level(0.05, thresholds), "LOW")

    def test_threshold_validation(self) -> None:
        with self.assertRaises(ValueError):
            RiskThresholds(medium=0.6, high=0.3)
        with self.assertRaises(ValueError):
            RiskThresholds(medium=-0.1, high=0.5)


class AnonymityRiskEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.repository = FakeSecurityRepository()
        self.repository.add_profile("user-123")
        self.clock = FixedClock()
        self.executor = ThreadPoolExecutor(max_workers=4)
        self.addCleanup(self.executor.shutdown, wait=True)

    def build_engine(
        self,
        ip_intelligence: StubIPIntelligence | None = None,
        *,
        tor_cache: StubTorCache | None = None,
        signal_timeout_seconds: float = DEFAULT_SIGNAL_TIMEOUT_SECONDS,
    ) -> AnonymityRiskEngine:
        return AnonymityRiskEngine(
            repository=self.repository,
            tor_cache=tor_cache or StubTorCache(TOR_IP),
            ip_intelligence=ip_intelligence or StubIPIntelligence(),
            geo_detector=GeoAnomalyDetector(self.repository, clock=self.clock),
            trust_store=DeviceTrustStore(self.repository, clock=self.clock),
            thresholds=RiskThresholds(),
            executor=self.executor,
            clock=self.clock,
            signal_timeout_seconds=signal_timeout_seconds,
        )

    def anonymising_intel(self) -> StubIPIntelligence:
        return StubIPIntelligence(
            IPIntelligenceResult(is_proxy=True, is_vpn=True, isp="Exit Relay Hosting", country="Germany", lat=50.1, lon=8.7)
        )

    def test_clean_login_writes_access_log_only(self) -> None:
        engine = self.build_engine()

        assessment = engine.assess(AnonymitySignals(user_id="user-123", ip_address=HOME_IP))

        self.assertEqual(assessment.level, "LOW")
        self.assertEqual(len(self.repository.access_logs), 1)
        log_row = self.repository.access_logs[0]
        self.assertEqual(log_row["risk_level"], "LOW")
        self.assertEqual(log_row["metadata"]["country"], "United Kingdom")
        self.assertEqual(log_row["created_at"], to_iso(FIXED_NOW))
        self.assertEqual(self.repository.event_types("user-123"), [])

    def test_high_risk_logs_security_event(self) -> None:
        engine = self.build_engine(self.anonymising_intel())

        assessment = engine.assess(
            AnonymitySignals(
                user_id="user-123",
                ip_address=TOR_IP,
                privacy_probe=ReportedPrivacyProbe(tor_browser=True),
            )
        )

        self.assertEqual(assessment.level, "HIGH")
        self.assertTrue(assessment.requires_otp)
        self.assertTrue(self.repository.access_logs[0]["tor_detected"])
        self.assertEqual(self.repository.event_types("user-123"), [EVENT_ANONYMITY_HIGH_RISK])
        self.assertEqual(self.repository.profiles["user-123"]["monitoring_level"], "NORMAL")

    def test_repeated_tor_usage_raises_monitoring_level(self) -> None:
        for days_ago in (1, 2, 3):
            self.repository.insert_access_log(
                {
                    "user_id": "user-123",
                    "ip_address": TOR_IP,
                    "tor_detected": True,
                    "metadata": {"country": "unknown", "lat": 0.0, "lon": 0.0},
                    "created_at": to_iso(FIXED_NOW - timedelta(days=days_ago)),
                }
            )
        engine = self.build_engine(self.anonymising_intel())

        assessment = engine.assess(AnonymitySignals(user_id="user-123", ip_address=TOR_IP))

        self.assertTrue(assessment.signals["repeated_tor_usage"])
        self.assertEqual(assessment.action_taken, ACTION_FORCE_OTP_HIGH_MONITORING)
        self.assertEqual(self.repository.profiles["user-123"]["monitoring_level"], "HIGH")

    def test_access_log_failure_does_not_block_assessment(self) -> None:
        self.repository.failing.add("insert_access_log")
        engine = self.build_engine()

        with self.assertLogs("app.risk_engine", level="ERROR"):
            assessment = engine.assess(AnonymitySignals(user_id="user-123", ip_address=HOME_IP))

        self.assertEqual(assessment.level, "LOW")

    def test_failing_provider_contributes_no_signal(self) -> None:
        engine = self.build_engine(StubIPIntelligence(error=RuntimeError("provider exploded")))

        with self.assertLogs("app.risk_engine", level="ERROR"):
            assessment = engine.assess(AnonymitySignals(user_id="user-123", ip_address=TOR_IP))

        self.assertTrue(assessment.signals["tor_exit_match"])
        self.assertFalse(assessment.signals["proxy_flag"])
        self.assertAlmostEqual(assessment.score, 0.30)

    def test_impossible_travel_is_detected_from_history(self) -> None:
        self.repository.insert_access_log(
            {
                "user_id": "user-123",
                "ip_address": HOME_IP,
                "metadata": {"country": "Australia", "lat": -33.87, "lon": 151.21},
                "created_at": to_iso(FIXED_NOW - timedelta(minutes=15)),
            }
        )
        engine = self.build_engine()

        assessment = engine.assess(AnonymitySignals(user_id="user-123", ip_address=HOME_IP))

        self.assertTrue(assessment.signals["geo_anomaly"])
        self.assertAlmostEqual(assessment.score, 0.15)

    def test_signal_providers_run_concurrently(self) -> None:
        barrier = threading.Barrier(3)
        engine = self.build_engine(
            StubIPIntelligence(self.anonymising_intel().result, barrier=barrier),
            tor_cache=StubTorCache(TOR_IP, barrier=barrier),
        )

        assessment = engine.assess(
            AnonymitySignals(user_id="user-123", ip_address=TOR_IP, privacy_probe=GatedPrivacyProbe(barrier))
        )

        self.assertFalse(barrier.broken)
        self.assertTrue(assessment.signals["tor_exit_match"])
        self.assertTrue(assessment.signals["proxy_flag"])
        self.assertTrue(assessment.signals["fingerprint_hardened"])

    def test_latency_tracks_the_slowest_provider(self) -> None:
        engine = self.build_engine(
            StubIPIntelligence(delay=0.4),
            tor_cache=StubTorCache(TOR_IP, delay=0.4),
        )

        started = time.monotonic()
        assessment = engine.assess(AnonymitySignals(user_id="user-123", ip_address=TOR_IP))
        elapsed = time.monotonic() - started

        self.assertTrue(assessment.signals["tor_exit_match"])
        self.assertLess(elapsed, 0.7)

    def test_hung_provider_is_abandoned_at_the_deadline(self) -> None:
        engine = self.build_engine(tor_cache=StubTorCache(TOR_IP, delay=1.5), signal_timeout_seconds=0.2)

        started = time.monotonic()
        with self.assertLogs("app.risk_engine", level="WARNING") as logs:
            assessment = engine.assess(AnonymitySignals(user_id="user-123", ip_address=TOR_IP))
        elapsed = time.monotonic() - started

        self.assertLess(elapsed, 1.0)
        self.assertFalse(assessment.signals["tor_exit_match"])
        self.assertEqual(assessment.level, "LOW")
        self.assertTrue(any("signal_collection_timed_out signal=tor" in line for line in logs.output))
        self.assertEqual(len(self.repository.access_logs), 1)

    def test_signal_timeout_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            self.build_engine(signal_timeout_seconds=0)

    def test_unavailable_assessment_is_neutral(self) -> None:
        assessment = unavailable_assessment("Risk assessment timed out")

        self.assertEqual(assessment.level, "LOW")
        self.assertFalse(assessment.requires_otp)
        self.assertFalse(any(assessment.signals.values()))
        self.assertEqual(assessment.details, ("Risk assessment timed out",))


if __name__ == "__main__":
    unittest.main()
