from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from app.database import DatabaseError
from app.security_repository import SecurityRepository, to_iso, utcnow

logger = logging.getLogger(__name__)

EVENT_DEVICE_LOGIN = "device_login"
EVENT_DEVICE_REGISTERED = "device_registered"
EVENT_DEVICE_REMOVED = "device_removed"
EVENT_OTP_FAILED = "otp_failed"
EVENT_SUSPICIOUS_ENVIRONMENT = "suspicious_environment"
EVENT_RISK_FLAGGED = "risk_flagged"
EVENT_RISK_FLAG_CLEARED = "risk_flag_cleared"
EVENT_ANONYMITY_HIGH_RISK = "anonymity_high_risk"
EVENT_LOGIN_SUCCESS = "login_success"

DEVICE_RISK_WEIGHTS = {
    "multi_account": 0.40,
    "rapid_switching": 0.25,
    "otp_failures": 0.20,
    "new_device_rate": 0.15,
}
RISK_FLAG_THRESHOLD = 0.25

RAPID_SWITCHING_WINDOW = timedelta(hours=1)
RAPID_SWITCHING_MAX_DEVICES = 3
OTP_FAILURE_WINDOW = timedelta(hours=24)
OTP_FAILURE_MAX = 10
NEW_DEVICE_WINDOW = timedelta(days=7)
NEW_DEVICE_MAX = 5


@dataclass(frozen=True)
class DeviceCheck:
    flagged: bool
    count: int
    details: str


@dataclass(frozen=True)
class DeviceRiskAssessment:
    risk_score: float
    risk_flag: bool
    multi_account: DeviceCheck
    rapid_switching: DeviceCheck
    otp_failures: DeviceCheck
    new_device_rate: DeviceCheck

    def checks(self) -> dict[str, dict[str, Any]]:
        return {
            "multi_account": asdict(self.multi_account),
            "rapid_switching": asdict(self.rapid_switching),
            "otp_failures": asdict(self.otp_failures),
            "new_device_rate": asdict(self.new_device_rate),
        }


@dataclass(frozen=True)
class DeviceTrustStatus:
    known: bool
    trusted: bool
    device: dict[str, Any] | None = None


def unavailable_device_risk(details: str) -> DeviceRiskAssessment:
    unchecked = DeviceCheck(flagged=False, count=0, details=details)
    return DeviceRiskAssessment(
        risk_score=0.0,
        risk_flag=False,
        multi_account=unchecked,
        rapid_switching=unchecked,
        otp_failures=unchecked,
        new_device_rate=unchecked,
    )


def composite_device_risk(
    *,
    multi_account: bool,
    rapid_switching: bool,
    otp_failures: bool,
    new_device_rate: bool,
) -> float:
    score = 0.0
    if multi_account:
        score += DEVICE_RISK_WEIGHTS["multi_account"]
    if rapid_switching:
        score += DEVICE_RISK_WEIGHTS["rapid_switching"]
    if otp_failures:
        score += DEVICE_RISK_WEIGHTS["otp_failures"]
    if new_device_rate:
        score += DEVICE_RISK_WEIGHTS["new_device_rate"]
    return min(1.0, round(score, 4))


class DeviceTrustStore:
    """Known-device registry plus the behavioural device checks.

    Checks fail open: a storage error reads as "not flagged" and is logged.
    ``risk_flag`` is only ever set here; clearing it is an explicit admin call.
    """

    def __init__(self, repository: SecurityRepository, clock: Callable[[], datetime] = utcnow) -> None:
        self._repository = repository
        self._clock = clock

    def log_event(
        self,
        *,
        user_id: str,
        event_type: str,
        device_hash: str | None = None,
        ip_address: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        payload = {
            "user_id": user_id,
            "event_type": event_type,
            "device_hash": device_hash,
            "ip_address": ip_address,
            "metadata": metadata or {},
            "created_at": to_iso(self._clock()),
        }
        try:
            self._repository.insert_security_event(payload)
        except DatabaseError as exc:
            logger.error(
                "security_event_write_failed user_id=%s event_type=%s error=%s",
                user_id,
                event_type,
                str(exc),
            )

    def lookup(self, *, user_id: str, device_hash: str) -> DeviceTrustStatus:
        try:
            device = self._repository.get_trusted_device(user_id=user_id, device_hash=device_hash)
        except DatabaseError as exc:
            logger.warning("device_lookup_failed user_id=%s error=%s", user_id, str(exc))
            return DeviceTrustStatus(known=False, trusted=False)

        if not device:
            return DeviceTrustStatus(known=False, trusted=False)

        trusted = bool(device.get("trusted_status", False)) and not bool(device.get("risk_flag", False))
        return DeviceTrustStatus(known=True, trusted=trusted, device=device)

    def check_multi_account(self, *, device_hash: str, user_id: str) -> DeviceCheck:
        try:
            owners = set(self._repository.list_device_user_ids(device_hash))
        except DatabaseError as exc:
            logger.warning("multi_account_check_failed user_id=%s error=%s", user_id, str(exc))
            return DeviceCheck(flagged=False, count=0, details="Check failed")

        owners.discard(user_id)
        if owners:
            count = len(owners) + 1
            return DeviceCheck(flagged=True, count=count, details=f"Device used by {count} different accounts")
        return DeviceCheck(flagged=False, count=1, details="Device is unique to this user")

    def check_rapid_switching(self, user_id: str) -> DeviceCheck:
        since = self._clock() - RAPID_SWITCHING_WINDOW
        try:
            events = self._repository.list_security_events(
                user_id=user_id,
                event_type=EVENT_DEVICE_LOGIN,
                since=since,
            )
        except DatabaseError as exc:
            logger.warning("rapid_switching_check_failed user_id=%s error=%s", user_id, str(exc))
            return DeviceCheck(flagged=False, count=0, details="Check failed")

        devices = {event.get("device_hash") for event in events if event.get("device_hash")}
        if len(devices) > RAPID_SWITCHING_MAX_DEVICES:
            return DeviceCheck(
                flagged=True,
                count=len(devices),
                details=f"{len(devices)} different devices used in the last hour",
            )
        return DeviceCheck(flagged=False, count=len(devices), details="Normal device usage")

    def check_otp_failures(self, user_id: str) -> DeviceCheck:
        since = self._clock() - OTP_FAILURE_WINDOW
        try:
            failures = self._repository.count_security_events(
                user_id=user_id,
                event_type=EVENT_OTP_FAILED,
                since=since,
            )
        except DatabaseError as exc:
            logger.warning("otp_failure_check_failed user_id=%s error=%s", user_id, str(exc))
            return DeviceCheck(flagged=False, count=0, details="Check failed")

        if failures > OTP_FAILURE_MAX:
            return DeviceCheck(flagged=True, count=failures, details=f"{failures} OTP failures in the last 24 hours")
        return DeviceCheck(flagged=False, count=failures, details="Normal OTP activity")

    def check_new_device_rate(self, user_id: str) -> DeviceCheck:
        since = self._clock() - NEW_DEVICE_WINDOW
        try:
            new_devices = self._repository.count_devices_first_seen_since(user_id=user_id, since=since)
        except DatabaseError as exc:
            logger.warning("new_device_rate_check_failed user_id=%s error=%s", user_id, str(exc))
            return DeviceCheck(flagged=False, count=0, details="Check failed")

        if new_devices > NEW_DEVICE_MAX:
            return DeviceCheck(
                flagged=True,
                count=new_devices,
                details=f"{new_devices} new devices registered in the last 7 days",
            )
        return DeviceCheck(flagged=False, count=new_devices, details="Normal device registration")

    def evaluate(self, *, user_id: str, device_hash: str, ip_address: str | None = None) -> DeviceRiskAssessment:
        multi_account = self.check_multi_account(device_hash=device_hash, user_id=user_id)
        rapid_switching = self.check_rapid_switching(user_id)
        otp_failures = self.check_otp_failures(user_id)
        new_device_rate = self.check_new_device_rate(user_id)

        risk_score = composite_device_risk(
            multi_account=multi_account.flagged,
            rapid_switching=rapid_switching.flagged,
            otp_failures=otp_failures.flagged,
            new_device_rate=new_device_rate.flagged,
        )
        assessment = DeviceRiskAssessment(
            risk_score=risk_score,
            risk_flag=risk_score >= RISK_FLAG_THRESHOLD,
            multi_account=multi_account,
            rapid_switching=rapid_switching,
            otp_failures=otp_failures,
            new_device_rate=new_device_rate,
        )

        if assessment.risk_flag:
            try:
                self._repository.set_device_risk_flag(user_id=user_id, device_hash=device_hash)
            except DatabaseError as exc:
                logger.error("device_risk_flag_write_failed user_id=%s error=%s", user_id, str(exc))
            self.log_event(
                user_id=user_id,
                event_type=EVENT_RISK_FLAGGED,
                device_hash=device_hash,
                ip_address=ip_address,
                metadata={"risk_score": risk_score, "checks": assessment.checks()},
            )
            logger.warning("device_risk_flagged user_id=%s risk_score=%.2f", user_id, risk_score)

        return assessment

    def record_login(
        self,
        *,
        user_id: str,
        device_hash: str,
        ip_address: str | None,
        device: dict[str, Any] | None = None,
    ) -> None:
        if device and device.get("id"):
            try:
                self._repository.update_trusted_device(
                    device_id=str(device["id"]),
                    updates={"last_seen": to_iso(self._clock())},
                )
            except DatabaseError as exc:
                logger.error("device_last_seen_update_failed user_id=%s error=%s", user_id, str(exc))
        self.log_event(
            user_id=user_id,
            event_type=EVENT_DEVICE_LOGIN,
            device_hash=device_hash,
            ip_address=ip_address,
        )

    def register_device(
        self,
        *,
        user_id: str,
        device_hash: str,
        label: str,
        ip_address: str | None,
    ) -> dict[str, Any]:
        now = to_iso(self._clock())
        existing = self._repository.get_trusted_device(user_id=user_id, device_hash=device_hash)
        if existing:
            updated = self._repository.update_trusted_device(
                device_id=str(existing["id"]),
                updates={"last_seen": now, "trusted_status": True, "device_name": label},
            )
            device = updated or {**existing, "last_seen": now, "trusted_status": True}
        else:
            device = self._repository.insert_trusted_device(
                {
                    "user_id": user_id,
                    "device_hash": device_hash,
                    "device_name": label,
                    "ip_address": ip_address,
                    "first_seen": now,
                    "last_seen": now,
                    "trusted_status": True,
                    "risk_flag": False,
                }
            )

        self.log_event(
            user_id=user_id,
            event_type=EVENT_DEVICE_REGISTERED,
            device_hash=device_hash,
            ip_address=ip_address,
            metadata={"device_name": label, "new_device": existing is None},
        )
        return device

    def list_devices(self, user_id: str) -> list[dict[str, Any]]:
        return self._repository.list_trusted_devices(user_id)

    def list_events(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        return self._repository.list_security_events(user_id=user_id, limit=limit)

    def remove_device(self, *, user_id: str, device_id: str) -> bool:
        removed = self._repository.delete_trusted_device(user_id=user_id, device_id=device_id)
        if not removed:
            return False
        self.log_event(
            user_id=user_id,
            event_type=EVENT_DEVICE_REMOVED,
            device_hash=removed.get("device_hash"),
            metadata={"device_name": removed.get("device_name")},
        )
        return True

    def clear_risk_flag(self, device_id: str) -> dict[str, Any] | None:
        device = self._repository.get_trusted_device_by_id(device_id)
        if not device:
            return None
        updated = self._repository.update_trusted_device(device_id=device_id, updates={"risk_flag": False})
        self.log_event(
            user_id=str(device["user_id"]),
            event_type=EVENT_RISK_FLAG_CLEARED,
            device_hash=device.get("device_hash"),
        )
        return updated or {**device, "risk_flag": False}
