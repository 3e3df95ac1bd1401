from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from typing import Any, Mapping

UNKNOWN = "unknown"


@dataclass(frozen=True)
class FingerprintSettings:
    salt: str

    @classmethod
    def from_env(cls) -> "FingerprintSettings":
        salt = os.getenv("DEVICE_HASH_SALT", "").strip()
        if not salt:
            raise ValueError("DEVICE_HASH_SALT is a required environment variable.")
        return cls(salt=salt)


@dataclass(frozen=True)
class DeviceMetadata:
    user_agent: str = UNKNOWN
    platform: str = UNKNOWN
    screen_resolution: str = UNKNOWN
    timezone: str = UNKNOWN
    app_version: str = UNKNOWN
    language: str = UNKNOWN
    color_depth: int = 0
    hardware_concurrency: int = 0
    is_headless: bool = False
    is_webdriver: bool = False
    is_emulator: bool = False

    @classmethod
    def from_client(cls, raw: Mapping[str, Any]) -> "DeviceMetadata":
        """Build metadata from client-reported attributes.

        Missing or blank values degrade to placeholders instead of failing.
        """
        return cls(
            user_agent=_text(raw.get("user_agent")),
            platform=_text(raw.get("platform")),
            screen_resolution=_text(raw.get("screen_resolution")),
            timezone=_text(raw.get("timezone")),
            app_version=_text(raw.get("app_version")),
            language=_text(raw.get("language")),
            color_depth=_non_negative_int(raw.get("color_depth")),
            hardware_concurrency=_non_negative_int(raw.get("hardware_concurrency")),
            is_headless=bool(raw.get("is_headless", False)),
            is_webdriver=bool(raw.get("is_webdriver", False)),
            is_emulator=bool(raw.get("is_emulator", False)),
        )


@dataclass(frozen=True)
class EnvironmentVerdict:
    suspicious: bool
    flags: tuple[str, ...]


@dataclass(frozen=True)
class DeviceFingerprint:
    metadata: DeviceMetadata
    device_hash: str
    label: str
    environment: EnvironmentVerdict


def _text(value: Any) -> str:
    if value is None:
        return UNKNOWN
    normalized = str(value).strip()
    return normalized or UNKNOWN


def _non_negative_int(value: Any) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return 0
    return parsed if parsed > 0 else 0


def build_fingerprint_raw(metadata: DeviceMetadata) -> str:
    return "|".join(
        [
            metadata.user_agent,
            metadata.platform,
            metadata.screen_resolution,
            metadata.timezone,
            metadata.app_version,
            metadata.language,
            str(metadata.color_depth),
            str(metadata.hardware_concurrency),
        ]
    )


def generate_device_hash(metadata: DeviceMetadata, salt: str) -> str:
    salted = salt + build_fingerprint_raw(metadata)
    return hashlib.sha256(salted.encode("utf-8")).hexdigest()


def get_device_label(user_agent: str) -> str:
    if "Edg/" in user_agent:
        browser = "Microsoft Edge"
    elif "Chrome/" in user_agent:
        browser = "Google Chrome"
    elif "Firefox/" in user_agent:
        browser = "Mozilla Firefox"
    elif "Safari/" in user_agent and "Chrome" not in user_agent:
        browser = "Apple Safari"
    elif "Opera" in user_agent or "OPR/" in user_agent:
        browser = "Opera"
    else:
        browser = "Unknown Browser"

    if "Windows NT 10" in user_agent:
        os_name = "Windows 10/11"
    elif "Windows" in user_agent:
        os_name = "Windows"
    elif "iPhone" in user_agent or "iPad" in user_agent:
        os_name = "iOS"
    elif "Mac OS X" in user_agent:
        os_name = "macOS"
    elif "Android" in user_agent:
        os_name = "Android"
    elif "Linux" in user_agent:
        os_name = "Linux"
    else:
        os_name = "Unknown OS"

    return f"{browser} on {os_name}"


def assess_environment(metadata: DeviceMetadata) -> EnvironmentVerdict:
    flags: list[str] = []
    if metadata.is_headless:
        flags.append("Headless browser detected")
    if metadata.is_webdriver:
        flags.append("WebDriver automation detected")
    if metadata.is_emulator:
        flags.append("Emulator/Simulator detected")
    if metadata.hardware_concurrency == 0:
        flags.append("No hardware concurrency info")
    if metadata.color_depth == 0:
        flags.append("No color depth info")
    if metadata.screen_resolution == UNKNOWN:
        flags.append("Unknown screen resolution")
    return EnvironmentVerdict(suspicious=bool(flags), flags=tuple(flags))


def collect_fingerprint(raw: Mapping[str, Any], settings: FingerprintSettings) -> DeviceFingerprint:
    metadata = DeviceMetadata.from_client(raw)
    return DeviceFingerprint(
        metadata=metadata,
        device_hash=generate_device_hash(metadata, settings.salt),
        label=get_device_label(metadata.user_agent),
        environment=assess_environment(metadata),
    )
