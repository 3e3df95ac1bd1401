from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

LOW_ENTROPY_THRESHOLD = 30

PRIVACY_RISK_WEIGHTS = {
    "tor_browser": 0.5,
    "canvas_blocked": 0.15,
    "webgl_blocked": 0.1,
    "webrtc_disabled": 0.1,
    "audio_blocked": 0.05,
    "low_entropy": 0.1,
}


class PrivacyProbe(Protocol):
    """Browser probing capability.

    Probing happens in the browser, so the service never constructs a probe
    itself. The HTTP layer wraps what the client reported, tests pass fixed
    results.
    """

    def is_tor_browser(self) -> bool: ...

    def canvas_blocked(self) -> bool: ...

    def webgl_blocked(self) -> bool: ...

    def webrtc_disabled(self) -> bool: ...

    def audio_blocked(self) -> bool: ...

    def entropy_score(self) -> int: ...


@dataclass(frozen=True)
class ReportedPrivacyProbe:
    tor_browser: bool = False
    canvas: bool = False
    webgl: bool = False
    webrtc: bool = False
    audio: bool = False
    entropy: int = 100

    def is_tor_browser(self) -> bool:
        return self.tor_browser

    def canvas_blocked(self) -> bool:
        return self.canvas

    def webgl_blocked(self) -> bool:
        return self.webgl

    def webrtc_disabled(self) -> bool:
        return self.webrtc

    def audio_blocked(self) -> bool:
        return self.audio

    def entropy_score(self) -> int:
        return self.entropy


@dataclass(frozen=True)
class BrowserPrivacyResult:
    is_tor_browser: bool
    canvas_blocked: bool
    webgl_blocked: bool
    webrtc_disabled: bool
    audio_blocked: bool
    entropy_score: int
    privacy_flags: tuple[str, ...]
    risk_contribution: float

    @property
    def fingerprint_hardened(self) -> bool:
        return (
            self.canvas_blocked
            or self.webgl_blocked
            or self.webrtc_disabled
            or self.audio_blocked
            or self.entropy_score < LOW_ENTROPY_THRESHOLD
        )


def evaluate_browser_privacy(probe: PrivacyProbe) -> BrowserPrivacyResult:
    is_tor_browser = bool(probe.is_tor_browser())
    canvas_blocked = bool(probe.canvas_blocked())
    webgl_blocked = bool(probe.webgl_blocked())
    webrtc_disabled = bool(probe.webrtc_disabled())
    audio_blocked = bool(probe.audio_blocked())
    entropy_score = min(100, max(0, int(probe.entropy_score())))
    low_entropy = entropy_score < LOW_ENTROPY_THRESHOLD

    flags: list[str] = []
    risk_contribution = 0.0
    if is_tor_browser:
        flags.append("Tor Browser signature detected")
        risk_contribution += PRIVACY_RISK_WEIGHTS["tor_browser"]
    if canvas_blocked:
        flags.append("Canvas fingerprinting blocked")
        risk_contribution += PRIVACY_RISK_WEIGHTS["canvas_blocked"]
    if webgl_blocked:
        flags.append("WebGL renderer info blocked")
        risk_contribution += PRIVACY_RISK_WEIGHTS["webgl_blocked"]
    if webrtc_disabled:
        flags.append("WebRTC disabled (IP leak prevention)")
        risk_contribution += PRIVACY_RISK_WEIGHTS["webrtc_disabled"]
    if audio_blocked:
        flags.append("Audio context fingerprinting blocked")
        risk_contribution += PRIVACY_RISK_WEIGHTS["audio_blocked"]
    if low_entropy:
        flags.append(f"Low browser entropy ({entropy_score}/100)")
        risk_contribution += PRIVACY_RISK_WEIGHTS["low_entropy"]

    return BrowserPrivacyResult(
        is_tor_browser=is_tor_browser,
        canvas_blocked=canvas_blocked,
        webgl_blocked=webgl_blocked,
        webrtc_disabled=webrtc_disabled,
        audio_blocked=audio_blocked,
        entropy_score=entropy_score,
        privacy_flags=tuple(flags),
        risk_contribution=min(1.0, round(risk_contribution, 4)),
    )
