from __future__ import annotations

import os
import unittest
from contextlib import contextmanager
from unittest.mock import patch

import httpx
from fastapi.testclient import TestClient

import app.main as main_module
from app.device_trust import EVENT_DEVICE_REGISTERED, EVENT_LOGIN_SUCCESS
from app.fingerprint import FingerprintSettings, collect_fingerprint
from tests.fakes import FakePasswordVerifier, FakeSecurityRepository, FakeTokenVerifier

TOR_IP = "185.220.101.45"
HOME_IP = "81.2.69.160"
TOR_LIST_URL = "https://tor-list.example/exits"
IP_INTEL_URL = "https://ip-intel.example/json"
TOR_BROWSER_PRIVACY = {"is_tor_browser": True, "canvas_blocked": True, "entropy_score": 20}
ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}
JWT_AUTH_HEADERS = {"Authorization": "Bearer valid-jwt-token"}

FINGERPRINT = {
    "user_agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
    ),
    "platform": "Win32",
    "screen_resolution": "1920x1080",
    "timezone": "Europe/London",
    "app_version": "5.0 (Windows NT 10.0; Win64; x64)",
    "language": "en-GB",
    "color_depth": 24,
    "hardware_concurrency": 8,
}
DEVICE_HASH = collect_fingerprint(FINGERPRINT, FingerprintSettings(salt="test-salt")).device_hash

TEST_ENV = {
    "DEVICE_HASH_SALT": "test-salt",
    "OTP_SIGNING_SECRET": "test-otp-secret",
    "ENABLE_DEV_OTP_CODE_IN_RESPONSE": "true",
    "ADMIN_API_KEYS": "test-admin-key",
    "TOR_LIST_SOURCES": TOR_LIST_URL,
    "IP_INTEL_BASE_URL": IP_INTEL_URL,
    "RESEND_API_KEY": "",
    "RATE_LIMIT_ENABLED": "true",
    "RATE_LIMIT_REQUESTS": "60",
    "RATE_LIMIT_WINDOW_SECONDS": "60",
}


def ip_intel_payload(ip_address: str) -> dict:
    if ip_address == TOR_IP:
        return {
            "status": "success",
            "country": "Germany",
            "countryCode": "DE",
            "city": "Frankfurt am Main",
            "lat": 50.1109,
            "lon": 8.6821,
            "isp": "Relay Hosting GmbH",
            "org": "Relay Hosting GmbH",
            "as": "AS60729",
            "proxy": True,
            "hosting": True,
        }
    return {
        "status": "success",
        "country": "United Kingdom",
        "countryCode": "GB",
        "city": "London",
        "lat": 51.5142,
        "lon": -0.0931,
        "isp": "Andrews & Arnold Ltd",
        "org": "Andrews & Arnold Ltd",
        "as": "AS20712",
        "proxy": False,
        "hosting": False,
    }


def signal_provider_handler(request: httpx.Request) -> httpx.Response:
    if str(request.url) == TOR_LIST_URL:
        return httpx.Response(200, text=f"# exit list\n{TOR_IP}\n185.220.101.46\n")
    if request.url.host == "ip-intel.example":
        return httpx.Response(200, json=ip_intel_payload(request.url.path.rsplit("/", 1)[-1]))
    return httpx.Response(404)


@contextmanager
def api_client(
    repository: FakeSecurityRepository | None = None,
    password_verifier: FakePasswordVerifier | None = None,
    env_overrides: dict[str, str] | None = None,
    client_address: str = HOME_IP,
):
    fake_repository = repository or FakeSecurityRepository()
    fake_password_verifier = password_verifier or FakePasswordVerifier()
    fake_token_verifier = FakeTokenVerifier()

    with patch.dict(os.environ, {**TEST_ENV, **(env_overrides or {})}):
        with patch.object(
            main_module.SupabaseConfig,
            "from_env",
            classmethod(
                lambda cls: cls(
                    url="https://example.supabase.co",
                    service_role_key="test-service-role-key",
                )
            ),
        ):
            with patch.object(main_module, "create_supabase_client", lambda config: object()):
                with patch.object(main_module, "SecurityRepository", lambda client: fake_repository):
                    with patch.object(main_module, "SupabasePasswordVerifier", lambda client: fake_password_verifier):
                        with patch.object(main_module, "SupabaseUserTokenVerifier", lambda client: fake_token_verifier):
                            with patch.object(
                                main_module,
                                "_build_http_client",
                                lambda: httpx.Client(transport=httpx.MockTransport(signal_provider_handler)),
                            ):
                                with TestClient(main_module.app, client=(client_address, 50000)) as client:
                                    yield client, fake_repository


def start_login(client: TestClient, email: str = "user@example.com", password: str = "correct-password") -> str:
    response = client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["flow_id"]


def device_check(
    client: TestClient,
    flow_id: str,
    privacy: dict | None = None,
    headers: dict[str, str] | None = None,
    **extra,
):
    payload = {"flow_id": flow_id, "fingerprint": FINGERPRINT, **extra}
    if privacy is not None:
        payload["privacy"] = privacy
    return client.post("/auth/device-check", json=payload, headers=headers)


def wrong_code(code: str) -> str:
    return f"{(int(code) + 1) % 1_000_000:06d}"


class LoginApiTests(unittest.TestCase):
    def test_health_endpoint(self) -> None:
        with api_client() as (client, _):
            response = client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok", "service": "login-guard-backend"})
        self.assertIn("X-Request-ID", response.headers)

    def test_invalid_credentials_return_401(self) -> None:
        with api_client() as (client, _):
            response = client.post("/auth/login", json={"email": "user@example.com", "password": "wrong"})

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["detail"], "Invalid email or password.")

    def test_login_rejects_unknown_fields(self) -> None:
        with api_client() as (client, _):
            response = client.post(
                "/auth/login",
                json={"email": "user@example.com", "password": "correct-password", "remember": True},
            )

        self.assertEqual(response.status_code, 422)

    def test_login_returns_device_check_step(self) -> None:
        with api_client() as (client, _):
            response = client.post("/auth/login", json={"email": "user@example.com", "password": "correct-password"})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "DEVICE_CHECK")
        self.assertEqual(body["next_step"], "device_check")

    def test_known_device_low_risk_completes_without_otp(self) -> None:
        repository = FakeSecurityRepository()
        repository.add_profile("user-123")
        repository.add_trusted_device(user_id="user-123", device_hash=DEVICE_HASH)

        with api_client(repository=repository) as (client, _):
            flow_id = start_login(client)
            response = device_check(client, flow_id)

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["trusted"])
        self.assertEqual(body["state"], "SUCCESS")
        self.assertEqual(body["redirect_to"], "/user/dashboard")
        self.assertEqual(body["risk_assessment"]["level"], "LOW")
        self.assertFalse(body["otp_sent"])
        self.assertEqual(repository.otp_codes, [])
        self.assertEqual(len(repository.access_logs), 1)
        self.assertIn(EVENT_LOGIN_SUCCESS, repository.event_types("user-123"))

    def test_new_device_requires_otp_then_becomes_trusted(self) -> None:
        repository = FakeSecurityRepository()
        repository.add_profile("user-123")

        with api_client(repository=repository) as (client, _):
            flow_id = start_login(client)
            check_response = device_check(client, flow_id)
            check_body = check_response.json()
            verify_response = client.post(
                "/auth/otp/verify",
                json={"flow_id": flow_id, "code": check_body["dev_code"]},
            )
            second_flow = start_login(client)
            second_check = device_check(client, second_flow)

        self.assertEqual(check_response.status_code, 200)
        self.assertFalse(check_body["device_known"])
        self.assertEqual(check_body["state"], "OTP_VERIFY")
        self.assertTrue(check_body["otp_sent"])
        self.assertEqual(check_body["resend_available_in"], 30)

        self.assertEqual(verify_response.status_code, 200)
        self.assertEqual(
            verify_response.json(),
            {
                "valid": True,
                "state": "SUCCESS",
                "redirect_to": "/user/dashboard",
                "message": "Device verified. Sign-in complete.",
            },
        )
        self.assertIn(EVENT_DEVICE_REGISTERED, repository.event_types("user-123"))
        self.assertEqual(second_check.json()["state"], "SUCCESS")

    def test_tor_exit_forces_otp_on_trusted_device(self) -> None:
        repository = FakeSecurityRepository()
        repository.add_profile("user-123")
        repository.add_trusted_device(user_id="user-123", device_hash=DEVICE_HASH)

        with api_client(repository=repository, client_address=TOR_IP) as (client, _):
            flow_id = start_login(client)
            response = device_check(
                client,
                flow_id,
                privacy={"is_tor_browser": True, "canvas_blocked": True, "entropy_score": 20},
            )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["trusted"])
        self.assertEqual(body["state"], "OTP_VERIFY")
        self.assertEqual(body["risk_assessment"]["level"], "HIGH")
        self.assertTrue(body["risk_assessment"]["requires_otp"])
        self.assertTrue(body["risk_assessment"]["signals"]["tor_exit_match"])
        self.assertEqual(body["risk_assessment"]["action_taken"], "force_otp")
        self.assertTrue(body["otp_sent"])
        self.assertIn("anonymity_high_risk", repository.event_types("user-123"))

    def test_body_ip_cannot_replace_the_socket_address(self) -> None:
        repository = FakeSecurityRepository()
        repository.add_profile("user-123")
        repository.add_trusted_device(user_id="user-123", device_hash=DEVICE_HASH)

        with api_client(repository=repository, client_address=TOR_IP) as (client, _):
            flow_id = start_login(client)
            spoofed = device_check(client, flow_id, ip="127.0.0.1")
            response = device_check(client, flow_id, privacy=TOR_BROWSER_PRIVACY)

        self.assertEqual(spoofed.status_code, 422)
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["state"], "OTP_VERIFY")
        self.assertEqual(body["risk_assessment"]["level"], "HIGH")
        self.assertTrue(body["risk_assessment"]["requires_otp"])

    def test_forwarded_for_from_untrusted_peer_is_ignored(self) -> None:
        repository = FakeSecurityRepository()
        repository.add_profile("user-123")
        repository.add_trusted_device(user_id="user-123", device_hash=DEVICE_HASH)

        with api_client(repository=repository, client_address=TOR_IP) as (client, _):
            flow_id = start_login(client)
            response = device_check(
                client,
                flow_id,
                privacy=TOR_BROWSER_PRIVACY,
                headers={"X-Forwarded-For": HOME_IP},
            )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["state"], "OTP_VERIFY")
        self.assertTrue(body["risk_assessment"]["signals"]["tor_exit_match"])
        self.assertEqual(body["risk_assessment"]["level"], "HIGH")

    def test_trusted_proxy_forwards_the_nearest_untrusted_hop(self) -> None:
        repository = FakeSecurityRepository()
        repository.add_profile("user-123")
        repository.add_trusted_device(user_id="user-123", device_hash=DEVICE_HASH)

        with api_client(
            repository=repository,
            env_overrides={"TRUSTED_PROXIES": "10.0.0.0/8"},
            client_address="10.0.0.5",
        ) as (client, _):
            flow_id = start_login(client)
            response = device_check(
                client,
                flow_id,
                privacy=TOR_BROWSER_PRIVACY,
                headers={"X-Forwarded-For": f"{HOME_IP}, {TOR_IP}"},
            )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["state"], "OTP_VERIFY")
        self.assertTrue(body["risk_assessment"]["signals"]["tor_exit_match"])
        self.assertEqual(body["risk_assessment"]["level"], "HIGH")

    def test_home_address_behind_trusted_proxy_skips_otp(self) -> None:
        repository = FakeSecurityRepository()
        repository.add_profile("user-123")
        repository.add_trusted_device(user_id="user-123", device_hash=DEVICE_HASH)

        with api_client(
            repository=repository,
            env_overrides={"TRUSTED_PROXIES": "10.0.0.0/8"},
            client_address="10.0.0.5",
        ) as (client, _):
            flow_id = start_login(client)
            response = device_check(client, flow_id, headers={"X-Forwarded-For": f"{HOME_IP}, 10.0.0.7"})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["state"], "SUCCESS")
        self.assertEqual(body["risk_assessment"]["level"], "LOW")

    def test_five_wrong_codes_lock_the_challenge(self) -> None:
        repository = FakeSecurityRepository()
        repository.add_profile("user-123")

        with api_client(repository=repository) as (client, _):
            flow_id = start_login(client)
            code = device_check(client, flow_id).json()["dev_code"]
            failures = [
                client.post("/auth/otp/verify", json={"flow_id": flow_id, "code": wrong_code(code)})
                for _ in range(5)
            ]
            locked = client.post("/auth/otp/verify", json={"flow_id": flow_id, "code": code})

        self.assertEqual([response.status_code for response in failures], [401] * 5)
        self.assertEqual(
            [response.headers["X-OTP-Attempts-Remaining"] for response in failures],
            ["4", "3", "2", "1", "0"],
        )
        self.assertEqual(locked.status_code, 403)
        self.assertEqual(locked.json()["detail"], "Too many failed attempts. Please request a new code.")
        self.assertIsNone(repository.get_trusted_device(user_id="user-123", device_hash=DEVICE_HASH))

    def test_resend_before_cooldown_returns_429(self) -> None:
        with api_client() as (client, _):
            flow_id = start_login(client)
            device_check(client, flow_id)
            response = client.post("/auth/otp/issue", json={"flow_id": flow_id})

        self.assertEqual(response.status_code, 429)
        self.assertIn("Retry-After", response.headers)
        self.assertTrue(response.json()["detail"].startswith("Please wait"))

    def test_verify_before_device_check_returns_409(self) -> None:
        with api_client() as (client, _):
            flow_id = start_login(client)
            response = client.post("/auth/otp/verify", json={"flow_id": flow_id, "code": "123456"})

        self.assertEqual(response.status_code, 409)

    def test_unknown_flow_returns_404(self) -> None:
        with api_client() as (client, _):
            response = device_check(client, "missing-flow-id")

        self.assertEqual(response.status_code, 404)

    def test_cancel_ends_the_flow(self) -> None:
        with api_client() as (client, _):
            flow_id = start_login(client)
            cancelled = client.post("/auth/cancel", json={"flow_id": flow_id})
            after = device_check(client, flow_id)

        self.assertEqual(cancelled.status_code, 200)
        self.assertEqual(cancelled.json()["state"], "CANCELLED")
        self.assertEqual(after.status_code, 404)

    def test_admin_is_redirected_to_root(self) -> None:
        repository = FakeSecurityRepository()
        repository.add_profile("admin-1", role="admin", full_name="Admin User")
        repository.add_trusted_device(user_id="admin-1", device_hash=DEVICE_HASH)
        verifier = FakePasswordVerifier({"admin@example.com": ("admin-1", "admin-password")})

        with api_client(repository=repository, password_verifier=verifier) as (client, _):
            flow_id = start_login(client, email="admin@example.com", password="admin-password")
            response = device_check(client, flow_id)

        self.assertEqual(response.json()["redirect_to"], "/")

    def test_login_is_rate_limited(self) -> None:
        with api_client(env_overrides={"RATE_LIMIT_REQUESTS": "2"}) as (client, _):
            responses = [
                client.post("/auth/login", json={"email": "user@example.com", "password": "wrong"})
                for _ in range(3)
            ]

        self.assertEqual([response.status_code for response in responses], [401, 401, 429])
        self.assertIn("Retry-After", responses[-1].headers)

    def test_invalid_trusted_proxy_fails_startup(self) -> None:
        with self.assertRaises(ValueError):
            with api_client(env_overrides={"TRUSTED_PROXIES": "10.0.0.0/8, not-a-network"}):
                pass

    def test_signal_timeout_must_fit_inside_device_check_timeout(self) -> None:
        with self.assertRaises(ValueError):
            with api_client(env_overrides={"SIGNAL_TIMEOUT_SECONDS": "5", "DEVICE_CHECK_TIMEOUT_SECONDS": "5"}):
                pass


class DeviceManagementApiTests(unittest.TestCase):
    def test_devices_require_bearer_token(self) -> None:
        with api_client() as (client, _):
            response = client.get("/devices")

        self.assertEqual(response.status_code, 401)

    def test_list_and_remove_own_devices(self) -> None:
        repository = FakeSecurityRepository()
        own = repository.add_trusted_device(user_id="user-123", device_hash=DEVICE_HASH)
        other = repository.add_trusted_device(user_id="user-999", device_hash="other-hash")

        with api_client(repository=repository) as (client, _):
            listed = client.get("/devices", headers=JWT_AUTH_HEADERS)
            foreign = client.delete(f"/devices/{other['id']}", headers=JWT_AUTH_HEADERS)
            removed = client.delete(f"/devices/{own['id']}", headers=JWT_AUTH_HEADERS)
            events = client.get("/devices/events", params={"limit": 5}, headers=JWT_AUTH_HEADERS)

        self.assertEqual(listed.status_code, 200)
        self.assertEqual([item["device_id"] for item in listed.json()["items"]], [own["id"]])
        self.assertEqual(foreign.status_code, 404)
        self.assertEqual(removed.status_code, 200)
        self.assertTrue(removed.json()["removed"])
        self.assertEqual(events.json()["limit"], 5)
        self.assertEqual([item["event_type"] for item in events.json()["items"]], ["device_removed"])


class AdminApiTests(unittest.TestCase):
    def test_admin_endpoints_require_key(self) -> None:
        with api_client() as (client, _):
            missing = client.get("/admin/tor-cache")
            wrong = client.get("/admin/tor-cache", headers={"X-Admin-Key": "nope"})

        self.assertEqual(missing.status_code, 401)
        self.assertEqual(wrong.status_code, 401)

    def test_tor_cache_refresh_and_stats(self) -> None:
        with api_client() as (client, repository):
            refreshed = client.post("/admin/tor-cache/refresh", headers=ADMIN_HEADERS)
            stats = client.get("/admin/tor-cache", headers=ADMIN_HEADERS)

        self.assertEqual(refreshed.status_code, 200)
        self.assertEqual(refreshed.json()["source"], TOR_LIST_URL)
        self.assertEqual(refreshed.json()["count"], 2)
        self.assertEqual(stats.json()["total_nodes"], 2)
        self.assertTrue(stats.json()["fresh"])
        self.assertIn(TOR_IP, repository.tor_exit_nodes)

    def test_otp_cleanup(self) -> None:
        with api_client() as (client, _):
            response = client.post("/admin/otp/cleanup", headers=ADMIN_HEADERS)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"removed": 0})

    def test_clear_risk_flag(self) -> None:
        repository = FakeSecurityRepository()
        device = repository.add_trusted_device(user_id="user-123", device_hash=DEVICE_HASH, risk_flag=True)

        with api_client(repository=repository) as (client, _):
            cleared = client.post(f"/admin/devices/{device['id']}/clear-risk-flag", headers=ADMIN_HEADERS)
            missing = client.post("/admin/devices/missing/clear-risk-flag", headers=ADMIN_HEADERS)

        self.assertEqual(cleared.status_code, 200)
        self.assertFalse(cleared.json()["risk_flag"])
        self.assertEqual(cleared.json()["user_id"], "user-123")
        self.assertEqual(missing.status_code, 404)


if __name__ == "__main__":
    unittest.main()
