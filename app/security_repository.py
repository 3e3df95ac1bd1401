from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from supabase import Client

from app.database import DatabaseError

TOR_UPSERT_BATCH_SIZE = 500


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_iso(value: datetime) -> str:
    return value.isoformat()


def parse_timestamp(value: object) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        normalized = value.replace("Z", "+00:00")
        parsed = datetime.fromisoformat(normalized)
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    raise ValueError("Datetime value is invalid.")


class SecurityRepository:
    """Supabase access for the login security tables.

    Every method raises ``DatabaseError`` when the underlying call fails so that
    callers can decide whether to fail open or surface the error.
    """

    def __init__(self, client: Client) -> None:
        self.client = client

    @staticmethod
    def _single_row(result: Any) -> dict[str, Any] | None:
        data = getattr(result, "data", None)
        if not data:
            return None
        if isinstance(data, list):
            return data[0] if data else None
        if isinstance(data, dict):
            return data
        return None

    @staticmethod
    def _rows(result: Any) -> list[dict[str, Any]]:
        data = getattr(result, "data", None)
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            return [data]
        return []

    @staticmethod
    def _count(result: Any) -> int:
        count = getattr(result, "count", None)
        if count is not None:
            return int(count)
        return len(SecurityRepository._rows(result))

    # profiles

    def get_profile(self, user_id: str) -> dict[str, Any] | None:
        try:
            result = self.client.table("profiles").select("*").eq("id", user_id).limit(1).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to load user profile: {exc}") from exc
        return self._single_row(result)

    def update_monitoring_level(self, *, user_id: str, monitoring_level: str) -> None:
        try:
            (
                self.client.table("profiles")
                .update({"monitoring_level": monitoring_level, "updated_at": to_iso(utcnow())})
                .eq("id", user_id)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to update monitoring level: {exc}") from exc

    # trusted devices

    def get_trusted_device(self, *, user_id: str, device_hash: str) -> dict[str, Any] | None:
        try:
            result = (
                self.client.table("trusted_devices")
                .select("*")
                .eq("user_id", user_id)
                .eq("device_hash", device_hash)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to load trusted device: {exc}") from exc
        return self._single_row(result)

    def get_trusted_device_by_id(self, device_id: str) -> dict[str, Any] | None:
        try:
            result = self.client.table("trusted_devices").select("*").eq("id", device_id).limit(1).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to load trusted device: {exc}") from exc
        return self._single_row(result)

    def list_trusted_devices(self, user_id: str) -> list[dict[str, Any]]:
        try:
            result = (
                self.client.table("trusted_devices")
                .select("*")
                .eq("user_id", user_id)
                .order("last_seen", desc=True)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to list trusted devices: {exc}") from exc
        return self._rows(result)

    def list_device_user_ids(self, device_hash: str) -> list[str]:
        try:
            result = self.client.table("trusted_devices").select("user_id").eq("device_hash", device_hash).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to load device owners: {exc}") from exc
        return [str(row["user_id"]) for row in self._rows(result) if row.get("user_id")]

    def count_devices_first_seen_since(self, *, user_id: str, since: datetime) -> int:
        try:
            result = (
                self.client.table("trusted_devices")
                .select("id", count="exact")
                .eq("user_id", user_id)
                .gte("first_seen", to_iso(since))
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to count new devices: {exc}") from exc
        return self._count(result)

    def insert_trusted_device(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            result = self.client.table("trusted_devices").insert(payload).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to register trusted device: {exc}") from exc
        row = self._single_row(result)
        if not row:
            raise DatabaseError("Trusted device registration returned no data.")
        return row

    def update_trusted_device(self, *, device_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        try:
            result = self.client.table("trusted_devices").update(dict(updates)).eq("id", device_id).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to update trusted device: {exc}") from exc
        return self._single_row(result)

    def set_device_risk_flag(self, *, user_id: str, device_hash: str) -> None:
        try:
            (
                self.client.table("trusted_devices")
                .update({"risk_flag": True})
                .eq("user_id", user_id)
                .eq("device_hash", device_hash)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to flag device: {exc}") from exc

    def delete_trusted_device(self, *, user_id: str, device_id: str) -> dict[str, Any] | None:
        try:
            result = (
                self.client.table("trusted_devices")
                .delete()
                .eq("id", device_id)
                .eq("user_id", user_id)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to remove trusted device: {exc}") from exc
        return self._single_row(result)

    # otp codes

    def invalidate_pending_otps(self, *, user_id: str, purpose: str) -> None:
        try:
            (
                self.client.table("otp_codes")
                .update({"verified": True})
                .eq("user_id", user_id)
                .eq("verified", False)
                .eq("purpose", purpose)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to invalidate pending OTP codes: {exc}") from exc

    def insert_otp(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            result = self.client.table("otp_codes").insert(payload).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to store OTP code: {exc}") from exc
        row = self._single_row(result)
        if row:
            return row
        return payload

    def get_latest_pending_otp(self, *, user_id: str, purpose: str) -> dict[str, Any] | None:
        try:
            result = (
                self.client.table("otp_codes")
                .select("*")
                .eq("user_id", user_id)
                .eq("verified", False)
                .eq("purpose", purpose)
                .order("created_at", desc=True)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to load pending OTP code: {exc}") from exc
        return self._single_row(result)

    def update_otp(self, *, otp_id: str, updates: dict[str, Any]) -> None:
        try:
            self.client.table("otp_codes").update(dict(updates)).eq("id", otp_id).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to update OTP code: {exc}") from exc

    def delete_expired_verified_otps(self, *, before: datetime) -> int:
        try:
            result = (
                self.client.table("otp_codes")
                .delete()
                .lt("expires_at", to_iso(before))
                .eq("verified", True)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to purge OTP codes: {exc}") from exc
        return len(self._rows(result))

    # anonymity access logs

    def insert_access_log(self, payload: dict[str, Any]) -> None:
        try:
            self.client.table("anonymous_access_logs").insert(payload).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to write anonymity access log: {exc}") from exc

    def get_latest_access_log(self, user_id: str) -> dict[str, Any] | None:
        try:
            result = (
                self.client.table("anonymous_access_logs")
                .select("metadata, created_at")
                .eq("user_id", user_id)
                .order("created_at", desc=True)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to load latest access log: {exc}") from exc
        return self._single_row(result)

    def count_tor_access_logs_since(self, *, user_id: str, since: datetime) -> int:
        try:
            result = (
                self.client.table("anonymous_access_logs")
                .select("id", count="exact")
                .eq("user_id", user_id)
                .eq("tor_detected", True)
                .gte("created_at", to_iso(since))
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to count Tor access logs: {exc}") from exc
        return self._count(result)

    # security events

    def insert_security_event(self, payload: dict[str, Any]) -> None:
        try:
            self.client.table("device_security_events").insert(payload).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to write security event: {exc}") from exc

    def list_security_events(
        self,
        *,
        user_id: str,
        event_type: str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        query = self.client.table("device_security_events").select("*").eq("user_id", user_id)
        if event_type is not None:
            query = query.eq("event_type", event_type)
        if since is not None:
            query = query.gte("created_at", to_iso(since))
        query = query.order("created_at", desc=True)
        if limit is not None:
            query = query.limit(limit)
        try:
            result = query.execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to list security events: {exc}") from exc
        return self._rows(result)

    def count_security_events(self, *, user_id: str, event_type: str, since: datetime) -> int:
        try:
            result = (
                self.client.table("device_security_events")
                .select("id", count="exact")
                .eq("user_id", user_id)
                .eq("event_type", event_type)
                .gte("created_at", to_iso(since))
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to count security events: {exc}") from exc
        return self._count(result)

    # tor exit node cache

    def get_latest_tor_refresh(self) -> datetime | None:
        try:
            result = (
                self.client.table("tor_exit_nodes")
                .select("last_seen")
                .order("last_seen", desc=True)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to read Tor cache timestamp: {exc}") from exc
        row = self._single_row(result)
        if not row or not row.get("last_seen"):
            return None
        return parse_timestamp(row["last_seen"])

    def upsert_tor_exit_nodes(self, rows: list[dict[str, Any]]) -> None:
        for start in range(0, len(rows), TOR_UPSERT_BATCH_SIZE):
            batch = rows[start : start + TOR_UPSERT_BATCH_SIZE]
            try:
                self.client.table("tor_exit_nodes").upsert(batch, on_conflict="ip_address").execute()
            except Exception as exc:
                raise DatabaseError(f"Failed to upsert Tor exit nodes: {exc}") from exc

    def get_tor_exit_node(self, ip_address: str) -> dict[str, Any] | None:
        try:
            result = (
                self.client.table("tor_exit_nodes")
                .select("ip_address, last_seen")
                .eq("ip_address", ip_address)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to look up Tor exit node: {exc}") from exc
        return self._single_row(result)

    def count_tor_exit_nodes(self) -> int:
        try:
            result = self.client.table("tor_exit_nodes").select("ip_address", count="exact").execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to count Tor exit nodes: {exc}") from exc
        return self._count(result)

    def delete_tor_exit_nodes_seen_before(self, before: datetime) -> None:
        try:
            self.client.table("tor_exit_nodes").delete().lt("last_seen", to_iso(before)).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to prune Tor exit nodes: {exc}") from exc
