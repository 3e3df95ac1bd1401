from __future__ import annotations

import os
from dataclasses import dataclass

from supabase import Client, create_client


class DatabaseError(RuntimeError):
    """Raised when a Supabase read or write fails."""


@dataclass(frozen=True)
class SupabaseConfig:
    url: str
    service_role_key: str

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        url = os.getenv("SUPABASE_URL", "").strip()
        service_role_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "").strip()

        if not url or not service_role_key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required environment variables.")

        return cls(url=url, service_role_key=service_role_key)


def create_supabase_client(config: SupabaseConfig) -> Client:
    return create_client(config.url, config.service_role_key)
