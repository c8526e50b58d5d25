"""Runtime configuration from environment variables.

Only operational knobs live here. Credential lifetime (24h), pending TTL
(10 minutes), code length and the required checkpoint set are fixed.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(name: str, default: bool) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    try:
        return int((os.getenv(name, "") or str(default)).strip())
    except ValueError:
        return default


@dataclass(frozen=True)
class KeyGateConfig:
    db_path: str = "keygate.db"
    frontend_url: str = "about:blank"
    pending_sweep_seconds: int = 60
    allow_reissue: bool = False
    direct_confirm_enabled: bool = True
    max_request_bytes: int = 65536
    env: str = "dev"
    stats_token: str = ""
    stats_require_auth: bool = False
    metrics_token: str = ""

    @classmethod
    def from_env(cls) -> "KeyGateConfig":
        env = (os.getenv("KEYGATE_ENV", "dev") or "dev").strip().lower()
        raw_require: Optional[str] = os.getenv("KEYGATE_STATS_REQUIRE_AUTH")
        if raw_require is None or not raw_require.strip():
            stats_require_auth = env in ("prod", "production")
        else:
            stats_require_auth = raw_require.strip().lower() in ("1", "true", "yes", "on")

        sweep = _env_int("KEYGATE_PENDING_SWEEP_SECONDS", cls.pending_sweep_seconds)
        max_bytes = _env_int("KEYGATE_MAX_REQUEST_BYTES", cls.max_request_bytes)

        return cls(
            db_path=(os.getenv("KEYGATE_DB_PATH", "") or cls.db_path).strip(),
            frontend_url=(os.getenv("KEYGATE_FRONTEND_URL", "") or cls.frontend_url).strip(),
            pending_sweep_seconds=max(1, min(sweep, 600)),
            allow_reissue=_env_bool("KEYGATE_ALLOW_REISSUE", False),
            direct_confirm_enabled=_env_bool("KEYGATE_DIRECT_CONFIRM", True),
            max_request_bytes=max_bytes if max_bytes > 0 else cls.max_request_bytes,
            env=env,
            stats_token=(os.getenv("KEYGATE_STATS_TOKEN", "") or "").strip(),
            stats_require_auth=stats_require_auth,
            metrics_token=(os.getenv("KEYGATE_METRICS_TOKEN", "") or "").strip(),
        )
