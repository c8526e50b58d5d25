"""Relying-party authentication for key redemption.

Redemption is open by default. When a deployer configures API keys, every
redeem call must carry a known ``X-Api-Key`` and the resolved relying-party
name is used for rate limiting and logs.

Env vars:
  - KEYGATE_REDEEM_API_KEYS_JSON: JSON object mapping api_key -> party name
  - KEYGATE_REDEEM_API_KEYS_FILE: path to a JSON file with the same mapping
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

ENV_REDEEM_API_KEYS_JSON = "KEYGATE_REDEEM_API_KEYS_JSON"
ENV_REDEEM_API_KEYS_FILE = "KEYGATE_REDEEM_API_KEYS_FILE"

API_KEY_REQUIRED = "API_KEY_REQUIRED"
API_KEY_INVALID = "API_KEY_INVALID"
API_KEY_CONFIG_INVALID = "API_KEY_CONFIG_INVALID"


@dataclass(frozen=True)
class RelyingPartyAuth:
    """API key -> relying party mapping."""

    api_key_to_party: Dict[str, str] = field(default_factory=dict)
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "RelyingPartyAuth":
        """Load the mapping from env/file.

        Configuration that is present but malformed yields an instance with
        config_error set, so every redeem call fails closed.
        """
        raw_json = os.getenv(ENV_REDEEM_API_KEYS_JSON)
        file_path = os.getenv(ENV_REDEEM_API_KEYS_FILE)
        if not raw_json and not file_path:
            return cls()

        try:
            if raw_json:
                data = json.loads(raw_json)
            else:
                with open(file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            if not isinstance(data, dict) or not data:
                raise ValueError("redeem API keys must be a non-empty JSON object")
        except (OSError, ValueError):
            return cls(configured=True, config_error=API_KEY_CONFIG_INVALID)

        return cls(api_key_to_party={str(k): str(v) for k, v in data.items()}, configured=True)

    def enabled(self) -> bool:
        return self.configured

    def resolve(self, api_key: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        """Resolve the calling relying party.

        Returns (party, error). With auth disabled both are None.
        """
        if self.config_error:
            return None, self.config_error
        if not self.enabled():
            return None, None
        if not api_key:
            return None, API_KEY_REQUIRED
        party = self.api_key_to_party.get(api_key)
        if not party:
            return None, API_KEY_INVALID
        return party, None
