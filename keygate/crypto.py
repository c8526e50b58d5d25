"""
KeyGate primitives: clock, hashing, canonical encoding and random values.

Everything that must be byte-stable across processes (tag payloads,
identity fingerprints) goes through the helpers in this module.
"""

from __future__ import annotations

import hashlib
import json
import math
import secrets
import string
import unicodedata
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


SESSION_ID_PREFIX = "sess_"
CREDENTIAL_KEY_PREFIX = "key_"
CHALLENGE_CODE_LENGTH = 6
CHALLENGE_CODE_ALPHABET = string.ascii_uppercase + string.digits


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_iso_utc(ts: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp into a timezone-aware UTC datetime.

    Returns None if parsing fails or input is empty.
    """
    if not ts:
        return None
    try:
        s = str(ts).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except ValueError:
        return None


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _safe_hash_encode(components: List[str]) -> bytes:
    """
    Length-prefixed encoding for hash inputs.
    Prevents delimiter collision attacks.
    """
    result = b""
    for component in components:
        encoded = component.encode("utf-8")
        result += len(encoded).to_bytes(8, byteorder="big") + encoded
    return result


# ---------------------------
# Canonical JSON
# ---------------------------

_CANON_MAX_DEPTH = 16


def _canonicalize(obj: Any, _path: str = "$", _depth: int = 0) -> Any:
    if _depth > _CANON_MAX_DEPTH:
        raise ValueError(f"max nesting depth exceeded at {_path}")
    if obj is None or isinstance(obj, (bool, int)):
        return obj
    if isinstance(obj, str):
        return unicodedata.normalize("NFC", obj)
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise ValueError(f"non-finite float at {_path}")
        return obj
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if not isinstance(k, str):
                raise TypeError(f"dict key must be str at {_path}, got {type(k).__name__}")
            nk = unicodedata.normalize("NFC", k)
            if nk in out:
                raise ValueError(f"duplicate key after unicode normalization at {_path}")
            out[nk] = _canonicalize(v, f"{_path}.{nk}", _depth + 1)
        return out
    if isinstance(obj, (list, tuple)):
        return [_canonicalize(v, f"{_path}[{i}]", _depth + 1) for i, v in enumerate(obj)]
    raise TypeError(f"non-JSON-serializable type at {_path}: {type(obj).__name__}")


def canonical_json_dumps(obj: Any) -> str:
    """Strict canonical JSON used for every signed payload.

    - sorted keys, no insignificant whitespace
    - strings and keys normalized to NFC
    - NaN/Infinity and non-JSON types rejected instead of stringified
    """
    return json.dumps(
        _canonicalize(obj),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


# ---------------------------
# Random values
# ---------------------------

def new_session_id() -> str:
    return f"{SESSION_ID_PREFIX}{secrets.token_urlsafe(24)}"


def new_credential_key() -> str:
    return f"{CREDENTIAL_KEY_PREFIX}{secrets.token_urlsafe(32)}"


def new_challenge_code(length: int = CHALLENGE_CODE_LENGTH) -> str:
    """Short human-enterable code, upper-case letters and digits."""
    return "".join(secrets.choice(CHALLENGE_CODE_ALPHABET) for _ in range(length))


def new_tag_secret() -> bytes:
    return secrets.token_bytes(32)
