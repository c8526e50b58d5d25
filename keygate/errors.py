"""Stable error taxonomy for KeyGate.

Every rejection the service produces is a :class:`KeyGateError` carrying a
machine-readable ``code``. Transport layers use ``http_status`` and
``retryable``; ``details`` holds structured data (for example the list of
missing checkpoints) so callers never have to parse messages.

Tag and challenge-code failures use fixed, generic messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Request shape
KG_E_MISSING_PARAMETERS = "KG_E_MISSING_PARAMETERS"
KG_E_BAD_REQUEST = "KG_E_BAD_REQUEST"

# Sessions / checkpoints
KG_E_SESSION_NOT_FOUND = "KG_E_SESSION_NOT_FOUND"
KG_E_INVALID_TAG = "KG_E_INVALID_TAG"
KG_E_UNKNOWN_CHECKPOINT = "KG_E_UNKNOWN_CHECKPOINT"
KG_E_NO_PENDING_VERIFICATION = "KG_E_NO_PENDING_VERIFICATION"
KG_E_CODE_MISMATCH = "KG_E_CODE_MISMATCH"
KG_E_DIRECT_CONFIRM_DISABLED = "KG_E_DIRECT_CONFIRM_DISABLED"

# Issuance
KG_E_MISSING_CHECKPOINTS = "KG_E_MISSING_CHECKPOINTS"
KG_E_SESSION_COMPLETED = "KG_E_SESSION_COMPLETED"

# Redemption
KG_E_CREDENTIAL_NOT_FOUND = "KG_E_CREDENTIAL_NOT_FOUND"
KG_E_IDENTITY_MISMATCH = "KG_E_IDENTITY_MISMATCH"
KG_E_CREDENTIAL_EXPIRED = "KG_E_CREDENTIAL_EXPIRED"
KG_E_CREDENTIAL_USED = "KG_E_CREDENTIAL_USED"

# Transport / infrastructure
KG_E_AUTH_REQUIRED = "KG_E_AUTH_REQUIRED"
KG_E_RATE_LIMITED = "KG_E_RATE_LIMITED"
KG_E_STORAGE_UNAVAILABLE = "KG_E_STORAGE_UNAVAILABLE"


@dataclass
class KeyGateError(Exception):
    """Base KeyGate exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "success": False,
            "code": self.code,
            "error": self.message,
            "retryable": bool(self.retryable),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def keygate_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> KeyGateError:
    return KeyGateError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)


# ---------------------------
# Constructors for the fixed taxonomy
# ---------------------------

def missing_parameters(*names: str) -> KeyGateError:
    if names:
        return keygate_error(KG_E_MISSING_PARAMETERS, "Missing parameters", missing=list(names))
    return keygate_error(KG_E_MISSING_PARAMETERS, "Missing parameters")


def session_not_found() -> KeyGateError:
    return keygate_error(KG_E_SESSION_NOT_FOUND, "Invalid session", http_status=404)


def invalid_tag() -> KeyGateError:
    return keygate_error(KG_E_INVALID_TAG, "Invalid tag - tampering detected", http_status=403)


def unknown_checkpoint() -> KeyGateError:
    return keygate_error(KG_E_UNKNOWN_CHECKPOINT, "Invalid checkpoint")


def no_pending_verification() -> KeyGateError:
    return keygate_error(
        KG_E_NO_PENDING_VERIFICATION,
        "No pending verification. Please request the checkpoint again.",
        http_status=404,
    )


def code_mismatch() -> KeyGateError:
    return keygate_error(KG_E_CODE_MISMATCH, "Invalid verification code", http_status=403)


def missing_required_checkpoints(missing) -> KeyGateError:
    ids = sorted(missing)
    return keygate_error(
        KG_E_MISSING_CHECKPOINTS,
        "Missing required checkpoints: " + ", ".join(ids),
        missing=ids,
    )


def session_already_completed() -> KeyGateError:
    return keygate_error(KG_E_SESSION_COMPLETED, "A key has already been issued for this session", http_status=409)


def credential_not_found() -> KeyGateError:
    return keygate_error(KG_E_CREDENTIAL_NOT_FOUND, "Invalid key", http_status=404)


def identity_mismatch() -> KeyGateError:
    return keygate_error(KG_E_IDENTITY_MISMATCH, "Key is bound to a different identity", http_status=403)


def credential_expired() -> KeyGateError:
    return keygate_error(KG_E_CREDENTIAL_EXPIRED, "Key has expired", http_status=410)


def credential_already_used() -> KeyGateError:
    return keygate_error(KG_E_CREDENTIAL_USED, "Key has already been used", http_status=409)


def storage_unavailable() -> KeyGateError:
    return keygate_error(KG_E_STORAGE_UNAVAILABLE, "Storage unavailable", retryable=True, http_status=503)
