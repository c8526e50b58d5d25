"""KeyGate package.

Checkpoint-gated issuance of single-use access keys:

- Sessions bound to a hash of the caller's connection attributes
- HMAC tags over session state (GATE and PROGRESS scopes)
- Challenge-code confirmation of externally gated checkpoints
- 24-hour keys redeemed at most once

Convenience imports
------------------
Nothing heavy happens at import time. These are loaded lazily:

    from keygate import KeyGate, create_app
    from keygate import KeyStore, TagSigner
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Version from a repo-local pyproject.toml, when running from a checkout."""
    pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
    try:
        txt = pyproject.read_text(encoding="utf-8")
    except OSError:
        return None
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    return m.group(1) if m else None


__version__ = _read_version_from_pyproject() or "1.0.0"

__all__ = [
    "__version__",
    "KeyGate",
    "create_app",
    "KeyStore",
    "TagSigner",
]

# name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "KeyGate": ("keygate.server", "KeyGate"),
    "create_app": ("keygate.server", "create_app"),
    "KeyStore": ("keygate.store", "KeyStore"),
    "TagSigner": ("keygate.signing", "TagSigner"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name), attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'keygate' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
