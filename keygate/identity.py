"""Client identity binding.

The identity is a one-way hash of (network address, user agent). The same
pair always yields the same identity. Clients behind one NAT with the same
agent string share an identity, so this is a weak binding and not a security
boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from .crypto import _safe_hash_encode, _sha256_hex

IDENTITY_DOMAIN = "keygate.identity.v1"


@dataclass(frozen=True)
class ConnectionAttributes:
    address: Optional[str] = None
    user_agent: Optional[str] = None


def bind(attrs: ConnectionAttributes) -> str:
    """Derive the hex identity for a connection."""
    return _sha256_hex(
        _safe_hash_encode([
            IDENTITY_DOMAIN,
            (attrs.address or "").strip(),
            (attrs.user_agent or "").strip(),
        ])
    )


def attributes_from_request(request: Any) -> ConnectionAttributes:
    """Read connection attributes from a Starlette/FastAPI request.

    When running behind a reverse proxy, start uvicorn with proxy headers
    enabled so ``request.client`` already holds the forwarded address.
    """
    address = None
    client = getattr(request, "client", None)
    if client is not None and getattr(client, "host", None):
        address = str(client.host)
    user_agent = request.headers.get("user-agent")
    return ConnectionAttributes(address=address, user_agent=user_agent)
