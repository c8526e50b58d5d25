"""
KeyGate Server

FastAPI transport for the checkpoint key system:

- StartSession / RequestCheckpointGate / ConfirmCheckpointCode /
  ConfirmCheckpointDirect drive a session through its checkpoints
- IssueCredential converts a fully checkpointed session into a key
- RedeemCredential lets a relying party consume that key exactly once

Every failure is answered with the stable envelope
``{"success": false, "code", "error", "retryable"[, "details"]}``.
"""

from __future__ import annotations

import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel

from .auth import RelyingPartyAuth
from .checkpoints import REQUIRED_CHECKPOINTS, CheckpointCatalog, CheckpointDefinition, CheckpointMachine
from .config import KeyGateConfig
from .credentials import CredentialIssuer, CredentialVerifier
from .errors import (
    KG_E_AUTH_REQUIRED,
    KG_E_BAD_REQUEST,
    KG_E_RATE_LIMITED,
    KeyGateError,
    keygate_error,
)
from .identity import attributes_from_request, bind
from .landing import render_landing_page
from .metrics import (
    instrument_fastapi,
    record_checkpoint,
    record_credential_issued,
    record_rate_limited,
    record_redemption,
    record_rejection,
    record_session_started,
    set_pending_verifications,
)
from .ops_stats import OPS_STATS
from .pending import PendingSweeper, PendingVerifications
from .ratelimit import RateLimiter, build_limiter
from .signing import TagSigner
from .store import KeyStore

logger = logging.getLogger("keygate")

OPERATIONS = [
    "StartSession",
    "RequestCheckpointGate",
    "ConfirmCheckpointCode",
    "ConfirmCheckpointDirect",
    "IssueCredential",
    "RedeemCredential",
    "Health",
]


# ---------------------------
# Request/Response Models
# ---------------------------

class GateRequest(BaseModel):
    session_id: Optional[str] = None
    tag: Optional[str] = None
    checkpoint_id: Optional[str] = None


class ConfirmCodeRequest(BaseModel):
    session_id: Optional[str] = None
    code: Optional[str] = None


class ConfirmDirectRequest(BaseModel):
    session_id: Optional[str] = None
    tag: Optional[str] = None
    checkpoint_id: Optional[str] = None
    proof: Optional[Any] = None  # free-form, stored as given


class IssueRequest(BaseModel):
    session_id: Optional[str] = None
    tag: Optional[str] = None


class RedeemRequest(BaseModel):
    key: Optional[str] = None
    identity: Optional[str] = None


class SessionResponse(BaseModel):
    success: bool = True
    session_id: str
    tag: str
    progress_tag: str
    created_at: str


class GateResponse(BaseModel):
    success: bool = True
    link: str
    verification_code: str
    message: str = "Complete the task, then return and enter your code"


class ConfirmCodeResponse(BaseModel):
    success: bool = True
    checkpoint_id: str
    tag: str
    progress_tag: str
    already_completed: bool = False
    message: str


class ConfirmDirectResponse(BaseModel):
    success: bool = True
    tag: str
    checkpoints_completed: int


class IssueResponse(BaseModel):
    success: bool = True
    key: str
    expires_at: str


class RedeemResponse(BaseModel):
    success: bool = True
    valid: bool = True
    expires_at: str


# ---------------------------
# Service container
# ---------------------------

class KeyGate:
    """Wires the store, signer, pending table and state machines together."""

    def __init__(
        self,
        config: Optional[KeyGateConfig] = None,
        store: Optional[KeyStore] = None,
        signer: Optional[TagSigner] = None,
        catalog: Optional[CheckpointCatalog] = None,
        pending: Optional[PendingVerifications] = None,
    ):
        self.config = config or KeyGateConfig.from_env()
        self.store = store or KeyStore(db_path=self.config.db_path)
        self.signer = signer or TagSigner.from_env()
        self.catalog = catalog or CheckpointCatalog.load_from_env()
        self.pending = pending if pending is not None else PendingVerifications()

        self.machine = CheckpointMachine(
            self.store,
            self.signer,
            self.catalog,
            self.pending,
            direct_confirm_enabled=self.config.direct_confirm_enabled,
        )
        self.issuer = CredentialIssuer(self.store, self.signer, allow_reissue=self.config.allow_reissue)
        self.verifier = CredentialVerifier(self.store)
        self.sweeper = PendingSweeper(
            self.pending,
            interval_seconds=self.config.pending_sweep_seconds,
            on_sweep=lambda removed, remaining: set_pending_verifications(remaining),
        )

    def health(self) -> Dict[str, Any]:
        return {
            "success": True,
            "status": "healthy",
            "operations": list(OPERATIONS),
            "checkpoints": self.catalog.ids(),
            "required_checkpoints": sorted(REQUIRED_CHECKPOINTS),
            "storage_lockdown": self.store.circuit.is_lockdown_active(),
        }


def _proof_text(proof: Any) -> Optional[str]:
    if proof is None:
        return None
    if isinstance(proof, str):
        return proof
    return json.dumps(proof, sort_keys=True, separators=(",", ":"), default=str)


# ---------------------------
# FastAPI App Factory
# ---------------------------

def create_app(keygate: Optional[KeyGate] = None) -> FastAPI:
    """Create FastAPI application with KeyGate endpoints."""
    from . import __version__ as keygate_version

    kg = keygate or KeyGate()
    config = kg.config

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await kg.sweeper.start()
        try:
            yield
        finally:
            await kg.sweeper.stop()

    app = FastAPI(
        title="KeyGate",
        description="Checkpoint-gated single-use key issuance",
        version=keygate_version,
        lifespan=lifespan,
    )
    app.state.keygate = kg

    @app.exception_handler(KeyGateError)
    async def _keygate_error_handler(request: Request, exc: KeyGateError):
        record_rejection(exc.code)
        OPS_STATS.record_rejection(exc.code)
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError):
        err = keygate_error(KG_E_BAD_REQUEST, "Malformed request body")
        record_rejection(err.code)
        OPS_STATS.record_rejection(err.code)
        return JSONResponse(status_code=400, content=err.as_dict())

    redeem_auth = RelyingPartyAuth.load_from_env()

    # ---------------------------
    # Observability (/metrics)
    # ---------------------------

    def _bearer_or_header(req: Request, header: str, token: str) -> bool:
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == token:
            return True
        return (req.headers.get(header) or "").strip() == token

    def _authorize_metrics(req: Request) -> bool:
        if not config.metrics_token:
            return True
        return _bearer_or_header(req, "X-Metrics-Token", config.metrics_token)

    instrument_fastapi(app, authorize=_authorize_metrics)

    # ---------------------------
    # Request size + rate limiting
    # ---------------------------

    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        try:
            cl = req.headers.get("content-length")
            if cl is not None and int(cl) > config.max_request_bytes:
                return JSONResponse(
                    status_code=413,
                    content=keygate_error(KG_E_BAD_REQUEST, "REQUEST_TOO_LARGE").as_dict(),
                )
        except ValueError:
            return JSONResponse(
                status_code=400,
                content=keygate_error(KG_E_BAD_REQUEST, "BAD_CONTENT_LENGTH").as_dict(),
            )
        return await call_next(req)

    session_limiter = build_limiter("KEYGATE_RATE_LIMIT_SESSION_START", "30/m")
    gate_limiter = build_limiter("KEYGATE_RATE_LIMIT_GATE", "30/m")
    confirm_limiter = build_limiter("KEYGATE_RATE_LIMIT_CONFIRM", "20/m")
    redeem_limiter = build_limiter("KEYGATE_RATE_LIMIT_REDEEM", "120/m")

    def _client_key(req: Request) -> str:
        if req.client and req.client.host:
            return f"ip:{req.client.host}"
        return "_anon"

    def _enforce(limiter: Optional[RateLimiter], key: str, endpoint: str) -> None:
        if limiter is None or limiter.allow(key):
            return
        record_rate_limited(endpoint)
        OPS_STATS.record_rate_limited(endpoint)
        raise keygate_error(KG_E_RATE_LIMITED, "RATE_LIMITED", retryable=True, http_status=429)

    # ---------------------------
    # Session & checkpoints
    # ---------------------------

    @app.post("/v1/session/start", response_model=SessionResponse)
    async def start_session(http_request: Request):
        """StartSession: bind the caller's identity and open a session."""
        _enforce(session_limiter, _client_key(http_request), "session_start")
        identity = bind(attributes_from_request(http_request))
        grant = kg.machine.start(identity)
        record_session_started()
        OPS_STATS.record_session_started()
        return SessionResponse(
            session_id=grant.session_id,
            tag=grant.tag,
            progress_tag=grant.progress_tag,
            created_at=grant.created_at_utc,
        )

    @app.post("/v1/checkpoint/gate", response_model=GateResponse)
    async def request_checkpoint_gate(http_request: Request, request: Optional[GateRequest] = None):
        """RequestCheckpointGate: external task link plus a challenge code."""
        _enforce(gate_limiter, _client_key(http_request), "checkpoint_gate")
        request = request or GateRequest()
        ticket = kg.machine.request_gate(request.session_id, request.tag, request.checkpoint_id)
        set_pending_verifications(len(kg.pending))
        return GateResponse(link=ticket.link, verification_code=ticket.verification_code)

    @app.post("/v1/checkpoint/confirm-code", response_model=ConfirmCodeResponse)
    async def confirm_checkpoint_code(http_request: Request, request: Optional[ConfirmCodeRequest] = None):
        """ConfirmCheckpointCode: record a gated checkpoint by its challenge code."""
        _enforce(confirm_limiter, _client_key(http_request), "checkpoint_confirm_code")
        request = request or ConfirmCodeRequest()
        result = kg.machine.confirm_code(request.session_id, request.code)
        if result.already_completed:
            message = "Checkpoint already completed"
        else:
            message = f"Checkpoint {result.checkpoint_id} completed!"
            record_checkpoint(result.checkpoint_id, "code")
            OPS_STATS.record_checkpoint(result.checkpoint_id, "code")
        set_pending_verifications(len(kg.pending))
        return ConfirmCodeResponse(
            checkpoint_id=result.checkpoint_id,
            tag=result.tag,
            progress_tag=result.progress_tag,
            already_completed=result.already_completed,
            message=message,
        )

    @app.post("/v1/checkpoint/confirm", response_model=ConfirmDirectResponse)
    async def confirm_checkpoint_direct(http_request: Request, request: Optional[ConfirmDirectRequest] = None):
        """ConfirmCheckpointDirect: legacy path for checkpoints with no external gate."""
        _enforce(confirm_limiter, _client_key(http_request), "checkpoint_confirm")
        request = request or ConfirmDirectRequest()
        result = kg.machine.confirm_direct(
            request.session_id, request.tag, request.checkpoint_id, _proof_text(request.proof)
        )
        if not result.already_completed:
            record_checkpoint(result.checkpoint_id, "direct")
            OPS_STATS.record_checkpoint(result.checkpoint_id, "direct")
        return ConfirmDirectResponse(tag=result.progress_tag, checkpoints_completed=result.checkpoints_completed)

    # ---------------------------
    # Credentials
    # ---------------------------

    @app.post("/v1/credential/issue", response_model=IssueResponse)
    async def issue_credential(request: Optional[IssueRequest] = None):
        """IssueCredential: mint a single-use key for a fully checkpointed session."""
        request = request or IssueRequest()
        credential = kg.issuer.issue(request.session_id, request.tag)
        record_credential_issued()
        OPS_STATS.record_credential_issued()
        return IssueResponse(key=credential.key, expires_at=credential.expires_at_utc)

    @app.post("/v1/credential/redeem", response_model=RedeemResponse)
    async def redeem_credential(
        http_request: Request,
        request: Optional[RedeemRequest] = None,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        """RedeemCredential: validate and consume a key exactly once."""
        party, err = redeem_auth.resolve(x_api_key)
        if err:
            raise keygate_error(KG_E_AUTH_REQUIRED, err, http_status=401)
        _enforce(redeem_limiter, f"rp:{party}" if party else _client_key(http_request), "credential_redeem")

        request = request or RedeemRequest()
        try:
            credential = kg.verifier.redeem(request.key, request.identity)
        except KeyGateError as e:
            record_redemption(e.code)
            OPS_STATS.record_redemption(e.code)
            raise
        record_redemption("ok")
        OPS_STATS.record_redemption("ok")
        return RedeemResponse(expires_at=credential.expires_at_utc)

    # ---------------------------
    # Landing pages
    # ---------------------------

    def _landing_handler(definition: CheckpointDefinition) -> Callable[[], Any]:
        async def landing() -> HTMLResponse:
            return HTMLResponse(render_landing_page(definition, config.frontend_url))
        return landing

    for definition in kg.catalog.definitions():
        if definition.landing_path:
            app.add_api_route(
                definition.landing_path,
                _landing_handler(definition),
                methods=["GET"],
                response_class=HTMLResponse,
                include_in_schema=False,
            )

    # ---------------------------
    # Operational endpoints
    # ---------------------------

    def _authorize_stats(req: Request) -> bool:
        if not config.stats_require_auth:
            return True
        if not config.stats_token:
            # Auth required but no token configured: deny.
            return False
        return _bearer_or_header(req, "X-Stats-Token", config.stats_token)

    @app.get("/v1/stats")
    async def stats(http_request: Request):
        if not _authorize_stats(http_request):
            raise keygate_error(KG_E_AUTH_REQUIRED, "STATS_UNAUTHORIZED", http_status=401)
        return OPS_STATS.snapshot(extra={
            "pending_verifications": len(kg.pending),
            "storage_lockdown": kg.store.circuit.is_lockdown_active(),
        })

    @app.get("/v1/health")
    async def health_check():
        """Health: status and the supported operations."""
        return kg.health()

    return app


def _operation_lines() -> List[str]:
    return [
        "POST /v1/session/start          - StartSession",
        "POST /v1/checkpoint/gate        - RequestCheckpointGate",
        "POST /v1/checkpoint/confirm-code - ConfirmCheckpointCode",
        "POST /v1/checkpoint/confirm     - ConfirmCheckpointDirect",
        "POST /v1/credential/issue       - IssueCredential",
        "POST /v1/credential/redeem      - RedeemCredential",
        "GET  /v1/health                 - Health",
    ]


def main():
    """
    Main entry point for the keygate-server CLI.

    Usage:
        keygate-server                    # Start on default port 8000
        keygate-server --port 9000        # Start on custom port
        keygate-server --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="KeyGate - checkpoint-gated single-use key service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    KEYGATE_DB_PATH              Path to SQLite database (default: keygate.db)
    KEYGATE_TAG_SECRET           Hex HMAC secret shared by all workers (default: random per process)
    KEYGATE_FRONTEND_URL         Return link on checkpoint landing pages
    KEYGATE_ALLOW_REISSUE        If 1, completed sessions may mint further keys
    KEYGATE_LOG_LEVEL            Logging level (default: INFO)
    KEYGATE_PROXY_HEADERS        If 1, trust X-Forwarded-* headers (reverse proxy)
    KEYGATE_FORWARDED_ALLOW_IPS  Comma-separated IPs allowed to set X-Forwarded-*
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument("--proxy-headers", action="store_true", help="Trust X-Forwarded-* headers (for reverse proxy)")
    parser.add_argument("--forwarded-allow-ips", default=None,
                        help="Comma-separated IPs allowed to set X-Forwarded-* (default: env KEYGATE_FORWARDED_ALLOW_IPS)")
    args = parser.parse_args()

    logging.basicConfig(
        level=(os.getenv("KEYGATE_LOG_LEVEL", "INFO") or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    import uvicorn

    logger.info("Starting KeyGate on %s:%s", args.host, args.port)
    for line in _operation_lines():
        logger.info("  %s", line)

    app = create_app()

    env_proxy = (os.environ.get("KEYGATE_PROXY_HEADERS", "") or "").strip().lower()
    proxy_headers = args.proxy_headers or env_proxy in ("1", "true", "yes")
    forwarded_allow_ips = args.forwarded_allow_ips or os.environ.get("KEYGATE_FORWARDED_ALLOW_IPS")

    uvicorn.run(app, host=args.host, port=args.port, reload=args.reload,
                proxy_headers=proxy_headers, forwarded_allow_ips=forwarded_allow_ips)
    return 0


if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
