"""
Security middleware for request/response processing
"""

import re
import time
from typing import Callable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from pitchguard.core.config import Settings, settings as default_settings
from pitchguard.core.gate import DecisionOutcome, Gate, GateDecision
from pitchguard.core.logging import get_logger
from pitchguard.core.patterns import RequestFingerprint

logger = get_logger(__name__)

SKIP_PATHS = (
    "/health",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/favicon.ico",
)

STATIC_EXTENSIONS = (".css", ".js", ".png", ".jpg", ".jpeg", ".gif", ".ico", ".svg", ".woff", ".woff2")


def get_client_ip(request: Request, trust_forwarded: bool = True) -> str:
    """Resolve the client IP: X-Forwarded-For first hop, X-Real-IP, socket peer"""
    if trust_forwarded:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            first_hop = forwarded_for.split(",")[0].strip()
            if first_hop:
                return first_hop
        real_ip = request.headers.get("X-Real-IP")
        if real_ip and real_ip.strip():
            return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"


def is_auth_endpoint(path: str, pattern: str) -> bool:
    return bool(pattern) and re.search(pattern, path, re.IGNORECASE) is not None


def query_items(request: Request):
    """Query parameters with every value kept, repeated keys as lists"""
    items = {}
    for key, value in request.query_params.multi_items():
        items.setdefault(key, []).append(value)
    return {key: values[0] if len(values) == 1 else values for key, values in items.items()} or None


async def build_fingerprint(request: Request, settings: Settings) -> RequestFingerprint:
    """Normalize the request into the record the gate consumes"""
    body = await request.body()
    path = request.url.path
    return RequestFingerprint(
        client_ip=get_client_ip(request, settings.GATE_TRUST_FORWARDED_FOR),
        path=path,
        method=request.method,
        client_identifier=request.headers.get("user-agent", ""),
        headers=dict(request.headers),
        query=query_items(request),
        body=body or None,
        is_auth_endpoint=is_auth_endpoint(path, settings.GATE_AUTH_PATH_PATTERN),
    )


class GateMiddleware(BaseHTTPMiddleware):
    """Runs every request through the gate held on ``app.state.gate``"""

    def __init__(self, app, settings: Optional[Settings] = None, enabled: bool = True):
        super().__init__(app)
        self.settings = settings or default_settings
        self.enabled = enabled and self.settings.GATE_ENABLED
        logger.info(f"GateMiddleware initialized, enabled: {self.enabled}")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request through the gate"""
        gate: Optional[Gate] = getattr(request.app.state, "gate", None)
        if not self.enabled or gate is None:
            return await call_next(request)

        if self._should_skip(request):
            response = await call_next(request)
            return self._add_security_headers(response)

        try:
            start_time = time.time()
            fingerprint = await build_fingerprint(request, self.settings)
            request.state.client_ip = fingerprint.client_ip
            decision = await gate.evaluate(fingerprint)
            evaluation_time = time.time() - start_time
            request.state.gate_decision = decision
        except Exception as e:
            logger.error(f"Gate middleware error, allowing request: {e}", exc_info=True)
            response = await call_next(request)
            return self._add_security_headers(response)

        if not decision.allowed:
            logger.warning(
                f"Blocked request from {fingerprint.client_ip}",
                reason=decision.violation.reason.value,
                score=decision.score,
                path=fingerprint.path,
            )
            return self._add_security_headers(self._create_block_response(decision))

        response = await call_next(request)
        response = self._add_security_headers(response)
        response.headers["X-Security-Check"] = "PASSED"
        if decision.outcome == DecisionOutcome.ADVISORY:
            response.headers["X-Threat-Score"] = str(decision.score)
        if self.settings.APP_DEBUG:
            response.headers["X-Security-Analysis-Time"] = f"{evaluation_time*1000:.1f}ms"
        return response

    def _should_skip(self, request: Request) -> bool:
        path = request.url.path
        return (
            path in SKIP_PATHS
            or any(path.endswith(ext) for ext in STATIC_EXTENSIONS)
            or path.startswith("/static/")
        )

    def _create_block_response(self, decision: GateDecision) -> JSONResponse:
        violation = decision.violation
        content = {
            "error": "TOO_MANY_ATTEMPTS" if violation.status_hint == 429 else "ACCESS_DENIED",
            "message": violation.message,
            "reason": violation.reason.value,
        }
        headers = {}
        if violation.retry_after:
            content["retry_after"] = violation.retry_after
            headers["Retry-After"] = str(violation.retry_after)
        return JSONResponse(content=content, status_code=violation.status_hint, headers=headers)

    def _add_security_headers(self, response: Response) -> Response:
        """Add security headers to response"""
        if not self.settings.API_SECURITY_HEADERS_ENABLED:
            return response

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        if self.settings.API_CSP_HEADER:
            response.headers["Content-Security-Policy"] = self.settings.API_CSP_HEADER

        return response


def setup_security_middleware(app, settings: Optional[Settings] = None, enabled: bool = True) -> None:
    """Setup gate middleware on FastAPI app"""
    settings = settings or default_settings
    if enabled and settings.GATE_ENABLED:
        app.add_middleware(GateMiddleware, settings=settings, enabled=enabled)
        logger.info("Gate middleware enabled")
    else:
        logger.info("Gate middleware disabled")


# Helpers for authentication route handlers
def _request_ip(request: Request) -> str:
    ip = getattr(request.state, "client_ip", None)
    if ip:
        return ip
    settings = getattr(request.app.state, "settings", None) or default_settings
    return get_client_ip(request, settings.GATE_TRUST_FORWARDED_FOR)


async def record_auth_failure(request: Request, identity: Optional[str] = None) -> int:
    """Report a failed login for the requesting client; returns the failure count"""
    gate: Optional[Gate] = getattr(request.app.state, "gate", None)
    if gate is None:
        return 0
    return await gate.brute_force.record_failure(_request_ip(request), identity)


async def record_auth_success(request: Request) -> None:
    """Report a successful login, clearing failures and any lockout"""
    gate: Optional[Gate] = getattr(request.app.state, "gate", None)
    if gate is not None:
        await gate.brute_force.record_success(_request_ip(request))


def get_request_decision(request: Request) -> Optional[GateDecision]:
    """Gate decision for the request, if the gate evaluated it"""
    return getattr(request.state, "gate_decision", None)


def get_request_threat_score(request: Request) -> int:
    decision = get_request_decision(request)
    return decision.score if decision is not None else 0
