"""
Operator endpoints for the request gate
"""

import hmac
import ipaddress
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from pydantic import BaseModel, Field

from pitchguard.core.gate import Gate
from pitchguard.core.logging import get_logger
from pitchguard.services.event_log import SecurityEventLog
from pitchguard.tasks.sweeper import BackgroundSweeper
from pitchguard.utils.exceptions import (
    AuthenticationError,
    CustomHTTPException,
    SecurityError,
    ValidationError,
)

logger = get_logger(__name__)

router = APIRouter(tags=["internal-security"])


class BlacklistRequest(BaseModel):
    """Manual moderation ban"""
    ip: str = Field(description="IPv4 or IPv6 address to ban")
    reason: str = Field(min_length=1, max_length=200, description="Why the address is banned")
    duration_seconds: Optional[int] = Field(default=None, gt=0, description="Ban length, defaults to the configured duration")


class BlacklistResponse(BaseModel):
    ip: str
    reason: str
    created_at: float
    duration_seconds: int


class IPStatusResponse(BaseModel):
    """Current gate state for one address"""
    ip: str
    blacklisted: bool
    blacklist_reason: Optional[str] = None
    temporary_block_remaining: int
    brute_force_state: str
    failed_attempts: int
    lockout_remaining: int


async def require_internal_token(
    request: Request,
    x_internal_token: Optional[str] = Header(default=None),
) -> None:
    settings = request.app.state.settings
    if not settings.INTERNAL_API_TOKEN:
        raise SecurityError("Internal API is disabled")
    if not x_internal_token or not hmac.compare_digest(x_internal_token, settings.INTERNAL_API_TOKEN):
        raise AuthenticationError("Invalid internal API token")


def get_gate(request: Request) -> Gate:
    gate = getattr(request.app.state, "gate", None)
    if gate is None:
        raise CustomHTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="GATE_UNAVAILABLE",
            detail="Request gate is not initialized",
        )
    return gate


def get_event_log(request: Request) -> SecurityEventLog:
    return get_gate(request).event_log


def get_sweeper(request: Request) -> BackgroundSweeper:
    sweeper = getattr(request.app.state, "sweeper", None)
    if sweeper is None:
        raise CustomHTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="SWEEPER_UNAVAILABLE",
            detail="Background sweeper is not initialized",
        )
    return sweeper


def _validate_ip(ip: str) -> str:
    try:
        return str(ipaddress.ip_address(ip.strip()))
    except ValueError:
        raise ValidationError("Invalid IP address", details={"ip": ip})


@router.get("/status", dependencies=[Depends(require_internal_token)])
async def get_security_status(sweeper: BackgroundSweeper = Depends(get_sweeper)):
    """Run a health check now and return the system security status"""
    status_snapshot = await sweeper.run_health_check()
    return {
        **status_snapshot.to_dict(),
        "sweeper_running": sweeper.is_running,
        "last_cleanup": sweeper.last_cleanup,
    }


@router.get("/events", dependencies=[Depends(require_internal_token)])
async def get_recent_events(
    limit: int = Query(default=50, ge=1, le=1000),
    event_log: SecurityEventLog = Depends(get_event_log),
) -> List[Dict[str, Any]]:
    """Most recent security events from this process, newest first"""
    return [event.to_dict() for event in event_log.recent(limit)]


@router.get("/alerts", dependencies=[Depends(require_internal_token)])
async def get_recent_alerts(
    limit: int = Query(default=20, ge=1, le=100),
    event_log: SecurityEventLog = Depends(get_event_log),
) -> List[Dict[str, Any]]:
    return event_log.recent_alerts(limit)


@router.get("/stats", dependencies=[Depends(require_internal_token)])
async def get_gate_statistics(gate: Gate = Depends(get_gate)):
    return gate.get_stats()


@router.get("/config", dependencies=[Depends(require_internal_token)])
async def get_gate_config(gate: Gate = Depends(get_gate)):
    """Thresholds, weights and detector table in effect"""
    return gate.describe_policy()


@router.post(
    "/blacklist",
    response_model=BlacklistResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_internal_token)],
)
async def blacklist_ip(body: BlacklistRequest, gate: Gate = Depends(get_gate)):
    """Manually ban an address"""
    ip = _validate_ip(body.ip)
    entry = await gate.reputation.blacklist(ip, body.reason, body.duration_seconds)
    if entry is None:
        raise CustomHTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="STORE_UNAVAILABLE",
            detail="Blacklist entry could not be stored",
        )
    logger.info(f"Manual blacklist entry created for {ip}", reason=body.reason)
    return BlacklistResponse(
        ip=entry.ip,
        reason=entry.reason,
        created_at=entry.created_at,
        duration_seconds=entry.duration_seconds,
    )


@router.get("/ip/{ip}", response_model=IPStatusResponse, dependencies=[Depends(require_internal_token)])
async def get_ip_status(ip: str, gate: Gate = Depends(get_gate)):
    ip = _validate_ip(ip)
    entry = await gate.reputation.blacklist_entry(ip)
    brute_force_state = await gate.brute_force.state(ip)
    return IPStatusResponse(
        ip=ip,
        blacklisted=entry is not None,
        blacklist_reason=entry.reason if entry else None,
        temporary_block_remaining=await gate.reputation.block_remaining(ip),
        brute_force_state=brute_force_state.value,
        failed_attempts=await gate.brute_force.failed_attempts(ip),
        lockout_remaining=await gate.brute_force.lockout_remaining(ip),
    )


@router.post("/cleanup", dependencies=[Depends(require_internal_token)])
async def run_cleanup(sweeper: BackgroundSweeper = Depends(get_sweeper)) -> Dict[str, int]:
    """Run the cleanup pass immediately"""
    return await sweeper.run_cleanup()
