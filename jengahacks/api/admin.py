"""Admin routes for the abuse-control surface.

Guarded by a shared ``X-Admin-Key`` secret from settings. The router is
refused outright when no key is configured.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import Response

from jengahacks.abuse.config import Dimension
from jengahacks.abuse.identifiers import require_identifier
from jengahacks.abuse.models import Severity
from jengahacks.shared.log_colors import LogColors

from .routes import get_services
from .schemas import (
    AlertCheckRequest,
    BlockRequest,
    DetectPatternsRequest,
    EscalateRequest,
    ResolveAlertRequest,
)

logger = logging.getLogger(__name__)


def require_admin_key(request: Request, x_admin_key: Optional[str] = Header(None)) -> None:
    expected = get_services(request).settings.api.admin_key
    if not expected:
        raise HTTPException(status_code=403, detail="Admin API disabled")
    if not x_admin_key or not secrets.compare_digest(x_admin_key, expected):
        logger.warning(f"{LogColors.ADMIN_LABEL} admin_auth_failed: ip={request.state.client_ip}")
        raise HTTPException(status_code=401, detail="Unauthorized")


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)])


# Rate limits and blocks


@router.get("/rate-limit/{dimension}/{identifier}")
async def rate_limit_info(dimension: Dimension, identifier: str, request: Request) -> Dict[str, Any]:
    ident = require_identifier(identifier, dimension)
    return await get_services(request).rate_limits.rate_limit_info(ident)


@router.get("/blocks")
async def list_blocks(request: Request, active_only: bool = True) -> Dict[str, Any]:
    blocks = await get_services(request).blocks.list_blocks(active_only=active_only)
    return {"blocks": [b.to_dict() for b in blocks], "count": len(blocks)}


@router.get("/blocks/{dimension}/{identifier}")
async def get_block(dimension: Dimension, identifier: str, request: Request) -> Dict[str, Any]:
    block = await get_services(request).blocks.get_block(require_identifier(identifier, dimension))
    return {"blocked": block is not None, "block": block.to_dict() if block else None}


@router.post("/blocks")
async def block_identifier(body: BlockRequest, request: Request) -> Dict[str, Any]:
    entry, created = await get_services(request).blocks.block(
        require_identifier(body.identifier, body.dimension),
        body.reason,
        body.blocked_by,
        ttl_seconds=body.ttl_seconds,
    )
    return {"block": entry.to_dict(), "created": created}


@router.delete("/blocks/{dimension}/{identifier}")
async def unblock_identifier(
    dimension: Dimension,
    identifier: str,
    request: Request,
    unblocked_by: str = "admin",
) -> Dict[str, Any]:
    ident = require_identifier(identifier, dimension)
    removed = await get_services(request).blocks.unblock(ident, unblocked_by)
    return {"unblocked": removed}


@router.post("/escalate")
async def escalate(request: Request, body: Optional[EscalateRequest] = None) -> Dict[str, Any]:
    body = body or EscalateRequest()
    escalated = await get_services(request).escalation.auto_block_persistent_violators(
        body.threshold, body.lookback_hours
    )
    return {"blocked": [e.to_dict() for e in escalated], "count": len(escalated)}


# Patterns


@router.post("/patterns/detect")
async def detect_patterns(request: Request, body: Optional[DetectPatternsRequest] = None) -> Dict[str, Any]:
    body = body or DetectPatternsRequest()
    patterns = await get_services(request).patterns.detect_patterns(body.lookback_hours, body.min_confidence)
    return {"patterns": [p.to_dict() for p in patterns], "count": len(patterns)}


@router.get("/patterns")
async def list_patterns(
    request: Request,
    hours: int = Query(24, ge=1),
    min_confidence: float = Query(0.5, ge=0.0, le=1.0),
) -> Dict[str, Any]:
    patterns = await get_services(request).patterns.get_violation_patterns(hours, min_confidence)
    return {"patterns": [p.to_dict() for p in patterns], "count": len(patterns)}


# Violations


@router.get("/violations/stats")
async def violation_stats(request: Request, hours: int = Query(24, ge=1)) -> Dict[str, Any]:
    return {"stats": await get_services(request).reports.violation_stats(hours)}


@router.get("/violations/top")
async def top_violators(
    request: Request,
    limit: int = Query(10, ge=1, le=500),
    hours: int = Query(24, ge=1),
) -> Dict[str, Any]:
    return {"violators": await get_services(request).reports.top_violators(limit, hours)}


@router.get("/violations/export")
async def export_violations(
    request: Request,
    format: Literal["csv", "json"] = "csv",
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    dimension: Optional[Dimension] = None,
    limit: int = Query(10000, ge=1, le=100000),
) -> Response:
    reports = get_services(request).reports
    stamp = (end or datetime.now(timezone.utc)).date().isoformat()
    if format == "json":
        body = await reports.export_json(start, end, dimension, limit)
        media_type = "application/json"
    else:
        body = await reports.export_csv(start, end, dimension, limit)
        media_type = "text/csv"
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f"attachment; filename=violations_{stamp}.{format}"},
    )


@router.get("/violations/summary")
async def violation_summary(
    request: Request,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    return await get_services(request).reports.summary(start, end)


# Alerts


@router.post("/alerts/check")
async def check_alerts(request: Request, body: Optional[AlertCheckRequest] = None) -> Dict[str, Any]:
    body = body or AlertCheckRequest()
    alerts = get_services(request).alerts
    repeated = await alerts.check_repeated_violators(body.repeated_threshold, body.repeated_window_hours)
    high_rate = await alerts.check_high_violation_rate(body.high_rate_threshold, body.high_rate_window_minutes)
    return {
        "repeated_violator": [a.to_dict() for a in repeated],
        "high_rate": [a.to_dict() for a in high_rate],
    }


@router.get("/alerts")
async def list_alerts(
    request: Request,
    resolved: Optional[bool] = None,
    severity: Optional[Severity] = None,
    limit: int = Query(50, ge=1, le=500),
) -> Dict[str, Any]:
    alerts = await get_services(request).alerts.list_alerts(resolved=resolved, severity=severity, limit=limit)
    return {"alerts": [a.to_dict() for a in alerts], "count": len(alerts)}


@router.post("/alerts/{alert_id}/resolve")
async def resolve_alert(
    alert_id: int,
    request: Request,
    body: Optional[ResolveAlertRequest] = None,
) -> Dict[str, Any]:
    body = body or ResolveAlertRequest()
    resolved = await get_services(request).alerts.resolve_alert(alert_id, body.resolved_by)
    if not resolved:
        raise HTTPException(status_code=404, detail="Alert not found or already resolved")
    return {"resolved": True}


__all__ = ["require_admin_key", "router"]
