"""Operations endpoints (internal tooling for operators)."""

from __future__ import annotations

from fastapi import APIRouter

from jitaccess import telemetry

from ..responses import private_response
from ..services import get_services

operations_router = APIRouter(tags=["Operations"])


@operations_router.get("/internal/health")
async def grants_health():
    """
    Return diagnostics for the grant pipeline.

    Status:
        200 when the store answers and no revoke is parked or alerted,
        503 otherwise.
    """
    services = get_services()
    probe = await services.health.probe()
    body = {
        "status": probe.status,
        "checks": [
            {"check": check.check, "status": check.status, "detail": check.detail}
            for check in probe.checks
        ],
        "counts": probe.counts,
        "roleSnapshotVersion": services.roles.version,
        "openCatalogSessions": services.synchronizer.open_sessions(),
        "revokeAlerts": telemetry.counter_total("grants_revoke_alert_total"),
    }
    status_code = 200 if probe.status == "healthy" else 503
    return private_response(body, status_code=status_code)


__all__ = ["operations_router"]
