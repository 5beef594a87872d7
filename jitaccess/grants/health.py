"""
Health probe utilities for the grant orchestrator.

Intent:
    Report store reachability and lifecycle counts without leaking store
    internals into the FastAPI layer. The service is async-friendly so the
    web adapter can await it without blocking the event loop.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Dict, List, Optional

from .domain import GrantState
from .store import ExecutionStore

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthCheckResult:
    check: str
    status: str
    detail: Optional[str] = None


@dataclass(frozen=True)
class HealthProbeResult:
    status: str
    checks: List[HealthCheckResult]
    counts: Dict[str, int] = field(default_factory=dict)


class GrantsHealthService:
    """Evaluate whether executions can be stored and revokes are progressing."""

    def __init__(self, store: ExecutionStore) -> None:
        self._store = store

    async def probe(self) -> HealthProbeResult:
        """Run the probe in a thread; the DB store uses blocking psycopg calls."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.probe_sync)

    def probe_sync(self) -> HealthProbeResult:
        try:
            counts = self._store.counts()
        except Exception as exc:
            LOG.warning("grants.health.store_unreachable error=%s", type(exc).__name__)
            return HealthProbeResult(
                status="degraded",
                checks=[HealthCheckResult(check="store", status="failed", detail=type(exc).__name__)],
            )

        checks = [HealthCheckResult(check="store", status="ok")]
        expiring = self._store.list_executions([GrantState.EXPIRING]) if counts.get("expiring") else []
        parked = [e.id for e in expiring if e.parked]
        alerted = [e.id for e in expiring if e.alert_raised]
        if parked or alerted:
            checks.append(
                HealthCheckResult(
                    check="revokes",
                    status="failed",
                    detail=f"parked={len(parked)} alerted={len(alerted)}",
                )
            )
        else:
            checks.append(HealthCheckResult(check="revokes", status="ok"))
        status = "healthy" if all(c.status == "ok" for c in checks) else "degraded"
        return HealthProbeResult(status=status, checks=checks, counts=counts)


__all__ = ["GrantsHealthService", "HealthCheckResult", "HealthProbeResult"]
