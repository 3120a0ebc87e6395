"""Control API for a running Watcher.

Provides REST API endpoints for:
- Status snapshot (watcher, risk, executor)
- Pause / resume of block processing
- Emergency stop
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from polyarb.live.watcher import Watcher

log = structlog.get_logger()


class EmergencyStopRequest(BaseModel):
    """Request model for an emergency stop."""

    reason: str = Field("manual emergency stop", description="Reason recorded with the stop")


class PauseRequest(BaseModel):
    reason: str = Field("manual", description="Reason recorded with the pause")


def create_control_router(watcher: Watcher) -> APIRouter:
    """Build the control router bound to one Watcher instance."""
    router = APIRouter(prefix="/api/arb", tags=["Arbitrage Control"])

    @router.get("/status")
    async def get_status() -> dict[str, Any]:
        """Read-only status snapshot."""
        try:
            return {
                **watcher.status(),
                "performance": watcher.performance_metrics(),
                "timestamp": datetime.now(UTC).isoformat(),
            }
        except Exception as e:
            log.exception("control.status_failed")
            raise HTTPException(status_code=500, detail=str(e)) from e

    @router.post("/pause")
    async def pause(request: PauseRequest | None = None) -> dict[str, Any]:
        reason = request.reason if request else "manual"
        watcher.pause(reason)
        log.info("control.paused", reason=reason)
        return {"paused": watcher.paused, "reason": watcher.pause_reason}

    @router.post("/resume")
    async def resume() -> dict[str, Any]:
        if not watcher.running:
            raise HTTPException(status_code=409, detail="Watcher is not running")
        allowed, reason = watcher.risk.is_trading_allowed()
        if not allowed:
            raise HTTPException(status_code=409, detail=reason)
        watcher.resume()
        log.info("control.resumed")
        return {"paused": watcher.paused}

    @router.post("/emergency-stop")
    async def emergency_stop(request: EmergencyStopRequest | None = None) -> dict[str, Any]:
        """Halt trading; stays halted until cleared and resumed."""
        reason = request.reason if request else "manual emergency stop"
        watcher.emergency_stop(reason)
        log.critical("control.emergency_stop", reason=reason)
        return {"stopped": True, "reason": reason}

    @router.post("/emergency-stop/clear")
    async def clear_emergency_stop() -> dict[str, Any]:
        watcher.risk.clear_emergency_stop()
        return {"stopped": False, "trading_allowed": watcher.risk.is_trading_allowed()[0]}

    return router
