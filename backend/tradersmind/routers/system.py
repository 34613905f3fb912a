from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Request

from tradersmind.schemas import CleanupReport, RetentionStatus

router = APIRouter(tags=["system"])


@router.get("/health")
async def health(request: Request):
    settings = request.app.state.settings
    retention = request.app.state.retention
    return {
        "ok": True,
        "status": "ok",
        "app": settings.app_name,
        "environment": settings.environment,
        "dependencies": {
            "discord": "configured" if settings.discord_bot_token else "missing_token",
            "retention": "running" if retention.running else "stopped",
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/retention/status", response_model=RetentionStatus)
async def retention_status(request: Request):
    return request.app.state.retention.get_status()


@router.post("/retention/cleanup", response_model=CleanupReport)
async def retention_cleanup(request: Request):
    summary = await request.app.state.retention.trigger_cleanup_now()
    if summary is None:
        raise HTTPException(status_code=500, detail="Cleanup cycle failed; see logs")
    return summary.to_report()
