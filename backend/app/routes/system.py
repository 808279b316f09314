from __future__ import annotations
from fastapi import APIRouter, Request
from app.config import settings
from app.services.time_windows import utcnow

router = APIRouter(tags=["system"])

@router.get("/health")
async def health(request: Request):
    sweeper = getattr(request.app.state, "sweeper", None)
    return {
        "status": "ok",
        "env": settings.environment,
        "time": utcnow().isoformat(),
        "request_id": request.headers.get("x-request-id") or request.state.request_id,
        "sweeper": "running" if sweeper is not None and sweeper.running else "stopped",
    }

@router.get("/version")
async def version():
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "git_sha": settings.git_sha,
    }
