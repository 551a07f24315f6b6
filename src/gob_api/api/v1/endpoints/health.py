from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from gob_api.core.settings import settings
from gob_api.db.session import get_session


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Human readable status detail")
    last_error_at: str | None = Field(default=None, description="ISO timestamp of most recent error")
    last_success_at: str | None = Field(default=None, description="ISO timestamp of most recent success")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Database readiness probe failed", error=str(exc))
        components["database"] = ComponentStatus(status="error", detail=str(exc))
        status = "error"
    else:
        components["database"] = ComponentStatus(status="ready")

    job_scheduler = getattr(request.app.state, "rewards_job_scheduler", None)
    if settings.rewards_job_scheduler_enabled and job_scheduler is not None:
        health = job_scheduler.health()
        failing = [
            job["id"]
            for job in health["jobs"]
            if job["metrics"] and job["metrics"]["totals"]["consecutive_failures"]
        ]
        if not health["running"]:
            components["rewards_job_scheduler"] = ComponentStatus(
                status="starting",
                detail="Rewards job scheduler not running",
            )
            status = "degraded" if status != "error" else status
        elif failing:
            last_errors = [
                job["metrics"]["last_error_at"] for job in health["jobs"] if job["id"] in failing and job["metrics"]
            ]
            components["rewards_job_scheduler"] = ComponentStatus(
                status="degraded",
                detail=f"Failing jobs: {', '.join(failing)}",
                last_error_at=max((value for value in last_errors if value), default=None),
            )
            status = "degraded" if status != "error" else status
        else:
            components["rewards_job_scheduler"] = ComponentStatus(status="ready")
    else:
        components["rewards_job_scheduler"] = ComponentStatus(
            status="disabled",
            detail="Rewards job scheduler disabled via settings",
        )

    return ReadinessPayload(status=status, components=components)
