"""Observability endpoints for redemption counters and Prometheus metrics."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from gob_api.api.dependencies.security import require_operator_api_key
from gob_api.observability.redemptions import get_redemption_store
from gob_api.observability.scheduler import get_rewards_scheduler_store


router = APIRouter(
    prefix="/observability",
    tags=["Observability"],
    dependencies=[Depends(require_operator_api_key)],
)


@router.get("/rewards", summary="Rewards observability snapshot")
async def get_rewards_snapshot() -> dict[str, object]:
    return {
        "redemptions": get_redemption_store().snapshot().as_dict(),
        "scheduler": get_rewards_scheduler_store().snapshot().as_dict(),
    }


def _format_metric(name: str, description: str, value: int | float, labels: dict[str, str] | None = None) -> list[str]:
    label_fragment = ""
    if labels:
        formatted = ",".join(f'{key}="{val}"' for key, val in sorted(labels.items()))
        label_fragment = f"{{{formatted}}}"
    return [
        f"# HELP {name} {description}",
        f"# TYPE {name} gauge",
        f"{name}{label_fragment} {value}",
    ]


@router.get(
    "/prometheus",
    summary="Prometheus-formatted rewards metrics",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics() -> PlainTextResponse:
    redemptions = get_redemption_store().snapshot()
    scheduler = get_rewards_scheduler_store().snapshot()

    lines: list[str] = []
    for transition, value in sorted(redemptions.transitions.items()):
        lines.extend(
            _format_metric(
                "gob_redemption_transitions_total",
                "Redemption requests grouped by resulting status",
                value,
                labels={"status": transition},
            )
        )
    for key, value in sorted(redemptions.failures.items()):
        operation, _, code = key.partition(":")
        lines.extend(
            _format_metric(
                "gob_redemption_failures_total",
                "Rejected redemption operations grouped by error code",
                value,
                labels={"operation": operation, "code": code},
            )
        )
    for outcome, value in sorted(redemptions.payouts.items()):
        lines.extend(
            _format_metric(
                "gob_payouts_total",
                "USDC payouts grouped by outcome",
                value,
                labels={"outcome": outcome},
            )
        )
    lines.extend(
        _format_metric(
            "gob_payout_volume_usd",
            "USDC settled successfully since process start",
            float(redemptions.payout_volume_usd),
        )
    )

    lines.extend(_format_metric("gob_rewards_jobs_runs_total", "Scheduled rewards job runs", scheduler.totals.get("runs", 0)))
    lines.extend(
        _format_metric("gob_rewards_jobs_success_total", "Scheduled rewards job successes", scheduler.totals.get("success", 0))
    )
    lines.extend(
        _format_metric(
            "gob_rewards_jobs_failures_total",
            "Scheduled rewards job runs that exhausted retries",
            scheduler.totals.get("run_failures", 0),
        )
    )
    for job_id, job in sorted(scheduler.jobs.items()):
        totals = job.get("totals", {})
        lines.extend(
            _format_metric(
                "gob_rewards_job_consecutive_failures",
                "Consecutive failed attempts per rewards job",
                totals.get("consecutive_failures", 0),
                labels={"job_id": job_id},
            )
        )

    return PlainTextResponse("\n".join(lines) + "\n")


__all__ = ["router"]
