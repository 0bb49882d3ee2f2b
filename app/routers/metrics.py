"""
Metrics Router

/metrics serves the Prometheus text format; /metrics/ledger is a small JSON
digest of the money counters for staff dashboards.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from ..utils.dependencies import require_admin_key
from ..utils.metrics import (
    format_prometheus_metrics,
    finalizations_total,
    refunds_total,
    refunded_cents_total,
    cancellations_total,
    ledger_violations_total,
)

router = APIRouter(prefix="/metrics", tags=["Metrics"])


@router.get("")
async def get_metrics():
    return PlainTextResponse(
        content=format_prometheus_metrics(),
        media_type="text/plain; charset=utf-8"
    )


@router.get("/ledger")
async def ledger_digest(_: bool = Depends(require_admin_key)):
    def total(counter) -> float:
        return sum(counter.get_all().values())

    return {
        "finalizations": total(finalizations_total),
        "refunds": total(refunds_total),
        "refunded_cents": total(refunded_cents_total),
        "cancellations": total(cancellations_total),
        "ledger_violations": total(ledger_violations_total),
    }
