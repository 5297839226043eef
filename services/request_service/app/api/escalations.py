"""Manual trigger for the escalation sweep."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ..dependencies import get_scheduler
from ..escalation import EscalationScheduler
from ..schemas import SweepResponse

router = APIRouter(prefix="/escalations", tags=["escalations"])


@router.post("/sweep", response_model=SweepResponse)
async def run_escalation_sweep(scheduler: EscalationScheduler = Depends(get_scheduler)) -> SweepResponse:
    escalated = await scheduler.sweep()
    return SweepResponse(escalated=escalated, count=len(escalated))
