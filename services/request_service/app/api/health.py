from fastapi import APIRouter, Request, status

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", status_code=status.HTTP_200_OK)
async def healthcheck(request: Request) -> dict[str, object]:
    """Return a simple health status payload."""

    scheduler = getattr(request.app.state, "escalation_scheduler", None)
    return {
        "status": "ok",
        "escalationSweepRunning": bool(scheduler is not None and scheduler.running),
    }
