"""Administrative API endpoints."""
from fastapi import APIRouter, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter()


@router.get("/health", summary="Health check")
async def admin_health(request: Request) -> dict[str, object]:
    """Report liveness and the number of open change-feed subscriptions."""
    return {"status": "ok", "subscriptions": request.app.state.feed.subscription_count}


@router.get("/metrics", summary="Prometheus metrics feed")
async def admin_metrics() -> Response:
    """Expose Prometheus-formatted metrics for scraping."""

    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
