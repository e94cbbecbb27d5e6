"""Monitoring endpoints for the proxy."""

from typing import Any, Dict

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health(request: Request) -> Dict[str, Any]:
    """Health check with admission queue and session cache status."""
    state = request.app.state
    queue_status = state.request_queue.get_status()
    return {
        "status": "ok",
        "components": {
            "queue": {
                "pending": queue_status.pending,
                "active": queue_status.active,
                "max_concurrent": state.request_queue.get_config().max_concurrent,
            },
            "session": state.session_cache.get_status(),
        },
    }


@router.get("/stats")
async def stats(request: Request) -> Dict[str, Any]:
    """Usage statistics since startup, with queue and rate limit state."""
    state = request.app.state
    limiter_config = state.rate_limiter.get_config()
    summary = state.stats.get_stats()
    summary["queue"] = state.request_queue.get_stats()
    summary["rate_limit"] = {
        "enabled": limiter_config.enabled,
        "window_ms": limiter_config.window_ms,
        "max_requests": limiter_config.max_requests,
        "tracked_clients": state.rate_limiter.tracked_clients(),
    }
    return summary
