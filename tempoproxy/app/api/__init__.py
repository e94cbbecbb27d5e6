"""API endpoints package for the proxy."""

from tempoproxy.app.api.chat import router as chat_router
from tempoproxy.app.api.stats import router as stats_router

__all__ = [
    "chat_router",
    "stats_router",
]
