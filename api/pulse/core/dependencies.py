from fastapi import Request

from pulse.services.collector import EventCollector
from pulse.services.rate_limit import RateLimiter


def get_rate_limiter(request: Request) -> RateLimiter:
    """Process-wide limiter created in the application lifespan."""
    return request.app.state.rate_limiter


def get_collector(request: Request) -> EventCollector:
    return request.app.state.collector
