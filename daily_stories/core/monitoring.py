from prometheus_client import Counter, Histogram, Info
import logging
import time
from fastapi import Request

logger = logging.getLogger(__name__)

# Metrics
REQUESTS_TOTAL = Counter(
    'api_requests_total',
    'Total number of API requests',
    ['method', 'endpoint', 'status']
)

REQUEST_LATENCY = Histogram(
    'api_request_latency_seconds',
    'Request latency in seconds',
    ['method', 'endpoint']
)

ENGAGEMENT_EVENTS = Counter(
    'engagement_events_total',
    'Engagement events handled by the ingestion services',
    ['event', 'outcome']
)

AGGREGATE_RECOMPUTES = Counter(
    'rating_aggregate_recomputes_total',
    'Rating aggregate refreshes',
    ['mode']
)

CACHE_REQUESTS = Counter(
    'cache_requests_total',
    'Cache lookups by result',
    ['result']
)

SYSTEM_INFO = Info('api_system', 'API system information')


def record_event(event: str, outcome: str = "recorded"):
    ENGAGEMENT_EVENTS.labels(event=event, outcome=outcome).inc()


def log_request(method: str, endpoint: str, status_code: int, duration: float):
    """Log request metrics"""
    REQUESTS_TOTAL.labels(
        method=method,
        endpoint=endpoint,
        status=status_code
    ).inc()

    REQUEST_LATENCY.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration)

    logger.info(f"Request: {method} {endpoint} {status_code} {duration:.3f}s")


async def monitor_requests(request: Request, call_next):
    """HTTP middleware recording request count and latency."""
    start_time = time.time()
    try:
        response = await call_next(request)
    except Exception:
        log_request(request.method, request.url.path, 500, time.time() - start_time)
        raise
    # Templated route path keeps label cardinality bounded
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    log_request(request.method, endpoint, response.status_code, time.time() - start_time)
    return response


def set_system_info(version: str, environment: str):
    """Set system information metrics"""
    SYSTEM_INFO.info({
        'version': version,
        'environment': environment
    })
