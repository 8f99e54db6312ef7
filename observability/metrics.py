"""Prometheus metrics for the Pathfinder API and pipelines."""

import logging
import re
import time
from typing import Optional

from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, Info, generate_latest
from prometheus_client.core import CollectorRegistry

logger = logging.getLogger(__name__)

# Custom registry so tests can build several apps without duplicate collectors
pathfinder_registry = CollectorRegistry()

# Request metrics
request_count = Counter(
    'pathfinder_http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=pathfinder_registry
)

request_duration = Histogram(
    'pathfinder_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=pathfinder_registry
)

# Crawl metrics
pages_crawled = Counter(
    'pathfinder_pages_crawled_total',
    'Pages attempted by the crawl loop',
    ['outcome'],
    registry=pathfinder_registry
)

robots_skipped = Counter(
    'pathfinder_robots_skipped_total',
    'URLs skipped because robots.txt disallows them',
    registry=pathfinder_registry
)

summary_cache = Counter(
    'pathfinder_summary_cache_total',
    'Summary lookups by result',
    ['result'],
    registry=pathfinder_registry
)

# Provider metrics
embedding_fallbacks = Counter(
    'pathfinder_embedding_fallbacks_total',
    'Embeddings produced by the fallback provider after a primary failure',
    registry=pathfinder_registry
)

llm_fallbacks = Counter(
    'pathfinder_llm_fallbacks_total',
    'Language model calls answered by the extractive fallback',
    ['operation'],
    registry=pathfinder_registry
)

# Query metrics
query_requests = Counter(
    'pathfinder_query_requests_total',
    'Query requests by retrieval mode',
    ['mode'],
    registry=pathfinder_registry
)

query_duration = Histogram(
    'pathfinder_query_duration_seconds',
    'End-to-end query duration in seconds',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=pathfinder_registry
)

# Job metrics
jobs_finished = Counter(
    'pathfinder_jobs_finished_total',
    'Analyze jobs reaching a terminal status',
    ['status'],
    registry=pathfinder_registry
)

jobs_reaped = Counter(
    'pathfinder_jobs_reaped_total',
    'Orphaned running jobs moved to error by the reaper',
    registry=pathfinder_registry
)

app_info = Info(
    'pathfinder_app_info',
    'Pathfinder application information',
    registry=pathfinder_registry
)

_UUID = re.compile(r'/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}')
_NUMERIC = re.compile(r'/\d+')


def normalize_endpoint(path: str) -> str:
    """Collapse ids in ``path`` to keep label cardinality bounded."""
    path = _UUID.sub('/{uuid}', path)
    return _NUMERIC.sub('/{id}', path)


class PrometheusMiddleware:
    """ASGI middleware recording request count and duration."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        method = request.method
        endpoint = normalize_endpoint(request.url.path)
        start_time = time.time()
        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            request_count.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()
            request_duration.labels(method=method, endpoint=endpoint).observe(time.time() - start_time)


def setup_prometheus_metrics(app: FastAPI, version: Optional[str] = None) -> None:
    """Install the request middleware and the ``/metrics`` endpoint on ``app``."""
    app.add_middleware(PrometheusMiddleware)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint():
        return Response(content=generate_latest(pathfinder_registry), media_type=CONTENT_TYPE_LATEST)

    app_info.info({'version': version or 'unknown'})
    logger.info("Prometheus metrics configured")


def record_query(mode: str, duration: float) -> None:
    query_requests.labels(mode=mode).inc()
    query_duration.observe(duration)
