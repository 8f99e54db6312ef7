"""Pathfinder HTTP API.

Sites, crawling (batch and server-sent events), question answering over a
crawled site, and the job-oriented analyze API used by the browser
extension.
"""

import asyncio
import datetime
import json
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from config.database import init_db, session_scope
from config.settings import Settings, get_settings
from indexer.embeddings import build_embedding_provider
from indexer.llm import build_language_model
from indexer.retrieval import RetrievalPipeline
from indexer.store import PathfinderStore
from observability.logging import current_request_id, new_request_id, setup_logging_from_settings
from observability.metrics import setup_prometheus_metrics
from pipelines.crawler import SiteCrawler, build_crawler, validate_start_url
from pipelines.errors import JobNotFound, PathfinderError
from pipelines.urls import extract_domain, normalize_url
from server.jobs import JobManager, job_status, results_advance, results_head
from server.schemas import (
    AdvanceRequest, AdvanceResponse, AnalyzeRequest, AnalyzeResponse, CheckRequest, CheckResponse,
    CrawlRequest, CrawlResponse, FeedbackRequest, FeedbackResponse, HeadResponse,
    JobStatusResponse, QueryRequest, QueryResponse, SitePage, SitePagesResponse,
    SiteRequest, SiteResponse,
)
from server.security.rate_limiting import analyze_rate_limit, setup_rate_limiting

logger = logging.getLogger(__name__)

__version__ = "0.3.0"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def error_response(status_code: int, error_code: str, error_message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error_code": error_code,
            "error_message": error_message,
            "request_id": current_request_id(),
        },
    )


def naive_utc(value: datetime.datetime) -> datetime.datetime:
    """Naive UTC datetime; naive input is taken to be UTC already."""
    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc)
    return value.replace(tzinfo=None)


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


async def event_stream(events, keepalive_seconds: float):
    """Serialize crawl events as SSE frames, sending a comment while idle."""
    pending = None
    try:
        while True:
            if pending is None:
                pending = asyncio.ensure_future(events.__anext__())
            done, _ = await asyncio.wait({pending}, timeout=keepalive_seconds)
            if not done:
                yield ":\n\n"
                continue
            try:
                event = pending.result()
            except StopAsyncIteration:
                pending = None
                break
            pending = None
            yield sse_format(event)
    finally:
        if pending is not None and not pending.done():
            pending.cancel()
            await asyncio.gather(pending, return_exceptions=True)
        await events.aclose()


def install_error_handlers(app: FastAPI):
    """Map exceptions to the ``{error_code, error_message, request_id}`` envelope."""

    @app.exception_handler(PathfinderError)
    async def pathfinder_error_handler(request: Request, exc: PathfinderError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return error_response(exc.status_code, exc.error_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = "; ".join(
            f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}"
            for err in exc.errors()
        )
        return error_response(400, "INVALID_REQUEST", details or "Invalid request")

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        code = "INTERNAL_ERROR" if exc.status_code >= 500 else "INVALID_REQUEST"
        return error_response(exc.status_code, code, str(exc.detail))

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error(f"Database error on {request.url.path}: {exc}", exc_info=True)
        return error_response(500, "INTERNAL_ERROR", "Database error")

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=True)
        return error_response(500, "INTERNAL_ERROR", "Internal server error")


router = APIRouter()


@router.get("/health")
async def health():
    return {"status": "ok", "time": datetime.datetime.utcnow().isoformat() + "Z"}


# Sites and crawling

@router.post("/site", response_model=SiteResponse)
def create_site(req: SiteRequest):
    domain = req.domain.strip().lower()
    start_url = validate_start_url(domain, req.start_url) if req.start_url else None
    with session_scope() as session:
        site = PathfinderStore(session).upsert_site(domain, start_url)
        return SiteResponse(id=site.id, domain=site.domain, startUrl=site.start_url,
                            createdAt=site.created_at)


@router.get("/site/{site_id}/pages", response_model=SitePagesResponse)
def site_pages(site_id: str):
    """Pages of a site with their current summary and latest snapshot."""
    with session_scope() as session:
        store = PathfinderStore(session)
        site = store.get_site(site_id)
        pages = []
        for page in store.list_pages(site_id):
            summary = store.current_summary(page)
            snapshot = store.latest_snapshot(page.id)
            pages.append(SitePage(
                id=page.id,
                url=page.url,
                title=page.title,
                summary=summary.text if summary else None,
                screenshotUrl=snapshot.screenshot_path if snapshot else None,
                lastCrawledAt=page.last_crawled_at,
            ))
        return SitePagesResponse(siteId=site.id, domain=site.domain, pages=pages)


def resolve_start_url(site_id: str, start_url: str) -> str:
    """Normalized start URL after checking it belongs to the site's domain."""
    with session_scope() as session:
        site = PathfinderStore(session).get_site(site_id)
        return validate_start_url(site.domain, start_url)


@router.post("/crawl", response_model=CrawlResponse, response_model_exclude_none=True)
async def crawl(request: Request, req: CrawlRequest):
    """Crawl a site to completion and report the outcome of every page."""
    start = resolve_start_url(req.site_id, req.start_url)
    crawled = []

    def collect(event):
        if event["type"] == "page":
            crawled.append({"url": event["url"], "ok": event["ok"], "reason": event.get("reason")})

    state = request.app.state
    await state.crawler_factory(state.settings).crawl(req.site_id, start, on_event=collect)
    return {"crawled": crawled}


@router.get("/crawl/stream")
async def crawl_stream(request: Request,
                       site_id: str = Query(..., alias="siteId"),
                       start_url: str = Query(..., alias="startUrl")):
    """Crawl a site, streaming progress as server-sent events."""
    start = resolve_start_url(site_id, start_url)
    state = request.app.state
    crawler = state.crawler_factory(state.settings)
    return StreamingResponse(
        event_stream(crawler.stream(site_id, start), state.settings.stream_keepalive_seconds),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


# Question answering

@router.post("/query", response_model=QueryResponse)
async def query(request: Request, req: QueryRequest):
    result = await request.app.state.retrieval.query(req.site_id, req.question, rerank=req.rerank)
    return {"answer": result.answer, "sources": [source.to_dict() for source in result.sources]}


# Job-oriented analyze API

@router.post("/api/v1/analyze", response_model=AnalyzeResponse)
@analyze_rate_limit()
async def analyze(request: Request, req: AnalyzeRequest):
    """Return fresh cached results for the domain or start a crawl job."""
    return request.app.state.jobs.analyze(req.start_url, domain_limit=req.domain_limit,
                                          user_id=req.user_id, max_pages=req.max_pages)


@router.get("/api/v1/jobs/{job_id}/status", response_model=JobStatusResponse,
            response_model_exclude_none=True)
def get_job_status(job_id: str):
    with session_scope() as session:
        return job_status(PathfinderStore(session), job_id)


@router.get("/api/v1/results/head", response_model=HeadResponse)
def get_results_head(job_id: str):
    with session_scope() as session:
        head = results_head(PathfinderStore(session), job_id)
    if head is None:
        raise JobNotFound(f"No results found for job {job_id}")
    return head


@router.post("/api/v1/results/advance", response_model=AdvanceResponse)
def advance_results(req: AdvanceRequest):
    with session_scope() as session:
        return results_advance(PathfinderStore(session), req.job_id, req.consumed_url)


@router.post("/api/v1/feedback", response_model=FeedbackResponse)
def submit_feedback(req: FeedbackRequest):
    with session_scope() as session:
        PathfinderStore(session).add_feedback(
            req.job_id, req.landed_url, req.was_correct,
            chosen_rank=req.chosen_rank,
            user_id=req.user_id,
            created_at=naive_utc(req.timestamp),
        )
    logger.info(f"Feedback recorded for job {req.job_id} (correct={req.was_correct})")
    return {"ok": True}


@router.post("/api/v1/check", response_model=CheckResponse)
def check_domain(req: CheckRequest):
    """Whether the URL's domain already has indexed pages."""
    domain = extract_domain(normalize_url(req.url))
    with session_scope() as session:
        store = PathfinderStore(session)
        site = store.get_site_by_domain(domain)
        if site is None:
            return CheckResponse(exists=False, domain=domain, message=f"No index found for {domain}")
        count = store.count_pages(site.id)
        return CheckResponse(exists=count > 0, domain=domain, siteId=site.id, pageCount=count,
                             message=f"Found {count} indexed pages for {domain}")


def create_app(settings: Optional[Settings] = None,
               crawler_factory: Callable[[Settings], SiteCrawler] = build_crawler,
               retrieval: Optional[RetrievalPipeline] = None,
               jobs: Optional[JobManager] = None) -> FastAPI:
    """Build the API application.

    The crawler factory, the retrieval pipeline and the job manager can be
    injected; by default they are built from ``settings``.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging_from_settings(settings, service_name="pathfinder-api")
        init_db(settings.database_url)
        await app.state.jobs.initialize()
        logger.info(f"Pathfinder API {__version__} started")
        try:
            yield
        finally:
            await app.state.jobs.shutdown()
            logger.info("Pathfinder API stopped")

    app = FastAPI(title="Pathfinder API", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.crawler_factory = crawler_factory
    app.state.retrieval = retrieval or RetrievalPipeline(
        build_embedding_provider(settings),
        build_language_model(settings),
        top_n=settings.top_n,
    )
    app.state.jobs = jobs or JobManager(settings, crawler_factory=crawler_factory)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = new_request_id()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    install_error_handlers(app)
    setup_prometheus_metrics(app, version=__version__)
    setup_rate_limiting(app)
    app.include_router(router)
    return app


app = create_app()
