"""Background analyze jobs for Pathfinder.

Each job crawls one domain as an ``asyncio.Task`` with a cancellation token,
ranks the crawled pages and always ends in ``done`` or ``error``. An
APScheduler interval job moves orphaned jobs (no heartbeat for the stale
threshold, e.g. after a process restart) to ``error``.
"""

import asyncio
import logging
from contextlib import AbstractContextManager
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.exc import SQLAlchemyError

from config.database import session_scope
from config.settings import Settings
from indexer.models import PageScore
from indexer.store import JOB_DONE, JOB_RUNNING, PathfinderStore
from observability.metrics import jobs_finished, jobs_reaped
from pipelines.crawler import CrawlEvent, SiteCrawler, build_crawler
from pipelines.errors import DisallowedDomain, JobNotReady, PathfinderError
from pipelines.scoring import rank_pages
from pipelines.urls import extract_domain, is_within_domain_limit, normalize_url

logger = logging.getLogger(__name__)

REAPER_JOB_ID = "reap-orphaned-jobs"


def ranked_page(score: PageScore) -> dict:
    """Public representation of one ranked result."""
    return {
        "url": score.url,
        "title": score.title or "Untitled",
        "score": score.score,
        "rank": score.rank,
        "reasons": list(score.reasons or []),
        "updated_at": score.updated_at,
    }


def head_of(scores: List[PageScore]) -> dict:
    return {
        "top": ranked_page(scores[0]),
        "next": ranked_page(scores[1]) if len(scores) > 1 else None,
        "remaining": max(0, len(scores) - 2),
    }


def job_status(store: PathfinderStore, job_id: str) -> dict:
    """Status of a job with progress while it runs."""
    job = store.get_job(job_id)
    status = {"status": job.status}
    if job.status == JOB_RUNNING:
        status["progress"] = {"pages_scanned": job.pages_scanned or 0, "pages_total_est": job.max_pages}
    if job.status == "error":
        status["error_code"] = job.error_code or "CRAWL_FAILURE"
        status["error_message"] = job.error_message or "Crawling failed"
    return status


def results_head(store: PathfinderStore, job_id: str) -> Optional[dict]:
    """Top two results of a finished job, ``None`` when it ranked nothing.

    Raises:
        JobNotFound: unknown job.
        JobNotReady: the job has not finished successfully.
    """
    job = store.get_job(job_id)
    if job.status != JOB_DONE:
        raise JobNotReady(f"Job not completed, status: {job.status}")
    scores = store.job_scores(job_id)
    if not scores:
        return None
    return head_of(scores)


def results_advance(store: PathfinderStore, job_id: str, consumed_url: str) -> dict:
    """Result ranked right after ``consumed_url``."""
    job = store.get_job(job_id)
    if job.status != JOB_DONE:
        raise JobNotReady(f"Job not completed, status: {job.status}")
    scores = store.job_scores(job_id)
    consumed = next((s for s in scores if s.url == consumed_url), None)
    if consumed is None:
        raise JobNotReady("Consumed URL not found in results")
    following = next((s for s in scores if s.rank == consumed.rank + 1), None)
    return {
        "next": ranked_page(following) if following else None,
        "remaining": max(0, len(scores) - (consumed.rank + 1)),
    }


class JobManager:
    """Runs analyze jobs in the API process and reaps orphans."""

    def __init__(self, settings: Settings,
                 crawler_factory: Callable[[Settings], SiteCrawler] = build_crawler,
                 session_factory: Callable[[], AbstractContextManager] = session_scope):
        self.settings = settings
        self.crawler_factory = crawler_factory
        self.session_factory = session_factory
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_tokens: Dict[str, asyncio.Event] = {}

    async def initialize(self):
        """Sweep orphans left by a previous process and start the periodic reaper."""
        await self.reap_orphans()
        self.scheduler = AsyncIOScheduler(
            executors={'default': AsyncIOExecutor()},
            job_defaults={'coalesce': True, 'max_instances': 1},
        )
        self.scheduler.add_job(
            self.reap_orphans,
            'interval',
            seconds=self.settings.reaper_interval_seconds,
            id=REAPER_JOB_ID,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Job manager started (reaper every {self.settings.reaper_interval_seconds}s)")

    async def shutdown(self):
        """Stop the reaper and cancel running jobs."""
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.scheduler = None
        for token in self._cancel_tokens.values():
            token.set()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Job manager shut down")

    @property
    def active_jobs(self) -> List[str]:
        return [job_id for job_id, task in self._tasks.items() if not task.done()]

    def analyze(self, start_url: str, domain_limit: Optional[str] = None,
                user_id: Optional[str] = None, max_pages: Optional[int] = None) -> dict:
        """Return cached results for a fresh finished job, or start a new one.

        Raises:
            MalformedURL: invalid ``start_url``.
            DisallowedDomain: ``start_url`` outside ``domain_limit``.
        """
        normalized = normalize_url(start_url)
        domain = extract_domain(normalized)
        if not is_within_domain_limit(normalized, domain_limit):
            raise DisallowedDomain(f"URL domain not within limit: {domain_limit}")

        since = datetime.utcnow() - timedelta(minutes=self.settings.job_freshness_minutes)
        with self.session_factory() as session:
            store = PathfinderStore(session)
            fresh = store.find_fresh_done_job(domain, since)
            if fresh is not None:
                scores = store.job_scores(fresh.id)
                if scores:
                    logger.info(f"Returning cached results of job {fresh.id} for {domain}")
                    return {"mode": "cached", "job_id": fresh.id, **head_of(scores)}

            site = store.get_site_by_domain(domain) or store.upsert_site(domain, normalized)
            job = store.create_job(domain, normalized, max_pages=max_pages, user_id=user_id)
            job_id, site_id = job.id, site.id

        self.launch(job_id, site_id, normalized, max_pages)
        return {"mode": "started", "job_id": job_id, "eta_sec": self.settings.eta_seconds}

    def launch(self, job_id: str, site_id: str, start_url: str, max_pages: Optional[int] = None) -> asyncio.Task:
        """Start the crawl task of a queued job."""
        token = asyncio.Event()
        task = asyncio.create_task(self._run(job_id, site_id, start_url, max_pages, token))
        self._tasks[job_id] = task
        self._cancel_tokens[job_id] = token

        def _forget(_):
            self._tasks.pop(job_id, None)
            self._cancel_tokens.pop(job_id, None)

        task.add_done_callback(_forget)
        logger.info(f"Job {job_id} started for {start_url}")
        return task

    def cancel(self, job_id: str) -> bool:
        """Ask a running job to stop before its next page."""
        token = self._cancel_tokens.get(job_id)
        if token is None:
            return False
        token.set()
        return True

    async def wait(self, job_id: str):
        """Wait for a job task started by this manager, if any."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _run(self, job_id: str, site_id: str, start_url: str,
                   max_pages: Optional[int], token: asyncio.Event):
        page_ids: List[str] = []
        try:
            with self.session_factory() as session:
                store = PathfinderStore(session)
                store.mark_running(store.get_job(job_id))

            def on_event(event: CrawlEvent):
                if event["type"] != "page":
                    return
                if event["ok"]:
                    page_ids.append(event["pageId"])
                with self.session_factory() as session:
                    store = PathfinderStore(session)
                    store.heartbeat(store.get_job(job_id), len(page_ids))

            crawler = self.crawler_factory(self.settings)
            stats = await crawler.crawl(site_id, start_url, on_event=on_event, cancel=token,
                                        max_pages=max_pages)
            if stats.cancelled:
                self._mark_error(job_id, "CRAWL_FAILURE", "Crawl cancelled")
                return

            with self.session_factory() as session:
                store = PathfinderStore(session)
                pages = [{"url": p.url, "title": p.title, "content": p.content}
                         for p in store.get_pages(page_ids)]
                store.replace_scores(job_id, rank_pages(pages, start_url))
                store.mark_done(store.get_job(job_id))
            jobs_finished.labels(status=JOB_DONE).inc()
            logger.info(f"Job {job_id} done: {len(page_ids)} pages ranked")

        except asyncio.CancelledError:
            self._mark_error(job_id, "CRAWL_FAILURE", "Crawl cancelled")
            raise
        except PathfinderError as e:
            logger.error(f"Job {job_id} failed: {e.message}")
            self._mark_error(job_id, e.error_code, f"Crawling failed: {e.message}")
        except Exception as e:
            logger.error(f"Job {job_id} failed: {e}", exc_info=True)
            self._mark_error(job_id, "CRAWL_FAILURE", f"Crawling failed: {e}")

    def _mark_error(self, job_id: str, error_code: str, error_message: str):
        try:
            with self.session_factory() as session:
                store = PathfinderStore(session)
                job = store.find_job(job_id)
                if job is not None and job.status != JOB_DONE:
                    store.mark_error(job, error_code, error_message)
        except SQLAlchemyError as e:
            # The reaper moves the job to error once its heartbeat goes stale.
            logger.error(f"Could not record failure of job {job_id}: {e}")
            return
        jobs_finished.labels(status="error").inc()

    async def reap_orphans(self) -> int:
        """Move unfinished jobs with a stale heartbeat to ``error``.

        Must run on the event loop that owns the job tasks.
        """
        cutoff = datetime.utcnow() - timedelta(minutes=self.settings.stale_job_minutes)
        active = set(self.active_jobs)
        reaped = 0
        with self.session_factory() as session:
            store = PathfinderStore(session)
            for job in store.stale_jobs(cutoff):
                if job.id in active:
                    continue
                store.mark_error(job, "CRAWL_TIMEOUT", "Job abandoned: no progress reported")
                reaped += 1
        if reaped:
            jobs_reaped.inc(reaped)
            logger.warning(f"Reaped {reaped} orphaned job(s)")
        return reaped
