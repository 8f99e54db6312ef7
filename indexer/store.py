"""Storage operations over the SQLAlchemy models.

``PathfinderStore`` wraps one session. Callers own the transaction: the crawl
loop commits once per page, the API once per request.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pipelines.errors import JobNotFound, SiteNotFound
from .models import CrawlJob, Embedding, Feedback, Page, PageScore, Site, Snapshot, Summary

logger = logging.getLogger(__name__)

JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_DONE = "done"
JOB_ERROR = "error"


class PathfinderStore:
    """Data access for sites, pages, derived records and jobs."""

    def __init__(self, session: Session):
        self.session = session

    # Sites

    def get_site(self, site_id: str) -> Site:
        site = self.session.get(Site, site_id)
        if site is None:
            raise SiteNotFound(f"Site {site_id} not found")
        return site

    def get_site_by_domain(self, domain: str) -> Optional[Site]:
        return self.session.execute(
            select(Site).where(Site.domain == domain.lower())
        ).scalar_one_or_none()

    def upsert_site(self, domain: str, start_url: Optional[str] = None) -> Site:
        domain = domain.lower()
        site = self.get_site_by_domain(domain)
        if site is None:
            try:
                with self.session.begin_nested():
                    site = Site(domain=domain, start_url=start_url)
                    self.session.add(site)
            except IntegrityError:
                site = self.get_site_by_domain(domain)
                logger.debug(f"Site {domain} created concurrently")
        if start_url:
            site.start_url = start_url
        self.session.flush()
        return site

    def count_pages(self, site_id: str) -> int:
        return self.session.execute(
            select(func.count(Page.id)).where(Page.site_id == site_id)
        ).scalar_one()

    # Pages

    def get_page(self, site_id: str, url_normalized: str) -> Optional[Page]:
        return self.session.execute(
            select(Page).where(Page.site_id == site_id, Page.url_normalized == url_normalized)
        ).scalar_one_or_none()

    def upsert_page(self, site_id: str, url: str, url_normalized: str, *,
                    title: Optional[str], meta_description: Optional[str],
                    content: Optional[str], content_hash: str) -> Page:
        """Create or overwrite the page keyed by ``(site_id, url_normalized)``."""
        fields = dict(
            url=url,
            title=title,
            meta_description=meta_description,
            content=content or None,
            content_hash=content_hash,
            last_crawled_at=datetime.utcnow(),
        )
        page = self.get_page(site_id, url_normalized)
        if page is None:
            try:
                with self.session.begin_nested():
                    page = Page(site_id=site_id, url_normalized=url_normalized, **fields)
                    self.session.add(page)
                return page
            except IntegrityError:
                # Another run inserted the same page; fall through to update it.
                page = self.get_page(site_id, url_normalized)
        for key, value in fields.items():
            setattr(page, key, value)
        self.session.flush()
        return page

    def get_pages(self, page_ids: List[str]) -> List[Page]:
        """Pages by id, in the order of ``page_ids``."""
        if not page_ids:
            return []
        found = {page.id: page for page in self.session.execute(
            select(Page).where(Page.id.in_(page_ids))
        ).scalars()}
        return [found[pid] for pid in page_ids if pid in found]

    def list_pages(self, site_id: str, limit: Optional[int] = None) -> List[Page]:
        """Pages of a site, most recently crawled first."""
        stmt = (select(Page).where(Page.site_id == site_id)
                .order_by(Page.last_crawled_at.desc(), Page.created_at.desc()))
        if limit:
            stmt = stmt.limit(limit)
        return list(self.session.execute(stmt).scalars())

    # Summaries

    def find_summary(self, page_id: str, text_hash: str) -> Optional[Summary]:
        return self.session.execute(
            select(Summary).where(Summary.page_id == page_id, Summary.text_hash == text_hash)
        ).scalar_one_or_none()

    def add_summary(self, page_id: str, text_hash: str, text: str, model: str) -> Summary:
        try:
            with self.session.begin_nested():
                summary = Summary(page_id=page_id, text_hash=text_hash, text=text, model=model)
                self.session.add(summary)
            return summary
        except IntegrityError:
            return self.find_summary(page_id, text_hash)

    def current_summary(self, page: Page) -> Optional[Summary]:
        """Summary for the page's current content, else its newest one."""
        if page.content_hash:
            summary = self.find_summary(page.id, page.content_hash)
            if summary is not None:
                return summary
        return self.session.execute(
            select(Summary).where(Summary.page_id == page.id)
            .order_by(Summary.created_at.desc()).limit(1)
        ).scalar_one_or_none()

    # Snapshots

    def add_snapshot(self, page_id: str, screenshot_path: str) -> Snapshot:
        snapshot = Snapshot(page_id=page_id, screenshot_path=screenshot_path)
        self.session.add(snapshot)
        self.session.flush()
        return snapshot

    def latest_snapshot(self, page_id: str) -> Optional[Snapshot]:
        return self.session.execute(
            select(Snapshot).where(Snapshot.page_id == page_id)
            .order_by(Snapshot.created_at.desc()).limit(1)
        ).scalar_one_or_none()

    # Embeddings

    def replace_embedding(self, page_id: str, content: str, vector: np.ndarray, model: str) -> Embedding:
        """Store a new embedding for the page and drop its older ones."""
        self.session.execute(delete(Embedding).where(Embedding.page_id == page_id))
        embedding = Embedding(page_id=page_id, content=content, vector=Embedding.pack(vector), model=model)
        self.session.add(embedding)
        self.session.flush()
        return embedding

    def vector_candidates(self, site_id: str) -> List[Tuple[Page, Embedding]]:
        """Latest embedding of every embedded page of a site."""
        rows = self.session.execute(
            select(Page, Embedding)
            .join(Embedding, Embedding.page_id == Page.id)
            .where(Page.site_id == site_id)
            .order_by(Page.id, Embedding.created_at.desc())
        ).all()
        latest: Dict[str, Tuple[Page, Embedding]] = {}
        for page, embedding in rows:
            latest.setdefault(page.id, (page, embedding))
        return list(latest.values())

    # Jobs

    def create_job(self, domain: str, start_url: str, max_pages: Optional[int] = None,
                   user_id: Optional[str] = None) -> CrawlJob:
        job = CrawlJob(domain=domain, start_url=start_url, status=JOB_QUEUED,
                       max_pages=max_pages, user_id=user_id)
        self.session.add(job)
        self.session.flush()
        return job

    def find_job(self, job_id: str) -> Optional[CrawlJob]:
        return self.session.get(CrawlJob, job_id)

    def get_job(self, job_id: str) -> CrawlJob:
        job = self.find_job(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    def find_fresh_done_job(self, domain: str, since: datetime) -> Optional[CrawlJob]:
        return self.session.execute(
            select(CrawlJob)
            .where(CrawlJob.domain == domain, CrawlJob.status == JOB_DONE, CrawlJob.created_at >= since)
            .order_by(CrawlJob.created_at.desc()).limit(1)
        ).scalar_one_or_none()

    def mark_running(self, job: CrawlJob):
        now = datetime.utcnow()
        job.status = JOB_RUNNING
        job.started_at = now
        job.heartbeat_at = now
        self.session.flush()

    def heartbeat(self, job: CrawlJob, pages_scanned: int):
        job.pages_scanned = pages_scanned
        job.heartbeat_at = datetime.utcnow()
        self.session.flush()

    def mark_done(self, job: CrawlJob):
        job.status = JOB_DONE
        job.finished_at = datetime.utcnow()
        job.error_code = None
        job.error_message = None
        self.session.flush()

    def mark_error(self, job: CrawlJob, error_code: str, error_message: str):
        job.status = JOB_ERROR
        job.finished_at = datetime.utcnow()
        job.error_code = error_code
        job.error_message = error_message
        self.session.flush()

    def stale_jobs(self, seen_before: datetime) -> List[CrawlJob]:
        """Unfinished jobs whose last heartbeat (or start, or creation) is older than the cutoff."""
        last_seen = func.coalesce(CrawlJob.heartbeat_at, CrawlJob.started_at, CrawlJob.created_at)
        return list(self.session.execute(
            select(CrawlJob).where(CrawlJob.status.in_((JOB_QUEUED, JOB_RUNNING)), last_seen < seen_before)
        ).scalars())

    # Scores and feedback

    def replace_scores(self, job_id: str, scores: Iterable[dict]) -> List[PageScore]:
        """Store ranked scores for a job; ``scores`` must already be in rank order."""
        self.session.execute(delete(PageScore).where(PageScore.job_id == job_id))
        rows = []
        for rank, item in enumerate(scores, start=1):
            row = PageScore(
                job_id=job_id,
                url=item["url"],
                title=(item.get("title") or "")[:512] or None,
                score=float(item["score"]),
                rank=rank,
                reasons=list(item.get("reasons") or [])[:3],
            )
            self.session.add(row)
            rows.append(row)
        self.session.flush()
        return rows

    def job_scores(self, job_id: str) -> List[PageScore]:
        return list(self.session.execute(
            select(PageScore).where(PageScore.job_id == job_id).order_by(PageScore.rank)
        ).scalars())

    def add_feedback(self, job_id: str, landed_url: str, was_correct: bool,
                     chosen_rank: Optional[int] = None, user_id: Optional[str] = None,
                     created_at: Optional[datetime] = None) -> Feedback:
        """Record feedback for an existing job.

        Raises:
            JobNotFound: if the job does not exist; nothing is written.
        """
        self.get_job(job_id)
        feedback = Feedback(job_id=job_id, landed_url=landed_url, was_correct=was_correct,
                            chosen_rank=chosen_rank, user_id=user_id,
                            created_at=created_at or datetime.utcnow())
        self.session.add(feedback)
        self.session.flush()
        return feedback
