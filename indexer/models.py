"""Relational models for sites, pages and their derived records."""

import uuid
from datetime import datetime

import numpy as np
from sqlalchemy import (Boolean, Column, DateTime, Float, ForeignKey, Index, Integer,
                        JSON, LargeBinary, String, Text, UniqueConstraint)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

EMBEDDING_DIM = 384


def _uuid() -> str:
    return str(uuid.uuid4())


class Site(Base):
    """A crawlable website identified by its domain."""
    __tablename__ = 'sites'

    id = Column(String(36), primary_key=True, default=_uuid)
    domain = Column(String(255), nullable=False, unique=True)
    start_url = Column(String(2048), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    pages = relationship("Page", back_populates="site", cascade="all, delete-orphan", passive_deletes=True)


class Page(Base):
    """One crawled URL of a site, unique per normalized URL."""
    __tablename__ = 'pages'

    id = Column(String(36), primary_key=True, default=_uuid)
    site_id = Column(String(36), ForeignKey('sites.id', ondelete='CASCADE'), nullable=False)
    url = Column(String(2048), nullable=False)
    url_normalized = Column(String(2048), nullable=False)
    title = Column(String(1024), nullable=True)
    meta_description = Column(Text, nullable=True)
    content = Column(Text, nullable=True)
    content_hash = Column(String(64), nullable=True)
    last_crawled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    site = relationship("Site", back_populates="pages")
    snapshots = relationship("Snapshot", back_populates="page", cascade="all, delete-orphan", passive_deletes=True)
    summaries = relationship("Summary", back_populates="page", cascade="all, delete-orphan", passive_deletes=True)
    embeddings = relationship("Embedding", back_populates="page", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        UniqueConstraint('site_id', 'url_normalized', name='uq_pages_site_url'),
        Index('idx_pages_site_crawled', 'site_id', 'last_crawled_at'),
    )


class Snapshot(Base):
    """Screenshot captured on one crawl of a page. Append-only."""
    __tablename__ = 'snapshots'

    id = Column(String(36), primary_key=True, default=_uuid)
    page_id = Column(String(36), ForeignKey('pages.id', ondelete='CASCADE'), nullable=False)
    screenshot_path = Column(String(1024), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    page = relationship("Page", back_populates="snapshots")

    __table_args__ = (
        Index('idx_snapshots_page_created', 'page_id', 'created_at'),
    )


class Summary(Base):
    """Summary of a page's content, cached by content hash."""
    __tablename__ = 'summaries'

    id = Column(String(36), primary_key=True, default=_uuid)
    page_id = Column(String(36), ForeignKey('pages.id', ondelete='CASCADE'), nullable=False)
    text_hash = Column(String(64), nullable=False)
    text = Column(Text, nullable=False)
    model = Column(String(100), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    page = relationship("Page", back_populates="summaries")

    __table_args__ = (
        UniqueConstraint('page_id', 'text_hash', name='uq_summaries_page_hash'),
    )


class Embedding(Base):
    """Fixed-dimension vector of a page's composite text, stored as float32 bytes."""
    __tablename__ = 'embeddings'

    id = Column(String(36), primary_key=True, default=_uuid)
    page_id = Column(String(36), ForeignKey('pages.id', ondelete='CASCADE'), nullable=False)
    content = Column(Text, nullable=False)
    vector = Column(LargeBinary, nullable=False)
    model = Column(String(100), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    page = relationship("Page", back_populates="embeddings")

    __table_args__ = (
        Index('idx_embeddings_page_created', 'page_id', 'created_at'),
    )

    def as_array(self) -> np.ndarray:
        return np.frombuffer(self.vector, dtype=np.float32)

    @staticmethod
    def pack(vector) -> bytes:
        return np.asarray(vector, dtype=np.float32).tobytes()


class CrawlJob(Base):
    """Background analyze job over one domain."""
    __tablename__ = 'crawl_jobs'

    id = Column(String(36), primary_key=True, default=_uuid)
    domain = Column(String(255), nullable=False)
    start_url = Column(String(2048), nullable=False)
    status = Column(String(20), nullable=False, default='queued')
    max_pages = Column(Integer, nullable=True)
    user_id = Column(String(255), nullable=True)
    pages_scanned = Column(Integer, nullable=False, default=0)
    error_code = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    heartbeat_at = Column(DateTime, nullable=True)

    scores = relationship("PageScore", back_populates="job", cascade="all, delete-orphan",
                          order_by="PageScore.rank", passive_deletes=True)

    __table_args__ = (
        Index('idx_crawl_jobs_domain_status', 'domain', 'status', 'created_at'),
    )


class PageScore(Base):
    """One ranked result of a job."""
    __tablename__ = 'page_scores'

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), ForeignKey('crawl_jobs.id', ondelete='CASCADE'), nullable=False)
    url = Column(String(2048), nullable=False)
    title = Column(String(512), nullable=True)
    score = Column(Float, nullable=False)
    rank = Column(Integer, nullable=False)
    reasons = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    job = relationship("CrawlJob", back_populates="scores")

    __table_args__ = (
        UniqueConstraint('job_id', 'rank', name='uq_page_scores_job_rank'),
    )


class Feedback(Base):
    """Whether a landed result was what the user wanted."""
    __tablename__ = 'feedback'

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), ForeignKey('crawl_jobs.id', ondelete='CASCADE'), nullable=False)
    landed_url = Column(String(2048), nullable=False)
    was_correct = Column(Boolean, nullable=False)
    chosen_rank = Column(Integer, nullable=True)
    user_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
