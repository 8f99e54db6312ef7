"""Request and response models for the Pathfinder API."""

from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# Sites and crawling

class SiteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    domain: str = Field(..., min_length=1, max_length=255)
    start_url: Optional[str] = Field(default=None, alias="startUrl")


class SiteResponse(BaseModel):
    id: str
    domain: str
    startUrl: Optional[str] = None
    createdAt: datetime


class SitePage(BaseModel):
    id: str
    url: str
    title: Optional[str] = None
    summary: Optional[str] = None
    screenshotUrl: Optional[str] = None
    lastCrawledAt: Optional[datetime] = None


class SitePagesResponse(BaseModel):
    siteId: str
    domain: str
    pages: List[SitePage]


class CrawlRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    site_id: str = Field(..., alias="siteId")
    start_url: str = Field(..., alias="startUrl")


class CrawledPage(BaseModel):
    url: str
    ok: bool
    reason: Optional[str] = None


class CrawlResponse(BaseModel):
    crawled: List[CrawledPage]


# Query

class QueryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    site_id: str = Field(..., alias="siteId")
    question: str = Field(..., min_length=1, max_length=2000)
    rerank: bool = False


class QuerySource(BaseModel):
    url: str
    title: Optional[str] = None
    snippet: Optional[str] = None
    screenshotUrl: Optional[str] = None
    similarity: float
    distance: Optional[float] = None


class QueryResponse(BaseModel):
    answer: Optional[str] = None
    sources: List[QuerySource]


# Job-oriented analyze API

class RankedPage(BaseModel):
    url: str
    title: str = Field(..., max_length=512)
    score: float = Field(..., ge=0, le=1)
    rank: int = Field(..., ge=1)
    reasons: List[str] = Field(default_factory=list)
    updated_at: datetime


class AnalyzeRequest(BaseModel):
    start_url: str = Field(..., min_length=1)
    domain_limit: Optional[str] = None
    user_id: Optional[str] = None
    max_pages: Optional[int] = Field(default=None, gt=0)


class CachedResponse(BaseModel):
    mode: Literal["cached"] = "cached"
    job_id: str
    top: RankedPage
    next: Optional[RankedPage] = None
    remaining: int = Field(..., ge=0)


class StartedResponse(BaseModel):
    mode: Literal["started"] = "started"
    job_id: str
    eta_sec: int = Field(..., ge=0)


AnalyzeResponse = Union[CachedResponse, StartedResponse]


class JobProgress(BaseModel):
    pages_scanned: int = Field(..., ge=0)
    pages_total_est: Optional[int] = None


class JobStatusResponse(BaseModel):
    status: Literal["queued", "running", "done", "error"]
    progress: Optional[JobProgress] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class HeadResponse(BaseModel):
    top: RankedPage
    next: Optional[RankedPage] = None
    remaining: int = Field(..., ge=0)


class AdvanceRequest(BaseModel):
    job_id: str
    consumed_url: str


class AdvanceResponse(BaseModel):
    next: Optional[RankedPage] = None
    remaining: int = Field(..., ge=0)


class FeedbackRequest(BaseModel):
    job_id: str
    landed_url: str
    was_correct: bool
    chosen_rank: Optional[int] = Field(default=None, gt=0)
    user_id: Optional[str] = None
    timestamp: datetime


class FeedbackResponse(BaseModel):
    ok: Literal[True] = True


class CheckRequest(BaseModel):
    url: str = Field(..., min_length=1)


class CheckResponse(BaseModel):
    exists: bool
    domain: str
    siteId: Optional[str] = None
    pageCount: int = 0
    message: str
