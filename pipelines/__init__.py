"""Pipelines package for Pathfinder.

Provides URL handling, robots policy, the crawl frontier, page fetching and
content extraction. The crawl loop itself lives in ``pipelines.crawler``.
"""

from .errors import (
    PathfinderError,
    MalformedURL,
    FetchError,
    SiteNotFound,
    DisallowedDomain,
    StartUrlMismatch,
    JobNotFound,
    JobNotReady,
)
from .urls import normalize_url, same_origin, origin_of, extract_domain, is_within_domain_limit
from .policy import RobotsPolicy
from .frontier import Frontier
from .extract import ExtractedContent, extract_main_content, build_summary, build_embedding_text
from .fetcher import FetchedPage, PageFetcher, HttpFetcher, BrowserFetcher, open_fetcher

__all__ = [
    # Errors
    'PathfinderError',
    'MalformedURL',
    'FetchError',
    'SiteNotFound',
    'DisallowedDomain',
    'StartUrlMismatch',
    'JobNotFound',
    'JobNotReady',

    # URLs and policy
    'normalize_url',
    'same_origin',
    'origin_of',
    'extract_domain',
    'is_within_domain_limit',
    'RobotsPolicy',
    'Frontier',

    # Fetching and extraction
    'ExtractedContent',
    'extract_main_content',
    'build_summary',
    'build_embedding_text',
    'FetchedPage',
    'PageFetcher',
    'HttpFetcher',
    'BrowserFetcher',
    'open_fetcher',
]
