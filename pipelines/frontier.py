"""URL frontier for a single crawl run."""

import logging
from collections import deque
from typing import Deque, List, Optional, Set

from .errors import MalformedURL
from .policy import RobotsPolicy
from .urls import normalize_url

logger = logging.getLogger(__name__)

DEFAULT_PAGE_BUDGET = 200


class Frontier:
    """FIFO queue of pending URLs with a visited set and a page budget.

    Every URL is normalized before it is queued, so a page is never fetched
    twice in one run. URLs disallowed by robots.txt are recorded in
    ``skipped`` and do not consume the budget.
    """

    def __init__(self, budget: int = DEFAULT_PAGE_BUDGET, robots: Optional[RobotsPolicy] = None):
        if budget < 1:
            raise ValueError("budget must be positive")
        self.budget = budget
        self.robots = robots or RobotsPolicy.allow_all()
        self._pending: Deque[str] = deque()
        self._queued: Set[str] = set()
        self.visited: Set[str] = set()
        self.skipped: List[str] = []
        self.fetched = 0

    def __len__(self) -> int:
        return len(self._pending)

    def enqueue(self, url: str) -> bool:
        """Queue ``url`` unless it is malformed, already visited or already queued."""
        try:
            normalized = normalize_url(url)
        except MalformedURL:
            logger.debug(f"Dropping malformed URL: {url!r}")
            return False
        if normalized in self.visited or normalized in self._queued:
            return False
        self._pending.append(normalized)
        self._queued.add(normalized)
        return True

    def next(self) -> Optional[str]:
        """Pop the oldest pending URL and mark it visited."""
        if not self._pending:
            return None
        url = self._pending.popleft()
        self._queued.discard(url)
        self.visited.add(url)
        return url

    def is_allowed(self, url: str) -> bool:
        if self.robots.is_allowed(url):
            return True
        self.skipped.append(url)
        return False

    def record_fetch(self):
        """Count one attempted page (successful or failed) against the budget."""
        self.fetched += 1

    @property
    def budget_exhausted(self) -> bool:
        return self.fetched >= self.budget

    @property
    def done(self) -> bool:
        return self.budget_exhausted or not self._pending
