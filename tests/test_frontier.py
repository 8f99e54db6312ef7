"""Tests for the crawl frontier and robots policy."""

import asyncio

import pytest

from pipelines.frontier import Frontier
from pipelines.policy import RobotsPolicy

ROBOTS_TXT = """User-agent: *
Disallow: /private
"""


class TestFrontier:

    def test_fifo_order_and_dedup(self):
        frontier = Frontier(budget=10)
        assert frontier.enqueue("https://example.com/a")
        assert frontier.enqueue("https://example.com/b")
        assert not frontier.enqueue("https://EXAMPLE.com/a#top")
        assert frontier.next() == "https://example.com/a"
        assert frontier.next() == "https://example.com/b"
        assert frontier.next() is None

    def test_visited_urls_are_not_requeued(self):
        frontier = Frontier(budget=10)
        frontier.enqueue("https://example.com/")
        frontier.next()
        assert not frontier.enqueue("https://example.com")
        assert frontier.done

    def test_malformed_urls_are_dropped(self):
        frontier = Frontier(budget=10)
        assert not frontier.enqueue("javascript:void(0)")
        assert len(frontier) == 0

    def test_budget_counts_attempted_fetches(self):
        frontier = Frontier(budget=2)
        for path in ("a", "b", "c"):
            frontier.enqueue(f"https://example.com/{path}")
        for _ in range(2):
            frontier.next()
            frontier.record_fetch()
        assert frontier.budget_exhausted
        assert frontier.done
        assert len(frontier) == 1

    def test_robots_skips_do_not_consume_budget(self):
        robots = RobotsPolicy.from_text("https://example.com/robots.txt", ROBOTS_TXT)
        frontier = Frontier(budget=1, robots=robots)
        frontier.enqueue("https://example.com/private/page")
        frontier.enqueue("https://example.com/public")

        url = frontier.next()
        assert not frontier.is_allowed(url)
        assert frontier.skipped == ["https://example.com/private/page"]
        assert not frontier.done

        url = frontier.next()
        assert frontier.is_allowed(url)

    def test_invalid_budget(self):
        with pytest.raises(ValueError):
            Frontier(budget=0)


class TestRobotsPolicy:

    def test_disallow_rules(self):
        policy = RobotsPolicy.from_text("https://example.com/robots.txt", ROBOTS_TXT)
        assert not policy.is_allowed("https://example.com/private")
        assert policy.is_allowed("https://example.com/docs")

    def test_group_for_configured_user_agent(self):
        text = "User-agent: PathfinderBot\nDisallow: /drafts\n\nUser-agent: *\nDisallow:\n"
        ours = RobotsPolicy.from_text("https://example.com/robots.txt", text,
                                      user_agent="PathfinderBot/0.3 (+https://pathfinder.local/bot)")
        anyone = RobotsPolicy.from_text("https://example.com/robots.txt", text)
        assert not ours.is_allowed("https://example.com/drafts/1")
        assert anyone.is_allowed("https://example.com/drafts/1")

    def test_load_fetches_origin_robots(self):
        requested = []

        async def fetch_text(url):
            requested.append(url)
            return ROBOTS_TXT

        policy = asyncio.run(RobotsPolicy.load("https://example.com/deep/page?x=1", fetch_text))
        assert requested == ["https://example.com/robots.txt"]
        assert not policy.is_allowed("https://example.com/private/x")

    def test_missing_robots_allows_all(self):
        async def fetch_text(url):
            return None

        policy = asyncio.run(RobotsPolicy.load("https://example.com/", fetch_text))
        assert policy.is_allowed("https://example.com/private")

    def test_fetch_error_allows_all(self):
        async def fetch_text(url):
            raise ConnectionError("unreachable")

        policy = asyncio.run(RobotsPolicy.load("https://example.com/", fetch_text))
        assert policy.is_allowed("https://example.com/anything")
