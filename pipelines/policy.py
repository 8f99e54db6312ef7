"""robots.txt policy for a single crawl run."""

import logging
import urllib.robotparser
from typing import Awaitable, Callable, Optional

from .urls import origin_of

logger = logging.getLogger(__name__)


class RobotsPolicy:
    """Allow/disallow evaluator loaded once per crawl run.

    Any failure to obtain or parse robots.txt produces an allow-all policy.
    """

    def __init__(self, parser: Optional[urllib.robotparser.RobotFileParser] = None,
                 user_agent: str = "*"):
        self.parser = parser
        self.user_agent = user_agent

    @classmethod
    def allow_all(cls, user_agent: str = "*") -> 'RobotsPolicy':
        return cls(None, user_agent)

    @classmethod
    def from_text(cls, robots_url: str, text: str, user_agent: str = "*") -> 'RobotsPolicy':
        rp = urllib.robotparser.RobotFileParser()
        rp.set_url(robots_url)
        try:
            rp.parse(text.splitlines())
        except Exception as e:
            logger.warning(f"Unparsable robots.txt at {robots_url}: {e}")
            return cls.allow_all(user_agent)
        return cls(rp, user_agent)

    @classmethod
    async def load(cls, start_url: str, fetch_text: Callable[[str], Awaitable[Optional[str]]],
                   user_agent: str = "*") -> 'RobotsPolicy':
        """Fetch ``{origin}/robots.txt`` with ``fetch_text`` and build a policy.

        ``fetch_text`` returns the body for a 2xx response and ``None``
        otherwise; exceptions are treated the same as a missing file.
        """
        robots_url = f"{origin_of(start_url)}/robots.txt"
        try:
            text = await fetch_text(robots_url)
        except Exception as e:
            logger.info(f"robots.txt unavailable at {robots_url}: {e}")
            return cls.allow_all(user_agent)
        if text is None:
            logger.info(f"No robots.txt found at {robots_url}")
            return cls.allow_all(user_agent)
        logger.info(f"Loaded robots.txt from {robots_url}")
        return cls.from_text(robots_url, text, user_agent)

    def is_allowed(self, url: str) -> bool:
        if self.parser is None:
            return True
        try:
            allowed = self.parser.can_fetch(self.user_agent, url)
        except Exception as e:
            logger.error(f"Error checking robots.txt for {url}: {e}")
            return True
        if not allowed:
            logger.debug(f"{url} disallowed by robots.txt for {self.user_agent}")
        return allowed
