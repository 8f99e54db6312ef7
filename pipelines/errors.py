"""Exception types shared by the crawl pipeline, retrieval and the API."""


class PathfinderError(Exception):
    """Base class for Pathfinder errors carrying a machine-readable code."""

    error_code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class MalformedURL(PathfinderError, ValueError):
    """URL could not be parsed; callers skip it rather than failing."""

    error_code = "INVALID_URL"
    status_code = 400


class FetchError(PathfinderError):
    """A single page could not be fetched (network error, timeout, non-2xx)."""

    error_code = "CRAWL_FAILURE"
    status_code = 502

    def __init__(self, message: str = "", status: int = 0):
        super().__init__(message)
        self.status = status


class SiteNotFound(PathfinderError):
    error_code = "SITE_NOT_FOUND"
    status_code = 404


class DisallowedDomain(PathfinderError):
    """URL is outside the domain a request is limited to."""

    error_code = "DISALLOWED_DOMAIN"
    status_code = 400


class StartUrlMismatch(DisallowedDomain):
    """Start URL is not on the site's domain."""


class JobNotFound(PathfinderError):
    error_code = "JOB_NOT_FOUND"
    status_code = 404


class JobNotReady(PathfinderError):
    error_code = "INVALID_REQUEST"
    status_code = 400
