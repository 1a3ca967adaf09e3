"""REST client for the GitHub API via requests.

Provides a small session wrapper used by the entity fetchers. HTTP failures
are mapped onto a typed error taxonomy so callers can tell a missing resource
from a rate limit or a network problem.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

import requests

logger = logging.getLogger("weekly_activity.rest_client")

DEFAULT_API_URL = "https://api.github.com"

_ACCEPT = "application/vnd.github+json"
_API_VERSION = "2022-11-28"


class FetchError(RuntimeError):
    """Base class for every failure talking to the REST API."""

    def __init__(self, message: str, status: Optional[int] = None, url: str = ""):
        super().__init__(message)
        self.status = status
        self.url = url


class TransportError(FetchError):
    """Network, DNS or timeout failure, or an unexpected HTTP status."""


class AuthError(FetchError):
    """401, or 403 without rate-limit markers."""


class NotFoundError(FetchError):
    """404, e.g. protection rules requested for an unprotected branch."""


class RateLimitError(FetchError):
    """Primary quota exhausted or secondary rate limit hit."""


class MalformedResponseError(FetchError):
    """The response body is not JSON or has an unexpected shape."""


def _error_message(response: requests.Response) -> str:
    """Extract the API's error message, falling back to the raw body."""
    try:
        body = response.json()
    except ValueError:
        return (response.text or "")[:500]
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return str(body)[:500]


def _is_rate_limited(response: requests.Response, message: str) -> bool:
    if response.status_code == 429:
        return True
    if response.status_code != 403:
        return False
    if response.headers.get("X-RateLimit-Remaining") == "0":
        return True
    return "rate limit" in message.lower()


def raise_for_status(response: requests.Response) -> None:
    """Raise the FetchError subclass matching a failed response.

    Args:
        response: Response to inspect. Statuses below 400 pass silently.

    Raises:
        RateLimitError, AuthError, NotFoundError or TransportError.
    """
    status = response.status_code
    if status < 400:
        return
    url = response.url or ""
    message = _error_message(response)
    detail = f"HTTP {status} for {url}: {message}"
    if _is_rate_limited(response, message):
        raise RateLimitError(detail, status=status, url=url)
    if status in (401, 403):
        raise AuthError(detail, status=status, url=url)
    if status == 404:
        raise NotFoundError(detail, status=status, url=url)
    raise TransportError(detail, status=status, url=url)


class RestClient:
    """Thin requests.Session wrapper bound to one API base URL and token.

    requests.Session is not documented as thread-safe, so every worker
    thread gets its own session carrying the same headers and auth. An
    injected ``session`` is used as-is by all threads.
    """

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        token: str = "",
        auth_scheme: str = "bearer",
        timeout: float = 30,
        max_retries: int = 3,
        per_page: int = 100,
        max_pages: int = 10,
        session: Optional[requests.Session] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.per_page = per_page
        self.max_pages = max(1, max_pages)
        self._token = token
        self._auth_scheme = auth_scheme
        self._local = threading.local()
        self._shared_session = self._configure(session) if session is not None else None

    def _configure(self, session: requests.Session) -> requests.Session:
        session.headers.update({
            "Accept": _ACCEPT,
            "X-GitHub-Api-Version": _API_VERSION,
        })
        if self._token:
            if self._auth_scheme == "basic":
                session.auth = (self._token, "")
            else:
                session.headers["Authorization"] = f"Bearer {self._token}"
        return session

    @property
    def session(self) -> requests.Session:
        """The injected session, or the calling thread's own session."""
        if self._shared_session is not None:
            return self._shared_session
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._configure(requests.Session())
            self._local.session = session
        return session

    @classmethod
    def from_config(cls, config) -> "RestClient":
        return cls(
            api_url=config.api_url,
            token=config.token,
            auth_scheme=config.auth_scheme,
            timeout=config.timeout,
            max_retries=config.max_retries,
            per_page=config.per_page,
            max_pages=config.max_pages,
        )

    def url_for(self, path: str) -> str:
        """Resolve an API path; absolute URLs (e.g. ``comments_url``) pass through."""
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.api_url}/{path.lstrip('/')}"

    def request(self, url: str, params: Optional[dict] = None) -> requests.Response:
        """Issue a single GET and map failures onto the error taxonomy."""
        logger.debug("GET %s params=%s", url, params)
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            raise TransportError(f"Request timed out: {url}", url=url) from e
        except requests.RequestException as e:
            raise TransportError(f"Request failed: {url}: {e}", url=url) from e
        raise_for_status(response)
        return response

    def request_with_retry(
        self, url: str, params: Optional[dict] = None
    ) -> requests.Response:
        """GET with retry on rate limiting.

        Retries with exponential backoff (1s, 2s, 4s) while the API answers
        with rate-limit responses; any other error is raised immediately.

        Raises:
            RateLimitError: After exhausting ``max_retries`` attempts.
        """
        for attempt in range(self.max_retries):
            try:
                return self.request(url, params)
            except RateLimitError:
                if attempt == self.max_retries - 1:
                    raise
                wait = 2 ** attempt  # 1s, 2s, 4s
                logger.warning("Rate limited on %s, retrying in %ds", url, wait)
                time.sleep(wait)
        # Should not reach here, but satisfy type checker
        raise RateLimitError(f"Rate limit exceeded after retries: {url}", url=url)

    def get_json(self, path: str, params: Optional[dict] = None):
        """GET a single resource and return the decoded JSON body."""
        url = self.url_for(path)
        response = self.request_with_retry(url, params)
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"Response from {url} is not valid JSON", url=url
            ) from e

    def get_list(
        self,
        path: str,
        params: Optional[dict] = None,
        stop: Optional[Callable[[list], bool]] = None,
    ) -> list:
        """GET a list endpoint, following ``Link: rel="next"`` pages.

        Stops early once ``stop(page)`` is true for a fetched page, and after
        ``max_pages`` pages, logging a warning when pages are left unread.

        Raises:
            MalformedResponseError: If a page is not a JSON array.
        """
        url: Optional[str] = self.url_for(path)
        query = dict(params or {})
        query.setdefault("per_page", self.per_page)

        items: list = []
        pages = 0
        while url and pages < self.max_pages:
            response = self.request_with_retry(url, query)
            try:
                page = response.json()
            except ValueError as e:
                raise MalformedResponseError(
                    f"Response from {url} is not valid JSON", url=url
                ) from e
            if not isinstance(page, list):
                raise MalformedResponseError(
                    f"Expected a JSON array from {url}, got {type(page).__name__}",
                    url=url,
                )
            items.extend(page)
            pages += 1
            if stop is not None and stop(page):
                return items
            url = response.links.get("next", {}).get("url")
            # The next link already carries the query string
            query = None
        if url:
            logger.warning(
                "Stopped after %d pages of %s; older results were not fetched",
                pages, self.url_for(path),
            )
        return items
