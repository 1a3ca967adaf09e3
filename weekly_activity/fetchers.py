"""Entity fetchers for repositories, branches, pull requests, commits,
deployments, protection rules and issues.

Every fetcher returns a FetchResult instead of raising: on failure the result
carries the error next to the fail-soft default (an empty list, or None for
protection rules) and the caller decides what to do with it.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Generic, Iterable, Optional, TypeVar
from urllib.parse import quote

from weekly_activity.report_data import (
    Branch,
    Commit,
    Deployment,
    Issue,
    PullRequest,
    Repository,
)
from weekly_activity.rest_client import FetchError, MalformedResponseError, RestClient
from weekly_activity.windows import (
    TimeWindow,
    filter_by_window,
    format_timestamp,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger("weekly_activity.fetchers")

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class FetchResult(Generic[T]):
    """Outcome of one fetch: the value, or the error plus a fail-soft default."""

    value: T
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ---------------------------------------------------------------------------
# Response parsers
# ---------------------------------------------------------------------------

def parse_repository(raw: dict) -> Repository:
    return Repository(
        name=raw["name"],
        default_branch=raw.get("default_branch") or "",
        created_at=raw.get("created_at") or "",
        url=raw.get("html_url") or "",
    )


def parse_branch(raw: dict) -> Branch:
    return Branch(name=raw["name"], head_commit_sha=raw["commit"]["sha"])


def parse_pull_request(raw: dict) -> PullRequest:
    return PullRequest(
        title=raw["title"],
        state=raw["state"],
        created_at=raw["created_at"],
        merged_at=raw.get("merged_at") or None,
        author_login=(raw.get("user") or {}).get("login", ""),
    )


def parse_commit(raw: dict) -> Commit:
    commit = raw["commit"]
    author = commit.get("author") or {}
    return Commit(
        message=commit["message"],
        author_name=author.get("name") or "",
        author_date=author.get("date") or "",
    )


def parse_deployment(raw: dict, status: Optional[str] = None) -> Deployment:
    return Deployment(
        sha=raw["sha"],
        environment=raw.get("environment") or "",
        status=status,
        created_at=raw.get("created_at") or "",
    )


def parse_issue(raw: dict, comments: list, events: list) -> Issue:
    """Flatten an issue with its comments, events, labels and milestone."""
    milestone = raw.get("milestone")
    return Issue(
        title=raw["title"],
        created_at=raw["created_at"],
        author_login=(raw.get("user") or {}).get("login", ""),
        assignee_logins=[a["login"] for a in raw.get("assignees") or []],
        comments=list(comments),
        events=list(events),
        labels=[label["name"] for label in raw.get("labels") or []],
        milestone_title=milestone.get("title") if milestone else None,
    )


def parse_all(raw_items: Iterable[dict], parser: Callable[[dict], R], entity: str) -> list[R]:
    """Apply a parser to every raw record.

    Raises:
        MalformedResponseError: If a record lacks a required field.
    """
    try:
        return [parser(raw) for raw in raw_items]
    except (KeyError, TypeError, AttributeError) as e:
        raise MalformedResponseError(f"Unexpected {entity} payload: {e!r}") from e


def _created_at(raw: dict) -> Optional[str]:
    return raw.get("created_at") if isinstance(raw, dict) else None


def reaches_before(start: datetime) -> Callable[[list], bool]:
    """Page predicate for newest-first listings.

    True once the oldest dated item of a page was created before ``start``,
    meaning later pages hold nothing newer.
    """
    def reached(page: list) -> bool:
        for raw in reversed(page):
            created = _created_at(raw)
            if not created:
                continue
            try:
                return parse_timestamp(created) < start
            except ValueError:
                continue
        return False
    return reached


# ---------------------------------------------------------------------------
# Fetchers
# ---------------------------------------------------------------------------

class EntityFetcher:
    """Shared plumbing: client, owner, clock and error capture."""

    entity = "entity"

    def __init__(
        self,
        client: RestClient,
        owner: str,
        max_workers: int = 4,
        clock: Callable = utc_now,
    ):
        self.client = client
        self.owner = owner
        self.max_workers = max(1, max_workers)
        self.clock = clock

    def default(self):
        return []

    def repo_path(self, repo_name: str, suffix: str = "") -> str:
        path = f"repos/{quote(self.owner)}/{quote(repo_name)}"
        return f"{path}/{suffix}" if suffix else path

    def capture(self, call: Callable[..., T], *args) -> FetchResult[T]:
        """Run ``call`` and turn a FetchError into a fail-soft result."""
        try:
            return FetchResult(call(*args))
        except FetchError as e:
            logger.debug("%s fetch failed: %s", self.entity, e)
            return FetchResult(self.default(), e)


class RepositoryFetcher(EntityFetcher):
    """Lists every repository of a user or an organization."""

    entity = "repositories"

    def __init__(self, client: RestClient, owner: str, owner_type: str = "user", **kwargs):
        super().__init__(client, owner, **kwargs)
        self.owner_type = owner_type

    def fetch(self) -> FetchResult[list[Repository]]:
        return self.capture(self._fetch)

    def _fetch(self) -> list[Repository]:
        scope = "orgs" if self.owner_type == "org" else "users"
        raw = self.client.get_list(f"{scope}/{quote(self.owner)}/repos")
        return parse_all(raw, parse_repository, self.entity)


class BranchFetcher(EntityFetcher):
    entity = "branches"

    def fetch(self, repo_name: str) -> FetchResult[list[Branch]]:
        return self.capture(self._fetch, repo_name)

    def _fetch(self, repo_name: str) -> list[Branch]:
        raw = self.client.get_list(self.repo_path(repo_name, "branches"))
        return parse_all(raw, parse_branch, self.entity)


class PullRequestFetcher(EntityFetcher):
    """Pull requests created inside a window.

    The pulls endpoint has no date filter, so the list is requested newest
    first, paged only until it reaches before the window start, and filtered
    to the window client-side.
    """

    entity = "pull requests"

    def fetch(self, repo_name: str, window: TimeWindow) -> FetchResult[list[PullRequest]]:
        return self.capture(self._fetch, repo_name, window)

    def _fetch(self, repo_name: str, window: TimeWindow) -> list[PullRequest]:
        params = {"state": "all", "sort": "created", "direction": "desc"}
        raw = self.client.get_list(
            self.repo_path(repo_name, "pulls"), params, stop=reaches_before(window.start)
        )
        in_range = filter_by_window(raw, window, _created_at)
        return parse_all(in_range, parse_pull_request, self.entity)


class CommitFetcher(EntityFetcher):
    entity = "commits"

    def fetch(
        self, repo_name: str, window: TimeWindow, branch: Optional[str] = None
    ) -> FetchResult[list[Commit]]:
        return self.capture(self._fetch, repo_name, window, branch)

    def _fetch(
        self, repo_name: str, window: TimeWindow, branch: Optional[str]
    ) -> list[Commit]:
        params = {
            "since": format_timestamp(window.start),
            "until": format_timestamp(window.query_end(self.clock())),
        }
        if branch:
            params["sha"] = branch
        raw = self.client.get_list(self.repo_path(repo_name, "commits"), params)
        return parse_all(raw, parse_commit, self.entity)


class DeploymentFetcher(EntityFetcher):
    """Deployments of a repository, optionally limited to one window.

    The deployments endpoint has no date filter; with a window the list is
    filtered on ``created_at`` client-side. Without one the full history is
    returned. The latest status of every kept deployment is looked up
    concurrently.
    """

    entity = "deployments"

    def fetch(
        self, repo_name: str, window: Optional[TimeWindow] = None
    ) -> FetchResult[list[Deployment]]:
        return self.capture(self._fetch, repo_name, window)

    def _fetch(self, repo_name: str, window: Optional[TimeWindow]) -> list[Deployment]:
        raw = self.client.get_list(self.repo_path(repo_name, "deployments"))
        if window is not None:
            raw = filter_by_window(raw, window, _created_at)
        if not raw:
            return []
        try:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(raw))) as executor:
                statuses = list(executor.map(self._latest_status, raw))
            return [parse_deployment(d, s) for d, s in zip(raw, statuses)]
        except (KeyError, TypeError, AttributeError) as e:
            raise MalformedResponseError(f"Unexpected {self.entity} payload: {e!r}") from e

    def _latest_status(self, raw: dict) -> Optional[str]:
        statuses_url = raw.get("statuses_url") if isinstance(raw, dict) else None
        if not statuses_url:
            return None
        if not isinstance(statuses_url, str):
            raise MalformedResponseError(f"Unexpected statuses_url: {statuses_url!r}")
        # Statuses are returned newest first
        statuses = self.client.get_json(statuses_url, {"per_page": 1})
        if not isinstance(statuses, list):
            raise MalformedResponseError(
                f"Expected a JSON array from {statuses_url}", url=statuses_url
            )
        if not statuses:
            return None
        latest = statuses[0]
        if not isinstance(latest, dict):
            raise MalformedResponseError(
                f"Expected a status object from {statuses_url}", url=statuses_url
            )
        return latest.get("state")


class ProtectionRuleFetcher(EntityFetcher):
    """Branch protection document, or None when there is none.

    None means "no rule could be read" (unprotected branch, missing branch,
    no permission) and is distinct from an empty rule document.
    """

    entity = "protection rules"

    def default(self):
        return None

    def fetch(self, repo_name: str, branch: str) -> FetchResult[Optional[dict]]:
        return self.capture(self._fetch, repo_name, branch)

    def _fetch(self, repo_name: str, branch: str) -> dict:
        path = self.repo_path(repo_name, f"branches/{quote(branch)}/protection")
        rules = self.client.get_json(path)
        if not isinstance(rules, dict):
            raise MalformedResponseError(
                f"Expected a JSON object for protection of {repo_name}:{branch}"
            )
        return rules


class IssueFetcher(EntityFetcher):
    """Issues created inside a window, with comments and events attached.

    Comments and events of all matching issues are fetched concurrently and
    awaited as one batch. A failure in any sub-fetch fails the whole window.
    """

    entity = "issues"

    def fetch(self, repo_name: str, window: TimeWindow) -> FetchResult[list[Issue]]:
        return self.capture(self._fetch, repo_name, window)

    def _fetch(self, repo_name: str, window: TimeWindow) -> list[Issue]:
        params = {"state": "all", "since": format_timestamp(window.start)}
        raw = self.client.get_list(self.repo_path(repo_name, "issues"), params)
        # The issues endpoint also returns pull requests
        raw = [item for item in raw if isinstance(item, dict) and "pull_request" not in item]
        in_range = filter_by_window(raw, window, _created_at)
        if not in_range:
            return []
        for issue in in_range:
            urls = (issue.get("comments_url"), issue.get("events_url"))
            if not all(isinstance(url, str) and url for url in urls):
                raise MalformedResponseError(
                    f"Issue {issue.get('number')} lacks comments_url/events_url"
                )

        workers = min(self.max_workers, 2 * len(in_range))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            comment_futures = [
                executor.submit(self.client.get_list, issue["comments_url"])
                for issue in in_range
            ]
            event_futures = [
                executor.submit(self.client.get_list, issue["events_url"])
                for issue in in_range
            ]
            comments = [f.result() for f in comment_futures]
            events = [f.result() for f in event_futures]

        try:
            return [
                parse_issue(issue, issue_comments, issue_events)
                for issue, issue_comments, issue_events in zip(in_range, comments, events)
            ]
        except (KeyError, TypeError, AttributeError) as e:
            raise MalformedResponseError(f"Unexpected {self.entity} payload: {e!r}") from e
