"""Weekly aggregation pipeline.

Folds per-window, per-entity fetch results into one WeeklyReport per
repository. Failed fetches are logged and recorded, then replaced by their
fail-soft default so one repository or one window cannot abort the run.
"""

from __future__ import annotations

import fnmatch
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence

from weekly_activity.config import Config
from weekly_activity.fetchers import (
    BranchFetcher,
    CommitFetcher,
    DeploymentFetcher,
    EntityFetcher,
    FetchResult,
    IssueFetcher,
    ProtectionRuleFetcher,
    PullRequestFetcher,
    RepositoryFetcher,
)
from weekly_activity.report_data import Repository, WeeklyReport, WindowActivity
from weekly_activity.rest_client import FetchError, RestClient
from weekly_activity.windows import (
    TimeWindow,
    as_utc,
    format_timestamp,
    generate_weekly_windows,
    lookback_start,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger("weekly_activity.aggregate")


@dataclass(frozen=True)
class FetchFailure:
    """One fetch that degraded to its default value."""
    repository: str          # empty for the repository listing itself
    entity: str
    window: Optional[TimeWindow]
    error: FetchError


@dataclass
class PipelineRun:
    """Everything a full run produced."""
    windows: List[TimeWindow]
    reports: List[WeeklyReport] = field(default_factory=list)
    failures: List[FetchFailure] = field(default_factory=list)


def select_repositories(
    repositories: Iterable[Repository],
    include: Sequence[str] = (),
    exclude: Sequence[str] = (),
) -> list[Repository]:
    """Filter repositories by glob patterns on the name.

    An empty ``include`` keeps everything; ``exclude`` wins over ``include``.
    """
    selected = []
    for repo in repositories:
        if include and not any(fnmatch.fnmatch(repo.name, p) for p in include):
            continue
        if any(fnmatch.fnmatch(repo.name, p) for p in exclude):
            continue
        selected.append(repo)
    return selected


class Aggregator:
    """Builds WeeklyReports from the entity fetchers.

    Windows of one repository are fetched on a thread pool bounded by
    ``config.max_workers``; the report keeps window order.
    """

    def __init__(self, client: RestClient, config: Config, clock: Callable = utc_now):
        common = dict(max_workers=config.max_workers, clock=clock)
        self.repositories = RepositoryFetcher(
            client, config.owner, owner_type=config.owner_type, **common
        )
        self.branches = BranchFetcher(client, config.owner, **common)
        self.pull_requests = PullRequestFetcher(client, config.owner, **common)
        self.commits = CommitFetcher(client, config.owner, **common)
        self.deployments = DeploymentFetcher(client, config.owner, **common)
        self.protection_rules = ProtectionRuleFetcher(client, config.owner, **common)
        self.issues = IssueFetcher(client, config.owner, **common)

        self.commit_scope = config.commit_scope
        self.max_workers = max(1, config.max_workers)
        self.failures: list[FetchFailure] = []
        self._lock = threading.Lock()

    def _unwrap(
        self,
        result: FetchResult,
        fetcher: EntityFetcher,
        repo_name: str = "",
        window: Optional[TimeWindow] = None,
    ):
        """Return the result value, logging and recording a failure first."""
        if not result.ok:
            with self._lock:
                self.failures.append(
                    FetchFailure(repo_name, fetcher.entity, window, result.error)
                )
            where = f" for {repo_name}" if repo_name else ""
            if window is not None:
                where += f" in week {format_timestamp(window.start)[:10]}"
            logger.warning("Error fetching %s%s: %s", fetcher.entity, where, result.error)
        return result.value

    def list_repositories(
        self, include: Sequence[str] = (), exclude: Sequence[str] = ()
    ) -> list[Repository]:
        repositories = self._unwrap(self.repositories.fetch(), self.repositories)
        return select_repositories(repositories, include, exclude)

    def collect_window(
        self, repository: Repository, window: TimeWindow, branches: Sequence[str] = ()
    ) -> WindowActivity:
        """Fetch every windowed entity of one repository, one after another."""
        name = repository.name
        pull_requests = self._unwrap(
            self.pull_requests.fetch(name, window), self.pull_requests, name, window
        )

        if self.commit_scope == "branch":
            commits = {}
            for branch in branches:
                commits[branch] = self._unwrap(
                    self.commits.fetch(name, window, branch), self.commits, name, window
                )
        else:
            commits = self._unwrap(self.commits.fetch(name, window), self.commits, name, window)

        deployments = self._unwrap(
            self.deployments.fetch(name, window), self.deployments, name, window
        )
        issues = self._unwrap(self.issues.fetch(name, window), self.issues, name, window)

        return WindowActivity(
            window=window,
            pull_requests=pull_requests,
            commits=commits,
            deployments=deployments,
            issues=issues,
        )

    def build_report(
        self, repository: Repository, windows: Sequence[TimeWindow]
    ) -> WeeklyReport:
        """Build the report of one repository.

        Branches and protection rules have no window dimension and are
        fetched once; protection rules are read for the default branch.
        """
        name = repository.name
        branches: list[str] = []
        if self.commit_scope == "branch":
            fetched = self._unwrap(self.branches.fetch(name), self.branches, name)
            branches = [b.name for b in fetched]

        protection_rules = None
        if repository.default_branch:
            protection_rules = self._unwrap(
                self.protection_rules.fetch(name, repository.default_branch),
                self.protection_rules,
                name,
            )

        weeks: list[WindowActivity] = []
        if windows:
            workers = min(self.max_workers, len(windows))
            with ThreadPoolExecutor(max_workers=workers) as executor:
                # map() yields in submission order, i.e. window order
                weeks = list(executor.map(
                    lambda window: self.collect_window(repository, window, branches),
                    windows,
                ))

        return WeeklyReport(
            repository=repository,
            branches=branches,
            weeks=weeks,
            protection_rules=protection_rules,
        )

    def build_reports(
        self, repositories: Iterable[Repository], windows: Sequence[TimeWindow]
    ) -> list[WeeklyReport]:
        reports = []
        for repository in repositories:
            logger.info("Processing repository: %s", repository.name)
            reports.append(self.build_report(repository, windows))
        return reports


def resolve_start(config: Config, now: datetime) -> datetime:
    """First window start: ``config.start`` or ``lookback_months`` before now."""
    if config.start:
        return parse_timestamp(config.start)
    return lookback_start(now, config.lookback_months)


def run_pipeline(
    config: Config,
    now: Optional[datetime] = None,
    client: Optional[RestClient] = None,
) -> PipelineRun:
    """List the owner's repositories and build their weekly reports.

    Args:
        config: Explicit configuration (owner, token, limits).
        now: Reference time for the windows and query clamping (default:
            current UTC time).
        client: REST client to use (default: built from ``config``).

    Returns:
        The windows, one report per selected repository, and every fetch
        failure that was replaced by a default.
    """
    now = as_utc(now) if now is not None else utc_now()
    client = client or RestClient.from_config(config)
    aggregator = Aggregator(client, config, clock=lambda: now)

    windows = generate_weekly_windows(resolve_start(config, now), now)
    logger.debug("Generated %d weekly windows", len(windows))

    repositories = aggregator.list_repositories(config.include, config.exclude)
    reports = aggregator.build_reports(repositories, windows)
    return PipelineRun(windows=windows, reports=reports, failures=list(aggregator.failures))
