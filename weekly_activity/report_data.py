"""Structured report data model, produced by the fetchers and the aggregator."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from weekly_activity.windows import TimeWindow


@dataclass(frozen=True)
class Repository:
    """A repository of the configured owner. Identity is the name."""
    name: str
    default_branch: str
    created_at: str          # ISO timestamp
    url: str


@dataclass(frozen=True)
class Branch:
    name: str
    head_commit_sha: str


@dataclass(frozen=True)
class PullRequest:
    title: str
    state: str               # "open" or "closed"
    created_at: str
    merged_at: Optional[str]
    author_login: str

    @property
    def merged(self) -> bool:
        return self.merged_at is not None


@dataclass(frozen=True)
class Commit:
    message: str
    author_name: str
    author_date: str


@dataclass(frozen=True)
class Deployment:
    sha: str
    environment: str
    status: Optional[str]    # state of the latest deployment status
    created_at: str


@dataclass(frozen=True)
class Issue:
    """An issue with its sub-resources flattened in."""
    title: str
    created_at: str
    author_login: str
    assignee_logins: List[str] = field(default_factory=list)
    comments: List[dict] = field(default_factory=list)   # raw API records
    events: List[dict] = field(default_factory=list)     # raw API records
    labels: List[str] = field(default_factory=list)
    milestone_title: Optional[str] = None


# Flat list in repository scope, branch name -> list in branch scope.
CommitCollection = Union[List[Commit], Dict[str, List[Commit]]]


@dataclass
class WindowActivity:
    """Everything collected for one repository in one weekly window."""
    window: TimeWindow
    pull_requests: List[PullRequest] = field(default_factory=list)
    commits: CommitCollection = field(default_factory=list)
    deployments: List[Deployment] = field(default_factory=list)
    issues: List[Issue] = field(default_factory=list)


@dataclass
class WeeklyReport:
    """Per-repository report: one WindowActivity per window, in order."""
    repository: Repository
    branches: List[str] = field(default_factory=list)
    weeks: List[WindowActivity] = field(default_factory=list)
    protection_rules: Optional[dict] = None   # latest snapshot, not per window
