"""JSON formatter for weekly-activity.

Serializes WeeklyReports into the published document shape (an array of
repositories, camelCase keys) and validates it against
``schemas/weekly_report.json`` before it leaves the process.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Sequence

import jsonschema

from weekly_activity.report_data import (
    Commit,
    Deployment,
    Issue,
    PullRequest,
    WeeklyReport,
    WindowActivity,
)
from weekly_activity.windows import format_timestamp

logger = logging.getLogger("weekly_activity.format_json")

_schema_cache: Optional[dict] = None


def _load_schema() -> dict:
    """Load and cache the report JSON schema."""
    global _schema_cache
    if _schema_cache is None:
        schema_path = Path(__file__).parent / "schemas" / "weekly_report.json"
        with open(schema_path) as f:
            _schema_cache = json.load(f)
    return _schema_cache


def _pull_request(pr: PullRequest) -> dict:
    return {
        "title": pr.title,
        "state": pr.state,
        "createdAt": pr.created_at,
        "mergedAt": pr.merged_at,
        "user": pr.author_login,
    }


def _commit(commit: Commit) -> dict:
    return {
        "message": commit.message,
        "author": commit.author_name,
        "date": commit.author_date,
    }


def _deployment(deployment: Deployment) -> dict:
    return {
        "sha": deployment.sha,
        "environment": deployment.environment,
        "status": deployment.status,
        "createdAt": deployment.created_at,
    }


def _issue(issue: Issue) -> dict:
    return {
        "title": issue.title,
        "createdAt": issue.created_at,
        "user": issue.author_login,
        "assignees": list(issue.assignee_logins),
        "comments": list(issue.comments),
        "events": list(issue.events),
        "labels": list(issue.labels),
        "milestone": issue.milestone_title,
    }


def _week(activity: WindowActivity) -> dict:
    if isinstance(activity.commits, dict):
        commits = {
            branch: [_commit(c) for c in branch_commits]
            for branch, branch_commits in activity.commits.items()
        }
    else:
        commits = [_commit(c) for c in activity.commits]
    return {
        "weekStart": format_timestamp(activity.window.start),
        "weekEnd": format_timestamp(activity.window.end),
        "pullRequests": [_pull_request(pr) for pr in activity.pull_requests],
        "commits": commits,
        "deployments": [_deployment(d) for d in activity.deployments],
        "issues": [_issue(i) for i in activity.issues],
    }


def report_to_dict(report: WeeklyReport) -> dict:
    """Convert one WeeklyReport into its JSON-ready dict."""
    repo = report.repository
    return {
        "repoName": repo.name,
        "url": repo.url,
        "createdAt": repo.created_at,
        "defaultBranch": repo.default_branch,
        "branches": list(report.branches),
        "protectionRules": report.protection_rules,
        "weeks": [_week(week) for week in report.weeks],
    }


def validate_document(document: list) -> None:
    """Validate a serialized report list against the schema.

    Raises:
        RuntimeError: If the document does not match the schema.
    """
    try:
        jsonschema.validate(instance=document, schema=_load_schema())
    except jsonschema.ValidationError as e:
        raise RuntimeError(f"Report failed schema validation: {e.message}") from e
    logger.debug("Schema validation passed for %d reports", len(document))


def format_json(reports: Sequence[WeeklyReport], indent: int = 2) -> str:
    """Render reports as a validated JSON array string."""
    document = [report_to_dict(r) for r in reports]
    validate_document(document)
    return json.dumps(document, indent=indent)


def write_json(reports: Sequence[WeeklyReport], output_path: str) -> str:
    """Write the JSON document to ``output_path``; returns the path written."""
    text = format_json(reports)
    path = Path(output_path).expanduser()
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
        f.write("\n")
    return str(path)


def log_json(reports: Sequence[WeeklyReport], log: Optional[logging.Logger] = None) -> None:
    """Emit the JSON document as a single INFO record."""
    (log or logger).info("%s", format_json(reports))
