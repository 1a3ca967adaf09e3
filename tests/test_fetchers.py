"""Unit tests for weekly_activity/fetchers.py: response parsers and every
EntityFetcher variant, including fail-soft behaviour.

Run with: python3 -m pytest tests/test_fetchers.py -v
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from weekly_activity.fetchers import (
    BranchFetcher,
    CommitFetcher,
    DeploymentFetcher,
    FetchResult,
    IssueFetcher,
    ProtectionRuleFetcher,
    PullRequestFetcher,
    RepositoryFetcher,
    parse_all,
    parse_issue,
    parse_pull_request,
    parse_commit,
    parse_repository,
    reaches_before,
)
from weekly_activity.report_data import Branch, Commit, Repository
from weekly_activity.rest_client import (
    AuthError,
    MalformedResponseError,
    NotFoundError,
    RateLimitError,
    RestClient,
    TransportError,
)
from weekly_activity.windows import TimeWindow

OWNER = "octo"
REPO = "repos/octo/widgets"
WINDOW = TimeWindow(
    start=datetime(2024, 1, 15, tzinfo=timezone.utc),
    end=datetime(2024, 1, 21, tzinfo=timezone.utc),
)
NOW = datetime(2024, 1, 20, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers: raw API payload factories
# ---------------------------------------------------------------------------

def _raw_pr(title, created_at, state="open", merged_at=None, login="alice"):
    return {
        "title": title,
        "state": state,
        "created_at": created_at,
        "merged_at": merged_at,
        "user": {"login": login},
    }


def _raw_commit(message, name="Alice", date="2024-01-16T10:00:00Z"):
    return {"sha": "abc", "commit": {"message": message, "author": {"name": name, "date": date}}}


def _raw_issue(number, created_at, **extra):
    base = f"https://api.github.com/{REPO}/issues/{number}"
    issue = {
        "number": number,
        "title": f"Issue {number}",
        "created_at": created_at,
        "user": {"login": "bob"},
        "assignees": [{"login": "carol"}, {"login": "dave"}],
        "labels": [{"name": "bug"}, {"name": "p1"}],
        "milestone": {"title": "v1.0"},
        "comments_url": f"{base}/comments",
        "events_url": f"{base}/events",
    }
    issue.update(extra)
    return issue


def _raw_deployment(sha, created_at, environment="production"):
    return {
        "sha": sha,
        "environment": environment,
        "created_at": created_at,
        "statuses_url": f"https://api.github.com/{REPO}/deployments/{sha}/statuses",
    }


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------

class TestParsers:

    def test_parse_repository(self):
        repo = parse_repository({
            "name": "widgets",
            "default_branch": "main",
            "created_at": "2020-01-01T00:00:00Z",
            "html_url": "https://github.com/octo/widgets",
        })
        assert repo == Repository(
            name="widgets", default_branch="main",
            created_at="2020-01-01T00:00:00Z", url="https://github.com/octo/widgets",
        )

    def test_parse_pull_request_merged(self):
        pr = parse_pull_request(_raw_pr("Fix", "2024-01-16T00:00:00Z", "closed", "2024-01-17T00:00:00Z"))
        assert pr.merged
        assert pr.author_login == "alice"

    def test_parse_pull_request_unmerged(self):
        pr = parse_pull_request(_raw_pr("Fix", "2024-01-16T00:00:00Z", "closed"))
        assert not pr.merged
        assert pr.merged_at is None

    def test_parse_issue_without_milestone_or_assignees(self):
        raw = _raw_issue(1, "2024-01-16T00:00:00Z", milestone=None, assignees=None, labels=[])
        issue = parse_issue(raw, [], [])
        assert issue.milestone_title is None
        assert issue.assignee_logins == []
        assert issue.labels == []

    def test_parse_all_missing_field_is_malformed(self):
        with pytest.raises(MalformedResponseError, match="pull requests"):
            parse_all([{"state": "open"}], parse_pull_request, "pull requests")


# ---------------------------------------------------------------------------
# RepositoryFetcher / BranchFetcher
# ---------------------------------------------------------------------------

class TestRepositoryFetcher:

    RAW = [{"name": "widgets", "default_branch": "main",
            "created_at": "2020-01-01T00:00:00Z", "html_url": "u"}]

    def test_user_repositories(self, make_client):
        client = make_client({"users/octo/repos": self.RAW})
        result = RepositoryFetcher(client, OWNER).fetch()
        assert result.ok
        assert [r.name for r in result.value] == ["widgets"]

    def test_org_repositories(self, make_client):
        client = make_client({"orgs/octo/repos": self.RAW})
        result = RepositoryFetcher(client, OWNER, owner_type="org").fetch()
        assert [r.name for r in result.value] == ["widgets"]

    def test_failure_returns_empty_list(self, make_client):
        client = make_client({"users/octo/repos": AuthError("HTTP 401", status=401)})
        result = RepositoryFetcher(client, OWNER).fetch()
        assert result.value == []
        assert isinstance(result.error, AuthError)


class TestBranchFetcher:

    def test_maps_name_and_head_sha(self, make_client):
        client = make_client({f"{REPO}/branches": [
            {"name": "main", "commit": {"sha": "111"}},
            {"name": "dev", "commit": {"sha": "222"}},
        ]})
        result = BranchFetcher(client, OWNER).fetch("widgets")
        assert result.value == [Branch("main", "111"), Branch("dev", "222")]

    def test_malformed_branch_degrades(self, make_client):
        client = make_client({f"{REPO}/branches": [{"name": "main"}]})
        result = BranchFetcher(client, OWNER).fetch("widgets")
        assert result.value == []
        assert isinstance(result.error, MalformedResponseError)


# ---------------------------------------------------------------------------
# PullRequestFetcher
# ---------------------------------------------------------------------------

class TestPullRequestFetcher:

    def test_filters_to_window_inclusive(self, make_client):
        client = make_client({f"{REPO}/pulls": [
            _raw_pr("after", "2024-01-21T00:00:01Z"),
            _raw_pr("end", "2024-01-21T00:00:00Z"),
            _raw_pr("middle", "2024-01-18T09:00:00Z"),
            _raw_pr("start", "2024-01-15T00:00:00Z"),
            _raw_pr("before", "2024-01-14T23:59:59Z"),
        ]})
        result = PullRequestFetcher(client, OWNER).fetch("widgets", WINDOW)
        assert [pr.title for pr in result.value] == ["end", "middle", "start"]

    def test_request_parameters(self, make_client):
        client = make_client({f"{REPO}/pulls": []})
        PullRequestFetcher(client, OWNER).fetch("widgets", WINDOW)
        path, params = client.get_list.call_args.args
        assert path == f"{REPO}/pulls"
        assert params == {"state": "all", "sort": "created", "direction": "desc"}

    def test_paging_stops_once_a_page_reaches_before_window(self, make_client):
        client = make_client({f"{REPO}/pulls": []})
        PullRequestFetcher(client, OWNER).fetch("widgets", WINDOW)
        stop = client.get_list.call_args.kwargs["stop"]
        assert not stop([_raw_pr("feb", "2024-02-01T00:00:00Z"),
                         _raw_pr("start", "2024-01-15T00:00:00Z")])
        assert stop([_raw_pr("in", "2024-01-16T00:00:00Z"),
                     _raw_pr("older", "2024-01-10T00:00:00Z")])

    def test_window_found_beyond_first_page(self):
        def page(items, next_url=None):
            resp = MagicMock(status_code=200, headers={})
            resp.json.return_value = items
            resp.links = {"next": {"url": next_url}} if next_url else {}
            return resp

        session = MagicMock(headers={})
        session.get.side_effect = [
            page([_raw_pr("feb", "2024-02-01T00:00:00Z")], "https://api.github.com/p2"),
            page([_raw_pr("in", "2024-01-16T00:00:00Z"),
                  _raw_pr("old", "2024-01-10T00:00:00Z")], "https://api.github.com/p3"),
            page([_raw_pr("older", "2023-12-01T00:00:00Z")]),
        ]
        client = RestClient(session=session)
        result = PullRequestFetcher(client, OWNER).fetch("widgets", WINDOW)
        assert [pr.title for pr in result.value] == ["in"]
        assert session.get.call_count == 2

    def test_page_predicate_skips_undated_items(self):
        stop = reaches_before(WINDOW.start)
        assert stop([_raw_pr("old", "2024-01-01T00:00:00Z"), {"title": "no date"}, "junk"])
        assert not stop([{"created_at": "not a date"}])
        assert not stop([])

    @pytest.mark.parametrize("error", [
        TransportError("boom"),
        AuthError("HTTP 403", status=403),
        RateLimitError("HTTP 429", status=429),
        MalformedResponseError("not a list"),
    ])
    def test_any_fetch_error_gives_empty_list(self, make_client, error):
        client = make_client({f"{REPO}/pulls": error})
        result = PullRequestFetcher(client, OWNER).fetch("widgets", WINDOW)
        assert result.value == []
        assert result.error is error
        assert not result.ok


# ---------------------------------------------------------------------------
# CommitFetcher
# ---------------------------------------------------------------------------

class TestCommitFetcher:

    def test_maps_commits(self, make_client):
        client = make_client({f"{REPO}/commits": [_raw_commit("Initial")]})
        result = CommitFetcher(client, OWNER, clock=lambda: NOW).fetch("widgets", WINDOW)
        assert result.value == [Commit("Initial", "Alice", "2024-01-16T10:00:00Z")]

    def test_until_clamped_to_now(self, make_client):
        client = make_client({f"{REPO}/commits": []})
        CommitFetcher(client, OWNER, clock=lambda: NOW).fetch("widgets", WINDOW)
        _, params = client.get_list.call_args.args
        assert params == {"since": "2024-01-15T00:00:00Z", "until": "2024-01-20T00:00:00Z"}

    def test_branch_scoped_request(self, make_client):
        client = make_client({f"{REPO}/commits": []})
        CommitFetcher(client, OWNER, clock=lambda: NOW).fetch("widgets", WINDOW, "dev")
        _, params = client.get_list.call_args.args
        assert params["sha"] == "dev"

    def test_error_gives_empty_list(self, make_client):
        client = make_client({f"{REPO}/commits": TransportError("reset")})
        result = CommitFetcher(client, OWNER).fetch("widgets", WINDOW, "dev")
        assert result.value == []

    def test_null_author_fields_become_empty_strings(self):
        raw = {"commit": {"message": "m", "author": {"name": None, "date": None}}}
        assert parse_commit(raw) == Commit("m", "", "")


# ---------------------------------------------------------------------------
# DeploymentFetcher
# ---------------------------------------------------------------------------

class TestDeploymentFetcher:

    def _routes(self):
        return {
            f"{REPO}/deployments": [
                _raw_deployment("aaa", "2024-01-16T00:00:00Z"),
                _raw_deployment("bbb", "2024-01-02T00:00:00Z", environment="staging"),
            ],
            f"https://api.github.com/{REPO}/deployments/aaa/statuses": [{"state": "success"}],
            f"https://api.github.com/{REPO}/deployments/bbb/statuses": [],
        }

    def test_window_filters_on_created_at(self, make_client):
        client = make_client(self._routes())
        result = DeploymentFetcher(client, OWNER).fetch("widgets", WINDOW)
        assert [(d.sha, d.status) for d in result.value] == [("aaa", "success")]

    def test_without_window_returns_full_history(self, make_client):
        client = make_client(self._routes())
        result = DeploymentFetcher(client, OWNER).fetch("widgets")
        assert [(d.sha, d.environment, d.status) for d in result.value] == [
            ("aaa", "production", "success"),
            ("bbb", "staging", None),
        ]

    def test_status_lookup_failure_degrades_whole_list(self, make_client):
        routes = self._routes()
        routes[f"https://api.github.com/{REPO}/deployments/aaa/statuses"] = TransportError("reset")
        result = DeploymentFetcher(make_client(routes), OWNER).fetch("widgets", WINDOW)
        assert result.value == []
        assert isinstance(result.error, TransportError)

    @pytest.mark.parametrize("statuses_url, statuses", [
        (f"https://api.github.com/{REPO}/deployments/aaa/statuses", ["pending"]),
        (f"https://api.github.com/{REPO}/deployments/aaa/statuses", [None]),
        (f"https://api.github.com/{REPO}/deployments/aaa/statuses", {"state": "success"}),
        (5, [{"state": "success"}]),
    ])
    def test_malformed_status_payload_degrades_to_empty(
        self, make_client, statuses_url, statuses
    ):
        deployment = _raw_deployment("aaa", "2024-01-16T00:00:00Z")
        deployment["statuses_url"] = statuses_url
        routes = {f"{REPO}/deployments": [deployment], statuses_url: statuses}
        result = DeploymentFetcher(make_client(routes), OWNER).fetch("widgets", WINDOW)
        assert result.value == []
        assert isinstance(result.error, MalformedResponseError)

    def test_empty_window_skips_status_lookups(self, make_client):
        client = make_client(self._routes())
        empty = TimeWindow(start=datetime(2023, 1, 1, tzinfo=timezone.utc),
                           end=datetime(2023, 1, 7, tzinfo=timezone.utc))
        result = DeploymentFetcher(client, OWNER).fetch("widgets", empty)
        assert result.value == []
        client.get_json.assert_not_called()


# ---------------------------------------------------------------------------
# ProtectionRuleFetcher
# ---------------------------------------------------------------------------

class TestProtectionRuleFetcher:

    def test_returns_rule_document(self, make_client):
        rules = {"required_pull_request_reviews": {"required_approving_review_count": 1}}
        client = make_client({f"{REPO}/branches/main/protection": rules})
        result = ProtectionRuleFetcher(client, OWNER).fetch("widgets", "main")
        assert result.value == rules

    def test_empty_rule_is_not_none(self, make_client):
        client = make_client({f"{REPO}/branches/main/protection": {}})
        result = ProtectionRuleFetcher(client, OWNER).fetch("widgets", "main")
        assert result.value == {}
        assert result.ok

    def test_unprotected_branch_gives_none(self, make_client):
        client = make_client({})
        result = ProtectionRuleFetcher(client, OWNER).fetch("widgets", "main")
        assert result.value is None
        assert isinstance(result.error, NotFoundError)

    def test_non_object_is_malformed(self, make_client):
        client = make_client({f"{REPO}/branches/main/protection": ["nope"]})
        result = ProtectionRuleFetcher(client, OWNER).fetch("widgets", "main")
        assert result.value is None
        assert isinstance(result.error, MalformedResponseError)


# ---------------------------------------------------------------------------
# IssueFetcher
# ---------------------------------------------------------------------------

class TestIssueFetcher:

    def _routes(self, issues):
        routes = {f"{REPO}/issues": issues}
        for issue in issues:
            routes[issue["comments_url"]] = [{"body": f"comment on {issue['number']}"}]
            routes[issue["events_url"]] = [{"event": "labeled"}]
        return routes

    def test_flattens_issue_with_sub_resources(self, make_client):
        client = make_client(self._routes([_raw_issue(1, "2024-01-16T00:00:00Z")]))
        result = IssueFetcher(client, OWNER).fetch("widgets", WINDOW)
        assert result.ok
        [issue] = result.value
        assert issue.title == "Issue 1"
        assert issue.author_login == "bob"
        assert issue.assignee_logins == ["carol", "dave"]
        assert issue.labels == ["bug", "p1"]
        assert issue.milestone_title == "v1.0"
        assert issue.comments == [{"body": "comment on 1"}]
        assert issue.events == [{"event": "labeled"}]

    def test_only_window_issues_get_sub_fetches(self, make_client):
        inside = _raw_issue(1, "2024-01-16T00:00:00Z")
        outside = _raw_issue(2, "2024-01-10T00:00:00Z")
        client = make_client(self._routes([inside, outside]))
        result = IssueFetcher(client, OWNER).fetch("widgets", WINDOW)
        assert [i.title for i in result.value] == ["Issue 1"]
        fetched = {c.args[0] for c in client.get_list.call_args_list}
        assert outside["comments_url"] not in fetched
        assert outside["events_url"] not in fetched

    def test_pull_requests_excluded(self, make_client):
        pr_like = _raw_issue(3, "2024-01-16T00:00:00Z", pull_request={"url": "x"})
        client = make_client(self._routes([pr_like]))
        result = IssueFetcher(client, OWNER).fetch("widgets", WINDOW)
        assert result.value == []

    def test_keeps_issue_order(self, make_client):
        issues = [_raw_issue(n, f"2024-01-1{n}T00:00:00Z") for n in (9, 8, 7, 6, 5)]
        client = make_client(self._routes(issues))
        result = IssueFetcher(client, OWNER, max_workers=3).fetch("widgets", WINDOW)
        assert [i.title for i in result.value] == [f"Issue {n}" for n in (9, 8, 7, 6, 5)]
        assert [i.comments[0]["body"] for i in result.value] == [
            f"comment on {n}" for n in (9, 8, 7, 6, 5)
        ]

    def test_sub_fetch_failure_degrades_to_empty(self, make_client):
        issue = _raw_issue(1, "2024-01-16T00:00:00Z")
        routes = self._routes([issue])
        routes[issue["events_url"]] = RateLimitError("HTTP 429", status=429)
        result = IssueFetcher(make_client(routes), OWNER).fetch("widgets", WINDOW)
        assert result.value == []
        assert isinstance(result.error, RateLimitError)

    @pytest.mark.parametrize("field, value", [
        ("comments_url", 5),
        ("comments_url", None),
        ("events_url", ["https://api.github.com/x"]),
        ("events_url", ""),
    ])
    def test_bad_sub_resource_url_degrades_to_empty(self, make_client, field, value):
        issue = _raw_issue(1, "2024-01-16T00:00:00Z")
        routes = self._routes([issue])
        issue[field] = value
        client = make_client(routes)
        result = IssueFetcher(client, OWNER).fetch("widgets", WINDOW)
        assert result.value == []
        assert isinstance(result.error, MalformedResponseError)
        assert client.get_list.call_count == 1

    def test_since_parameter(self, make_client):
        client = make_client({f"{REPO}/issues": []})
        IssueFetcher(client, OWNER).fetch("widgets", WINDOW)
        path, params = client.get_list.call_args.args
        assert params == {"state": "all", "since": "2024-01-15T00:00:00Z"}


class TestFetchResult:

    def test_ok_without_error(self):
        assert FetchResult([1]).ok

    def test_not_ok_with_error(self):
        assert not FetchResult([], TransportError("x")).ok
