#!/usr/bin/env python3
"""Weekly GitHub repository activity report.

Lists the repositories of one user or organization, splits the history into
weekly windows and collects pull requests, commits, deployments, issues and
branch protection per repository. The result is a JSON array written to
stdout, to a file, or to the log.
"""

import argparse
import logging
import os
import sys
from dataclasses import replace
from datetime import datetime

from weekly_activity.aggregate import run_pipeline
from weekly_activity.config import load_config, apply_env
from weekly_activity.format_json import format_json, log_json, write_json


def build_parser():
    parser = argparse.ArgumentParser(
        description="Generate weekly GitHub activity reports as JSON",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "--since and --months are mutually exclusive. When neither is given, "
            "the history starts lookback_months (default 3) before now.\n"
            "The token is read from GITHUB_TOKEN or the config file."
        ),
    )
    parser.add_argument("--config", dest="config_path", default=None, help="path to YAML config file (default: ~/.config/weekly-activity/config.yaml)")
    parser.add_argument("--owner", default=None, help="GitHub user or organization whose repositories are reported (default: GITHUB_OWNER or config)")
    parser.add_argument("--org", action="store_true", default=False, help="treat --owner as an organization (default: user)")
    parser.add_argument("--api-url", dest="api_url", default=None, help="REST API base URL (default: GITHUB_API_URL, config, or https://api.github.com)")
    parser.add_argument("--since", default=None, help="first week start, YYYY-MM-DD; mutually exclusive with --months")
    parser.add_argument("--months", type=int, default=None, help="look back this many months from now (default: 3)")
    parser.add_argument("--by-branch", dest="by_branch", action="store_true", default=False, help="collect commits per branch instead of for the default history")
    parser.add_argument("--workers", type=int, default=None, help="maximum concurrent requests per repository (default: 4)")
    parser.add_argument("--output", default=None, help="write the JSON report to this file instead of stdout")
    parser.add_argument("--log-output", dest="log_output", action="store_true", default=False, help="emit the JSON report through the log instead of stdout")
    parser.add_argument("--verbose", "-v", action="store_true", default=False, help="enable debug logging")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    # Validate arguments
    if args.since and args.months is not None:
        print("Error: --since cannot be combined with --months.", file=sys.stderr)
        sys.exit(1)
    if args.output and args.log_output:
        print("Error: --output and --log-output are mutually exclusive.", file=sys.stderr)
        sys.exit(1)
    if args.since:
        try:
            datetime.strptime(args.since, "%Y-%m-%d")
        except ValueError:
            print(f"Error: Invalid date format '{args.since}' for --since. Use YYYY-MM-DD.", file=sys.stderr)
            sys.exit(1)
    if args.months is not None and args.months < 1:
        print("Error: --months must be a positive integer.", file=sys.stderr)
        sys.exit(1)
    if args.workers is not None and args.workers < 1:
        print("Error: --workers must be a positive integer.", file=sys.stderr)
        sys.exit(1)

    # Resolve configuration (CLI > env var > config file)
    cfg = apply_env(load_config(args.config_path), os.environ)
    overrides = {}
    if args.owner:
        overrides["owner"] = args.owner
    if args.org:
        overrides["owner_type"] = "org"
    if args.api_url:
        overrides["api_url"] = args.api_url
    if args.since:
        overrides["start"] = args.since
    if args.months is not None:
        overrides["lookback_months"] = args.months
        overrides["start"] = ""
    if args.by_branch:
        overrides["commit_scope"] = "branch"
    if args.workers is not None:
        overrides["max_workers"] = args.workers
    cfg = replace(cfg, **overrides)

    if not cfg.owner:
        print("Error: no owner given. Use --owner, GITHUB_OWNER, or owner in the config file.", file=sys.stderr)
        sys.exit(1)
    if not cfg.token:
        print("Error: no token given. Set GITHUB_TOKEN or token in the config file.", file=sys.stderr)
        sys.exit(1)

    try:
        run = run_pipeline(cfg)
        if args.output:
            path = write_json(run.reports, args.output)
            print(f"Report written to {path}", file=sys.stderr)
        elif args.log_output:
            log_json(run.reports)
        else:
            print(format_json(run.reports))
    except (RuntimeError, OSError) as e:
        print(f"Error fetching GitHub data: {e}", file=sys.stderr)
        sys.exit(1)

    if run.failures:
        print(
            f"Warning: {len(run.failures)} fetches failed and were reported as empty.",
            file=sys.stderr,
        )
    print(
        f"Collected {len(run.windows)} weeks for {len(run.reports)} repositories.",
        file=sys.stderr,
    )


if __name__ == "__main__":
    main()
