"""
Activity Bot — creates a branch, commits synthetic edits, opens a PR and merges it.

Usage:
    activity-bot --config config.yaml [--run-now]

Without --run-now the bot stays up and runs one cycle per tick of
`cron_schedule`. Stop it with Ctrl+C / SIGTERM; an in-flight cycle finishes
first.

Requirements:
    - GITHUB_TOKEN environment variable (repo write access), or `token_file`
    - a local clone of the target repository at `repo_path`

Failed cycles are never rolled back: stale `bot-update-*` branches and open PRs
are left on the remote for manual cleanup.
"""

from __future__ import annotations

import argparse
import os
import signal
import sys
from typing import Optional

import structlog
from dotenv import load_dotenv

from activity_bot.config import load_config, validate_config
from activity_bot.errors import ConfigError
from activity_bot.logging_config import configure_logging
from activity_bot.orchestrator import Orchestrator
from activity_bot.scheduler import Scheduler
from activity_bot.tools.git_repo import GitRepo
from activity_bot.tools.github_pr import PullRequestClient

log = structlog.get_logger()

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bot to automatically create GitHub activity")
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to the config file")
    parser.add_argument("--run-now", action="store_true",
                        help="Run the bot immediately once and exit")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
        validate_config(config)
    except ConfigError as e:
        log.error("bot.config_error", config_path=args.config, error=str(e))
        return EXIT_CONFIG_ERROR

    configure_logging(debug=config.debug, json=args.json_logs)
    log.info("bot.config_loaded",
             config_path=args.config,
             repo=config.repo,
             repo_path=config.repo_path,
             schedule=config.cron_schedule,
             files=[config.min_files, config.max_files],
             lines=[config.min_lines, config.max_lines],
             github_token_set=bool(config.token),
             run_now=args.run_now,
             pid=os.getpid())

    repo = GitRepo(config.repo_path, token=config.token, username=config.username)
    with PullRequestClient(config.repo, config.token) as prs:
        orchestrator = Orchestrator(config, repo, prs)
        try:
            scheduler = Scheduler(orchestrator, config.cron_schedule, tz=config.timezone)
        except ConfigError as e:
            log.error("bot.config_error", error=str(e))
            return EXIT_CONFIG_ERROR

        if args.run_now:
            log.info("bot.run_now")
            run = scheduler.run_once()
            print(run.describe())
            return EXIT_OK if run.succeeded else EXIT_RUN_FAILED

        def handle_signal(signum, frame):
            log.info("bot.shutdown_requested", signal=signal.Signals(signum).name)
            scheduler.stop()

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

        scheduler.run_forever()
        log.info("bot.exit", mode="continuous")
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
