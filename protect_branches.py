#!/usr/bin/env python3
"""protect_branches.py

Command-line utility that makes sure the default branch of every repository
owned by a GitHub user or organization is protected: admins are included,
pull requests need a code-owner review, stale reviews are kept.

Usage:
  python protect_branches.py -token <PERSONAL_ACCESS_TOKEN>                 # your own repos
  python protect_branches.py -token <TOKEN> -nouser -org my-org             # an organization
  python protect_branches.py -token <TOKEN> -nouser -org my-org -dry-run    # report only
  python protect_branches.py -token <TOKEN> -url https://ghe.example.com    # GitHub Enterprise

The token can also be provided via the GITHUB_TOKEN environment variable or
a `.env` file next to this script. Repositories listed under the
"exceptions" key of `./exception-repos.json` are left alone.
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, FrozenSet, Iterable, NoReturn, Optional

import requests
from dotenv import load_dotenv

from github_rest import (
    DEFAULT_API_URL,
    PER_PAGE,
    Branch,
    GitHubAPIError,
    GitHubClient,
    ProtectionRequest,
    PullRequestReviewEnforcement,
    Repository,
    RepositoryPage,
    enterprise_api_url,
)

PROJECT_ROOT = Path(__file__).resolve().parent
load_dotenv(PROJECT_ROOT / ".env", override=True)

BANNER = "pepper - %s\n"
VERSION = "v0.1.0"

DEFAULT_EXCEPTIONS_FILE = "./exception-repos.json"
EXCEPTIONS_KEY = "exceptions"

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised for problems detected before any network activity."""


class Outcome(str, Enum):
    ALREADY_PROTECTED = "already_protected"
    WOULD_UPDATE = "would_update"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class Config:
    token: str
    base_url: str
    org: str
    nouser: bool
    dry_run: bool
    debug: bool
    exceptions: FrozenSet[str]
    exceptions_file: str = DEFAULT_EXCEPTIONS_FILE
    log_dir: str = "logs"


# --- Exception filter --- #

def load_exceptions(path: str) -> FrozenSet[str]:
    """Load the set of "owner/name" repositories to skip from *path*.

    The file holds a JSON object; only the "exceptions" key is read and it
    must map to a list of full repository names.

    Raises:
        ConfigError: if the file cannot be read or does not have that shape.
    """
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"File error: {exc}") from exc
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Json error: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Json error: {path} must contain a JSON object")
    names = data.get(EXCEPTIONS_KEY, [])
    if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
        raise ConfigError(f"Json error: {EXCEPTIONS_KEY!r} in {path} must be a list of strings")
    return frozenset(names)


def is_excluded(exceptions: FrozenSet[str], full_name: str) -> bool:
    return full_name in exceptions


def should_handle(repo: Repository, subject: str, exceptions: FrozenSet[str]) -> bool:
    """A repository is handled only when *subject* owns it and it is not excluded.

    GitHub logins are case-insensitive, so ``-org ACME`` matches ``acme``.
    """
    return repo.owner.casefold() == subject.casefold() and not is_excluded(exceptions, repo.full_name)


# --- Reconciler --- #

def build_protection_request() -> ProtectionRequest:
    # Users and teams restrictions only apply to organization repositories.
    return ProtectionRequest(
        required_status_checks=None,
        required_pull_request_reviews=PullRequestReviewEnforcement(
            dismiss_stale_reviews=False,
            require_code_owner_reviews=True,
        ),
        enforce_admins=True,
        restrictions=None,
    )


def handle_branch(client: GitHubClient, repo: Repository, branch: Branch, dry_run: bool) -> Outcome:
    label = f"{repo.full_name}:{branch.name}"
    if branch.protected:
        print(f"[OK] {label} is already protected")
        logger.debug("%s is already protected", label)
        return Outcome.ALREADY_PROTECTED

    print(f"[UPDATE] {label} will be changed to protected")
    if dry_run:
        logger.info("Dry run: leaving %s unchanged", label)
        return Outcome.WOULD_UPDATE

    client.update_branch_protection(repo.owner, repo.name, branch.name, build_protection_request())
    print(f"[UPDATE] {label} has been changed to protected")
    logger.info("%s has been changed to protected", label)
    return Outcome.UPDATED


def handle_repo(client: GitHubClient, repo: Repository, dry_run: bool) -> Outcome:
    """Protect the default branch of *repo* unless it already is.

    A 404 or 403 on the branch lookup means the branch is missing or the token
    cannot see it; the repository is skipped without raising.
    """
    print(repo.full_name)
    print(repo.default_branch)
    try:
        branch = client.get_branch(repo.owner, repo.name, repo.default_branch)
    except GitHubAPIError as exc:
        if exc.status_code in (404, 403):
            logger.debug("Skipping %s: %s", repo.full_name, exc)
            return Outcome.SKIPPED
        raise
    return handle_branch(client, repo, branch, dry_run)


def handle_page(
    client: GitHubClient,
    config: Config,
    subject: str,
    repos: Iterable[Repository],
    stop_event: Optional[threading.Event] = None,
) -> Counter:
    """Handle every eligible repository of one page, in order.

    A failure on one repository is logged and does not stop the others.
    """
    outcomes: Counter = Counter()
    for repo in repos:
        if stop_event is not None and stop_event.is_set():
            break
        if not should_handle(repo, subject, config.exceptions):
            logger.debug("Ignoring %s", repo.full_name)
            continue
        try:
            outcomes[handle_repo(client, repo, config.dry_run)] += 1
        except (GitHubAPIError, requests.RequestException, KeyError) as exc:
            logger.warning("%s: %s", repo.full_name, exc)
            outcomes[Outcome.FAILED] += 1
    return outcomes


def update_repositories(
    client: GitHubClient,
    config: Config,
    subject: str,
    fetch_page: Callable[[int], RepositoryPage],
    stop_event: Optional[threading.Event] = None,
) -> Counter:
    """Walk every page returned by *fetch_page* and protect what needs it.

    Errors raised by *fetch_page* propagate: a listing that cannot be read
    ends the run.
    """
    outcomes: Counter = Counter()
    page: Optional[int] = 1
    while page is not None:
        if stop_event is not None and stop_event.is_set():
            break
        logger.debug("Fetching page %d for %s", page, subject)
        result = fetch_page(page)
        outcomes.update(handle_page(client, config, subject, result.repositories, stop_event))
        page = result.next_page
    return outcomes


def run(client: GitHubClient, config: Config, stop_event: Optional[threading.Event] = None) -> Counter:
    """Resolve the subject named by *config* and process its repositories."""
    if config.nouser:
        subject = config.org
        logger.info("Processing repositories of organization %s", subject)
        return update_repositories(
            client,
            config,
            subject,
            lambda page: client.list_org_repos(subject, page, PER_PAGE),
            stop_event,
        )
    subject = client.get_authenticated_user()
    logger.info("Processing repositories of user %s", subject)
    return update_repositories(
        client,
        config,
        subject,
        lambda page: client.list_user_repos(page, PER_PAGE),
        stop_event,
    )


# --- Signals --- #

def install_signal_handlers(stop_event: threading.Event) -> None:
    """Request a stop on SIGINT/SIGTERM; the loops finish the current request first.

    A second signal exits at once, even from inside a request that never
    returns.
    """

    def _handler(signum, frame):
        logger.info("Received %s, exiting.", signal.Signals(signum).name)
        if stop_event.is_set():
            raise SystemExit(0)
        stop_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


# --- CLI --- #

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pepper",
        description="Protect the default branch of every repository of a GitHub user or organization.",
    )
    parser.add_argument("-token", "--token", default="", help="GitHub API token (or set GITHUB_TOKEN env var)")
    parser.add_argument("-url", "--url", default="", help="GitHub Enterprise URL")
    parser.add_argument("-org", "--org", default="", help="organization to include")
    parser.add_argument("-nouser", "--nouser", action="store_true", help="do not include your user")
    parser.add_argument(
        "-dry-run",
        "--dry-run",
        dest="dry_run",
        action="store_true",
        help="do not change branch settings just print the changes that would occur",
    )
    parser.add_argument("-v", "-version", "--version", action="version", version=VERSION, help="print version and exit")
    parser.add_argument("-d", "--debug", action="store_true", help="run in debug mode")
    parser.add_argument("--exceptions-file", default=DEFAULT_EXCEPTIONS_FILE, help="JSON file listing repositories to skip")
    parser.add_argument("--log-dir", default="logs", help="Directory to save timestamped logs")
    return parser


def build_config(args: argparse.Namespace) -> Config:
    """Validate parsed arguments and collect them into a :class:`Config`."""
    token = args.token or os.getenv("GITHUB_TOKEN", "")
    if not token:
        raise ConfigError("GitHub token cannot be empty.")
    if args.nouser and not args.org:
        raise ConfigError("no organizations provided")
    base_url = enterprise_api_url(args.url) if args.url else os.getenv("GITHUB_API_URL", DEFAULT_API_URL)
    return Config(
        token=token,
        base_url=base_url,
        org=args.org,
        nouser=args.nouser,
        dry_run=args.dry_run,
        debug=args.debug,
        exceptions=load_exceptions(args.exceptions_file),
        exceptions_file=args.exceptions_file,
        log_dir=args.log_dir,
    )


def configure_logging(log_dir: str, debug: bool) -> Path:
    """Send DEBUG and up to a timestamped file and INFO (or DEBUG) to the console."""
    debug_log_dir = Path(log_dir)
    debug_log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
    log_file = debug_log_dir / f"{Path(sys.argv[0]).stem}_{timestamp}.log"
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%dT%H:%M:%S%z")
    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)
    return log_file


def _usage_and_exit(parser: argparse.ArgumentParser, message: str, exit_code: int) -> NoReturn:
    if message:
        sys.stderr.write(message + "\n\n")
    sys.stderr.write(BANNER % VERSION)
    parser.print_help(sys.stderr)
    sys.stderr.write("\n")
    sys.exit(exit_code)


def cli(argv: Optional[list] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = build_config(args)
    except ConfigError as exc:
        _usage_and_exit(parser, str(exc), 1)

    start_time = time.perf_counter()
    configure_logging(config.log_dir, config.debug)
    mode = "dry run" if config.dry_run else "live run"
    logger.info("Starting %s %s (%s), %d excluded repositories", parser.prog, VERSION, mode, len(config.exceptions))

    stop_event = threading.Event()
    install_signal_handlers(stop_event)

    client = GitHubClient(config.token, config.base_url)
    try:
        outcomes = run(client, config, stop_event)
    except KeyError as exc:
        logger.critical("Repository enumeration failed: unexpected payload, missing %s", exc)
        sys.exit(1)
    except (GitHubAPIError, requests.RequestException) as exc:
        logger.critical("Repository enumeration failed: %s", exc)
        sys.exit(1)

    logger.info(
        "Summary: %d updated, %d would update, %d already protected, %d skipped, %d failed",
        outcomes[Outcome.UPDATED],
        outcomes[Outcome.WOULD_UPDATE],
        outcomes[Outcome.ALREADY_PROTECTED],
        outcomes[Outcome.SKIPPED],
        outcomes[Outcome.FAILED],
    )
    logger.info("Total GitHub API calls: %d", client.api_calls)
    logger.info("Total runtime: %.2f seconds", time.perf_counter() - start_time)


if __name__ == "__main__":
    cli()
