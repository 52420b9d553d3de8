#!/usr/bin/env python3
"""api_calls_estimator.py

Estimate the number of GitHub REST calls *protect_branches.py* makes in one
run against an account of a given size.

Calls modelled
--------------
1. ``GET /user`` once, in user mode only (resolves the subject login).
2. One repository listing call per page of ``PER_PAGE`` repositories.
3. ``GET /repos/{owner}/{repo}/branches/{branch}`` per eligible repository
   (owned by the subject and not in the exception file).
4. ``PUT .../protection`` per eligible repository whose default branch is not
   yet protected, skipped entirely in dry-run mode.

Adjust the constants at the top of the file to explore other account sizes.
"""
from __future__ import annotations

from dataclasses import dataclass

from github_rest import PER_PAGE

NUM_REPOS: int = 120  # repositories returned by the listing
NUM_EXCEPTIONS: int = 5  # repositories named in exception-repos.json
FOREIGN_REPOS: int = 0  # listed repositories owned by someone else
UNPROTECTED_RATIO: float = 0.25  # share of eligible repos without protection


@dataclass
class Estimate:
    method: str
    description: str
    calls: int

    def __str__(self) -> str:  # pretty print
        return f"{self.method:18} | {self.calls:8,} calls | {self.description}"


def ceildiv(a: int, b: int) -> int:
    return (a + b - 1) // b


def eligible_repos(num_repos: int, num_exceptions: int, foreign_repos: int) -> int:
    return max(num_repos - num_exceptions - foreign_repos, 0)


def protection_run(
    num_repos: int,
    num_exceptions: int = 0,
    foreign_repos: int = 0,
    unprotected_ratio: float = 0.0,
    *,
    user_mode: bool = True,
    dry_run: bool = False,
) -> int:
    """Total REST calls for one run.

    An empty listing still costs one page request.
    """
    eligible = eligible_repos(num_repos, num_exceptions, foreign_repos)
    pages = max(ceildiv(num_repos, PER_PAGE), 1)
    updates = 0 if dry_run else round(eligible * unprotected_ratio)
    return (1 if user_mode else 0) + pages + eligible + updates


if __name__ == "__main__":
    scenarios = [
        Estimate(
            "Org (live)",
            "`-nouser -org <org>`",
            protection_run(NUM_REPOS, NUM_EXCEPTIONS, FOREIGN_REPOS, UNPROTECTED_RATIO, user_mode=False),
        ),
        Estimate(
            "Org (dry run)",
            "`-nouser -org <org> -dry-run`",
            protection_run(NUM_REPOS, NUM_EXCEPTIONS, FOREIGN_REPOS, UNPROTECTED_RATIO, user_mode=False, dry_run=True),
        ),
        Estimate(
            "User (live)",
            "authenticated user's own repositories",
            protection_run(NUM_REPOS, NUM_EXCEPTIONS, FOREIGN_REPOS, UNPROTECTED_RATIO),
        ),
    ]

    print("API CALL ESTIMATES (", NUM_REPOS, "repos,", NUM_EXCEPTIONS, "exceptions)")
    print("Method             |    Calls | Notes")
    print("-" * 60)
    for est in scenarios:
        print(est)

    print("\nAssumptions:")
    print(f" • Listing pages hold {PER_PAGE} repositories.")
    print(" • 404/403 branch lookups still cost one call each.")
    print(" • Second runs are cheaper: protected branches need no update.")
