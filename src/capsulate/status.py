"""Git status aggregation and the human-readable status file.

Everything here is pure: the agent manager runs the git commands built by
``git_argv`` inside the container and hands the outputs over for parsing.
A ``GitStatus`` is a snapshot assembled from independent commands, so it
can mix state from before and after a concurrent change in the container.
"""

from __future__ import annotations

from datetime import datetime, timezone

from capsulate.models import Agent, GitStatus

STATUS_FILE_NAME = ".git-status.md"

# ── Git command templates ────────────────────────────────────────────────────

BRANCH = ("rev-parse", "--abbrev-ref", "HEAD")
COMMIT = ("rev-parse", "HEAD")
MODIFIED = ("diff", "--name-only", "HEAD")
UNTRACKED = ("ls-files", "--others", "--exclude-standard")
AHEAD_BEHIND = ("rev-list", "--left-right", "--count", "HEAD...@{upstream}")
BRANCH_VERBOSE = ("branch", "-v")
STATUS = ("status",)


def git_argv(repo_path: str, *args: str) -> list[str]:
    """``git -C <repo_path> <args...>`` as an argv list."""
    return ["git", "-C", repo_path, *args]


# ── Parsing ──────────────────────────────────────────────────────────────────


def _lines(output: str) -> list[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]


def parse_ahead_behind(output: str) -> tuple[int, int]:
    """Parse ``rev-list --left-right --count`` output; (0, 0) if unparseable."""
    parts = output.split()
    if len(parts) != 2:
        return 0, 0
    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        return 0, 0


def aggregate_git_status(
    *,
    branch: str,
    commit: str,
    modified: str,
    untracked: str,
    ahead_behind: str | None = None,
) -> GitStatus:
    """Combine raw command outputs into a ``GitStatus``.

    ``ahead_behind`` is None when the branch has no upstream, which yields
    zero counts.
    """
    ahead, behind = parse_ahead_behind(ahead_behind) if ahead_behind else (0, 0)
    return GitStatus(
        branch=branch.strip(),
        current_commit=commit.strip(),
        modified_files=_lines(modified),
        untracked_files=_lines(untracked),
        ahead_count=ahead,
        behind_count=behind,
    )


# ── Status file ──────────────────────────────────────────────────────────────


def render_status_file(
    agent: Agent,
    branch_output: str,
    status_output: str,
    *,
    now: datetime | None = None,
) -> str:
    """Markdown snapshot written to ``<host_workspace>/.git-status.md``."""
    now = now or datetime.now(timezone.utc)
    return (
        f"# Git Status for {agent.agent_id} ({agent.branch or 'no branch'})\n"
        f"Last updated: {now.isoformat()}\n"
        "\n"
        "## Current Branch\n"
        f"{branch_output.rstrip()}\n"
        "\n"
        "## Status\n"
        f"{status_output.rstrip()}\n"
    )
