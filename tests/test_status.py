"""Tests for git status parsing and the status file."""

from datetime import datetime, timezone

from capsulate.models import Agent
from capsulate.status import (
    AHEAD_BEHIND,
    aggregate_git_status,
    git_argv,
    parse_ahead_behind,
    render_status_file,
)


class TestParsing:
    def test_git_argv(self):
        assert git_argv("/workspace/repo", *AHEAD_BEHIND) == [
            "git", "-C", "/workspace/repo",
            "rev-list", "--left-right", "--count", "HEAD...@{upstream}",
        ]

    def test_ahead_behind(self):
        assert parse_ahead_behind("3\t1\n") == (3, 1)
        assert parse_ahead_behind("") == (0, 0)
        assert parse_ahead_behind("x y") == (0, 0)

    def test_aggregate(self):
        status = aggregate_git_status(
            branch="feature-x\n",
            commit="abc123\n",
            modified="src/a.py\nsrc/b.py\n",
            untracked="\nnew.txt\n",
            ahead_behind="2\t0",
        )
        assert status.branch == "feature-x"
        assert status.current_commit == "abc123"
        assert status.modified_files == ["src/a.py", "src/b.py"]
        assert status.untracked_files == ["new.txt"]
        assert (status.ahead_count, status.behind_count) == (2, 0)

    def test_no_upstream_means_zero_counts(self):
        status = aggregate_git_status(
            branch="main", commit="abc", modified="", untracked="", ahead_behind=None
        )
        assert status.ahead_count == 0 and status.behind_count == 0
        assert status.is_clean


class TestStatusFile:
    def test_render(self):
        agent = Agent(
            agent_id="a1",
            container_name="capsulate-a1",
            host_workspace_path="/tmp/a1",
            branch="feature-x",
        )
        text = render_status_file(
            agent,
            "* feature-x abc123 init\n",
            "On branch feature-x\nnothing to commit\n",
            now=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        )
        assert text.startswith("# Git Status for a1 (feature-x)\n")
        assert "Last updated: 2024-01-02T03:04:05+00:00\n" in text
        assert "## Current Branch\n* feature-x abc123 init\n" in text
        assert text.endswith("## Status\nOn branch feature-x\nnothing to commit\n")

    def test_render_without_branch(self):
        agent = Agent(agent_id="a1", container_name="capsulate-a1", host_workspace_path="/tmp/a1")
        assert "(no branch)" in render_status_file(agent, "", "")
