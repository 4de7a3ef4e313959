"""Structured builder for the setup scripts run inside agent containers.

Scripts are assembled from argv lists; every token is passed through
``shlex.quote`` so agent ids, package names, branch names and paths can
never alter the shape of the command.  Names that end up as path
components are additionally validated against a conservative pattern.
"""

from __future__ import annotations

import re
import shlex

# Package names, team ids: one path component, no traversal
_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]{0,127}$")

# Agent ids also become container names: docker allows [a-zA-Z0-9][a-zA-Z0-9_.-]
_AGENT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

# Git ref names: path-like, validated further below
_BRANCH_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/+-]{0,254}$")


def validate_name(value: str, *, kind: str = "name") -> str:
    """Reject anything that is not a single safe path component."""
    if not value or not _NAME_RE.match(value) or ".." in value:
        raise ValueError(
            f"invalid {kind} {value!r}: must start with a letter or digit and contain "
            "only letters, digits, '.', '_', '+' or '-'"
        )
    return value


def validate_agent_id(value: str) -> str:
    """Like ``validate_name`` but restricted to what docker accepts in a container name."""
    if not value or not _AGENT_ID_RE.match(value) or ".." in value:
        raise ValueError(
            f"invalid agent id {value!r}: must start with a letter or digit and contain "
            "only letters, digits, '.', '_' or '-'"
        )
    return value


def validate_branch_name(value: str) -> str:
    """Subset of ``git check-ref-format --branch`` that is safe to pass around."""
    if (
        not value
        or not _BRANCH_RE.match(value)
        or ".." in value
        or "//" in value
        or value.endswith(("/", ".", ".lock"))
        or "/." in value
    ):
        raise ValueError(f"invalid branch name {value!r}")
    return value


class ShellScript:
    """An ordered list of quoted shell commands.

    >>> s = ShellScript(strict=True)
    >>> s.run("mkdir", "-p", "/workspace/node_modules")
    >>> s.render()
    'set -e\\nmkdir -p /workspace/node_modules\\n'
    """

    def __init__(self, *, strict: bool = True) -> None:
        self._strict = strict
        self._lines: list[str] = []

    def __bool__(self) -> bool:
        return bool(self._lines)

    def __len__(self) -> int:
        return len(self._lines)

    @property
    def lines(self) -> list[str]:
        return list(self._lines)

    def run(self, *argv: str) -> None:
        """Append one command; each argument is quoted individually."""
        if not argv:
            raise ValueError("empty command")
        self._lines.append(" ".join(shlex.quote(str(a)) for a in argv))

    def log(self, message: str) -> None:
        """Append an ``echo`` that writes *message* to the script output."""
        self.run("echo", message)

    def render(self) -> str:
        """Return the script text; empty string if no commands were added."""
        if not self._lines:
            return ""
        head = ["set -e"] if self._strict else []
        return "\n".join(head + self._lines) + "\n"

    def argv(self, shell: str = "/bin/sh") -> list[str]:
        """argv that runs the script via ``<shell> -c``."""
        return [shell, "-c", self.render()]
