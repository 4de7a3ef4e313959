"""Capsulate CLI entry point.

Each invocation builds a fresh registry and adopts the ``capsulate-*``
containers already running, so commands compose across invocations the
same way they do against a long-running ``capsulate serve``.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from capsulate.agent_manager import AgentManager
from capsulate.config import CapsulateConfig, load_config
from capsulate.errors import AgentValidationError, CapsulateError
from capsulate.isolation.dependencies import DEFAULT_VERSION
from capsulate.metrics import CapsulateMetrics, clear_flushed, load_flushed
from capsulate.models import AgentConfig, DependencyLevel
from capsulate.monitor import ContainerMonitor
from capsulate.registry import AgentRegistry
from capsulate.runtime import DockerRuntime

logger = logging.getLogger(__name__)

# Commands that only touch host directories or flushed metrics
_HOST_ONLY = {"create-team", "add-team-dep", "add-core-dep", "metrics"}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="capsulate",
        description="Capsulate: isolated, branch-bound agent containers",
    )
    parser.add_argument(
        "--root",
        type=Path,
        default=None,
        help="Project root holding .capsulate/ (default: $CAPSULATE_ROOT or current directory)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )
    sub = parser.add_subparsers(dest="command")

    # capsulate create
    p = sub.add_parser("create", help="Create a new agent container")
    p.add_argument("agent_id")
    p.add_argument("--repo", default="", help="Git repository URL to clone")
    p.add_argument("--branch", default="", help="Branch to work on (default: repository default)")
    p.add_argument("--depth", type=int, default=0, help="Clone depth (default: full history)")
    p.add_argument(
        "--git-config",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="git config pair applied after clone (repeatable)",
    )
    p.add_argument(
        "--dependency-level",
        default=DependencyLevel.CONTAINER.value,
        choices=[level.value for level in DependencyLevel],
    )
    p.add_argument("--team", default="", help="Team id (required for --dependency-level team)")
    p.add_argument("--override-deps", default="", help="Comma-separated packages to resolve locally")
    p.add_argument("--overlay", action="store_true", help="Use a copy-on-write view of the base repo")

    p = sub.add_parser("destroy", help="Stop and remove an agent container")
    p.add_argument("agent_id")

    p = sub.add_parser("exec", help="Run a shell command in an agent container")
    p.add_argument("agent_id")
    p.add_argument("cmd", nargs=argparse.REMAINDER)

    p = sub.add_parser("branch", help="Create a branch in an agent's repository")
    p.add_argument("agent_id")
    p.add_argument("name")
    p.add_argument("--checkout", action="store_true", help="Check the branch out afterwards")

    p = sub.add_parser("checkout", help="Check out a branch in an agent's repository")
    p.add_argument("agent_id")
    p.add_argument("branch")

    p = sub.add_parser("status", help="Show git status of an agent")
    p.add_argument("agent_id")
    p.add_argument("--format", choices=["text", "json"], default="text")

    p = sub.add_parser("update-status", help="Rewrite the agent's .git-status.md")
    p.add_argument("agent_id")

    p = sub.add_parser("list", help="List agents")
    p.add_argument("--format", choices=["text", "json"], default="text")

    p = sub.add_parser("list-deps", help="List an agent's dependencies per tier")
    p.add_argument("agent_id")
    p.add_argument("--format", choices=["text", "json"], default="text")

    p = sub.add_parser("add-dep", help="Add a package to an agent's container tier")
    p.add_argument("agent_id")
    p.add_argument("package")
    p.add_argument("--version", default=DEFAULT_VERSION)

    p = sub.add_parser("sync-deps", help="Re-link an agent's dependencies")
    p.add_argument("agent_id")

    p = sub.add_parser("overlay-status", help="Show overlay layer file counts")
    p.add_argument("agent_id")

    p = sub.add_parser("create-team", help="Create a team dependency tier")
    p.add_argument("team_id")

    p = sub.add_parser("add-team-dep", help="Add a package to a team tier")
    p.add_argument("team_id")
    p.add_argument("package")
    p.add_argument("--version", default=DEFAULT_VERSION)

    p = sub.add_parser("add-core-dep", help="Add a package to the core tier")
    p.add_argument("package")
    p.add_argument("--version", default=DEFAULT_VERSION)

    p = sub.add_parser("metrics", help="Show or clear collected metrics")
    p.add_argument("action", choices=["show", "clear"])
    p.add_argument("--format", choices=["text", "json"], default="text")

    p = sub.add_parser("monitor", help="Sample container resource usage once")
    p.add_argument("action", choices=["show"])
    p.add_argument("agent_id", nargs="?")
    p.add_argument("--format", choices=["text", "json"], default="text")

    p = sub.add_parser("serve", help="Start the REST server")
    p.add_argument("--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)")
    p.add_argument("--port", type=int, default=8000, help="Port to bind to (default: 8000)")

    return parser


# ── Command handlers ─────────────────────────────────────────────────────────


def _parse_git_config(pairs: list[str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep:
            raise AgentValidationError(f"--git-config expects KEY=VALUE, got {pair!r}", operation="create")
        out[key.strip()] = value
    return out


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _run_host_command(args: argparse.Namespace, config: CapsulateConfig) -> int:
    metrics_dir = config.state_dir / "metrics"

    if args.command == "metrics":
        if args.action == "clear":
            removed = clear_flushed(metrics_dir)
            print(f"Cleared {removed} metrics snapshot(s)")
            return 0
        summary = load_flushed(metrics_dir)
        if args.format == "json":
            _print_json(summary)
            return 0
        for section, categories in summary.items():
            if not categories:
                continue
            print(f"{section}:")
            for category, ops in sorted(categories.items()):
                for op, value in sorted(ops.items()):
                    print(f"  {category}.{op}: {value:g}")
        return 0

    manager = AgentManager(config, DockerRuntime(config.container.docker_binary), AgentRegistry())
    try:
        if args.command == "create-team":
            path = manager.create_team(args.team_id)
            print(f"Team {args.team_id} ready at {path}")
        elif args.command == "add-team-dep":
            path = manager.add_team_dependency(args.team_id, args.package, args.version)
            print(f"Added {args.package}@{args.version} to team {args.team_id} ({path})")
        elif args.command == "add-core-dep":
            path = manager.add_core_dependency(args.package, args.version)
            print(f"Added {args.package}@{args.version} to core ({path})")
    finally:
        manager.metrics.flush(metrics_dir)
    return 0


async def _run_agent_command(args: argparse.Namespace, manager: AgentManager) -> int:
    await manager.adopt_existing()
    cmd = args.command

    if cmd == "create":
        config = AgentConfig.parse(
            {
                "agent_id": args.agent_id,
                "repo_url": args.repo,
                "branch": args.branch,
                "depth": args.depth,
                "git_config": _parse_git_config(args.git_config),
                "dependency_level": args.dependency_level,
                "team_id": args.team,
                "override_dependencies": args.override_deps,
                "use_overlay": args.overlay,
            }
        )
        agent = await manager.create(config)
        print(f"Agent {agent.agent_id} created (container {agent.container_name})")
        if agent.branch:
            print(f"  branch:  {agent.branch}")
        print(f"  workdir: {agent.workdir}")
        print(f"  host:    {agent.host_workspace_path}")
        return 0

    if cmd == "destroy":
        await manager.destroy(args.agent_id)
        print(f"Agent {args.agent_id} destroyed")
        return 0

    if cmd == "exec":
        words = args.cmd[1:] if args.cmd[:1] == ["--"] else args.cmd
        command = " ".join(words).strip()
        if not command:
            print("Error: no command given", file=sys.stderr)
            return 2
        result = await manager.exec_command(args.agent_id, command)
        if result.stdout:
            sys.stdout.write(result.stdout)
        if result.stderr:
            sys.stderr.write(result.stderr)
        return result.exit_code

    if cmd == "branch":
        await manager.create_branch(args.agent_id, args.name, checkout=args.checkout)
        print(f"Created branch {args.name}" + (" and checked it out" if args.checkout else ""))
        return 0

    if cmd == "checkout":
        await manager.checkout_branch(args.agent_id, args.branch)
        print(f"Checked out {args.branch}")
        return 0

    if cmd == "status":
        status = await manager.get_git_status(args.agent_id)
        if args.format == "json":
            _print_json(status.model_dump())
            return 0
        print(f"Branch: {status.branch}")
        print(f"Commit: {status.current_commit}")
        print(f"Ahead: {status.ahead_count}, Behind: {status.behind_count}\n")
        print("Modified files:")
        for f in status.modified_files:
            print(f"  - {f}")
        print("\nUntracked files:")
        for f in status.untracked_files:
            print(f"  - {f}")
        return 0

    if cmd == "update-status":
        path = await manager.update_status_file(args.agent_id)
        print(f"Status file updated at {path}")
        return 0

    if cmd == "list":
        agents = manager.list_agents()
        if args.format == "json":
            _print_json([a.model_dump(mode="json") for a in agents])
            return 0
        if not agents:
            print("No agents")
        for a in agents:
            print(f"{a.agent_id:<24} {a.status.value:<10} {a.dependency_level.value:<10} {a.branch or '-'}")
        return 0

    if cmd == "list-deps":
        listing = await manager.list_dependencies(args.agent_id)
        if args.format == "json":
            _print_json(listing.model_dump(mode="json"))
            return 0
        for tier, packages in (("core", listing.core), ("team", listing.team), ("container", listing.container)):
            print(f"{tier}:")
            for name, version in packages.items():
                print(f"  {name} {version}")
        if listing.overrides:
            print(f"overrides: {', '.join(listing.overrides)}")
        print("linked:")
        for name, tier in sorted(listing.linked.items()):
            print(f"  {name} -> {tier.value}")
        return 0

    if cmd == "add-dep":
        await manager.add_dependency(args.agent_id, args.package, args.version)
        print(f"Added {args.package}@{args.version} to agent {args.agent_id}")
        return 0

    if cmd == "sync-deps":
        await manager.sync_dependencies(args.agent_id)
        print(f"Dependencies re-linked for {args.agent_id}")
        return 0

    if cmd == "overlay-status":
        status = await manager.overlay_status(args.agent_id)
        if not status.enabled:
            print(f"Overlay is not enabled for agent {args.agent_id}")
            return 0
        print(f"Overlay for agent {args.agent_id}:")
        print(f"  base:   {status.base_files} files")
        print(f"  diff:   {status.diff_files} files")
        print(f"  merged: {status.merged_files} files")
        return 0

    if cmd == "monitor":
        monitor = ContainerMonitor(manager.runtime, manager.registry, manager.metrics)
        if args.agent_id:
            manager.get_agent(args.agent_id)
        snaps = await monitor.poll()
        rows = [s for s in snaps.values() if not args.agent_id or s.agent_id == args.agent_id]
        if args.format == "json":
            _print_json([s.to_dict() for s in rows])
            return 0
        if not rows:
            print("No container stats available")
        for s in rows:
            print(
                f"{s.agent_id:<24} cpu {s.cpu_percent:6.2f}%  mem {s.memory_usage_bytes / 1024**2:8.1f} MiB "
                f"({s.memory_percent:5.1f}%)  net {s.network_rx_bytes}/{s.network_tx_bytes} B  "
                f"blk {s.block_read_bytes}/{s.block_write_bytes} B"
            )
        return 0

    raise ValueError(f"unknown command {cmd!r}")


def _serve(args: argparse.Namespace, config: CapsulateConfig) -> None:
    import uvicorn

    from capsulate.server import CapsulateServer, create_app

    app = create_app(CapsulateServer(config))
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        config = load_config(args.root)
    except ValueError as exc:
        print(f"Error: invalid configuration: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.command == "serve":
        _serve(args, config)
        return

    try:
        if args.command in _HOST_ONLY:
            code = _run_host_command(args, config)
        else:
            metrics = CapsulateMetrics()
            manager = AgentManager(
                config, DockerRuntime(config.container.docker_binary), AgentRegistry(), metrics
            )
            try:
                code = asyncio.run(_run_agent_command(args, manager))
            finally:
                metrics.flush(config.state_dir / "metrics")
    except CapsulateError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    sys.exit(code)


if __name__ == "__main__":
    main()
