"""Container runtime capability.

``RuntimeClient`` is the narrow interface the lifecycle manager consumes:
list / create / start / stop / remove / exec / stats, plus the image
checks needed to bootstrap the base image.  ``DockerRuntime`` implements it
on top of the ``docker`` CLI, driven through asyncio subprocesses so no
call ever blocks the event loop.

Cancelling a coroutine (or hitting its timeout) kills the underlying
``docker`` process; whatever the daemon already committed stays committed.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol, runtime_checkable

from capsulate.errors import RuntimeClientError
from capsulate.models import ContainerInfo, ContainerSpec, ExecResult

logger = logging.getLogger(__name__)

_NO_SUCH_CONTAINER = ("No such container", "is not running")


@runtime_checkable
class RuntimeClient(Protocol):
    """Capability interface over a container engine."""

    async def list_containers(self, *, name: str | None = None) -> list[ContainerInfo]: ...

    async def inspect_container(self, container_id: str) -> dict[str, Any] | None: ...

    async def create_container(self, spec: ContainerSpec) -> str: ...

    async def start_container(self, container_id: str) -> None: ...

    async def stop_container(self, container_id: str, timeout: int) -> None: ...

    async def remove_container(self, container_id: str) -> None: ...

    async def exec(
        self,
        container_id: str,
        argv: list[str],
        *,
        workdir: str | None = None,
        timeout: float | None = None,
    ) -> ExecResult: ...

    async def stats(self, container_id: str) -> dict[str, Any]: ...

    async def image_exists(self, image: str) -> bool: ...

    async def build_image(self, image: str, dockerfile: str) -> None: ...


class DockerRuntime:
    """``RuntimeClient`` backed by the docker CLI."""

    def __init__(self, binary: str = "docker", *, default_timeout: float = 120) -> None:
        self._binary = binary
        self._default_timeout = default_timeout

    # ── Containers ───────────────────────────────────────────────────────

    async def list_containers(self, *, name: str | None = None) -> list[ContainerInfo]:
        """List containers (running or not), optionally by exact name."""
        args = ["ps", "--all", "--no-trunc", "--format", "{{json .}}"]
        if name:
            args += ["--filter", f"name=^/?{name}$"]
        rc, stdout, stderr = await self._docker(*args)
        if rc != 0:
            raise RuntimeClientError(f"failed to list containers: {stderr.strip()}")

        containers: list[ContainerInfo] = []
        for line in stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Unparseable docker ps line: %s", line)
                continue
            names = [n.lstrip("/") for n in str(row.get("Names", "")).split(",") if n]
            info = ContainerInfo(
                id=row.get("ID", ""),
                name=names[0] if names else "",
                state=str(row.get("State", "")).lower(),
                image=row.get("Image", ""),
                labels=_parse_label_string(row.get("Labels", "")),
            )
            if name and name not in names:
                continue
            containers.append(info)
        return containers

    async def inspect_container(self, container_id: str) -> dict[str, Any] | None:
        rc, stdout, stderr = await self._docker("inspect", "--type", "container", container_id)
        if rc != 0:
            if _is_missing(stderr):
                return None
            raise RuntimeClientError(f"failed to inspect container {container_id}: {stderr.strip()}")
        data = json.loads(stdout or "[]")
        return data[0] if data else None

    async def create_container(self, spec: ContainerSpec) -> str:
        args: list[str] = ["create", "--name", spec.name, "--tty"]
        for key, value in spec.labels.items():
            args += ["--label", f"{key}={value}"]
        for key, value in spec.env.items():
            args += ["--env", f"{key}={value}"]
        for mount in spec.mounts:
            args += ["--mount", mount.to_cli()]
        for cap in spec.cap_add:
            args += ["--cap-add", cap]
        for opt in spec.security_opt:
            args += ["--security-opt", opt]
        if spec.working_dir:
            args += ["--workdir", spec.working_dir]
        args.append(spec.image)
        args.extend(spec.command)

        rc, stdout, stderr = await self._docker(*args)
        if rc != 0:
            raise RuntimeClientError(f"failed to create container {spec.name}: {stderr.strip()}")
        container_id = stdout.strip().splitlines()[-1] if stdout.strip() else ""
        logger.debug("Created container %s (%s)", spec.name, container_id[:12])
        return container_id

    async def start_container(self, container_id: str) -> None:
        rc, _, stderr = await self._docker("start", container_id)
        if rc != 0:
            raise RuntimeClientError(f"failed to start container {container_id}: {stderr.strip()}")

    async def stop_container(self, container_id: str, timeout: int) -> None:
        # docker stop waits up to `timeout` before SIGKILL; allow slack on top
        rc, _, stderr = await self._docker(
            "stop", "--time", str(timeout), container_id, timeout=timeout + 30
        )
        if rc != 0:
            raise RuntimeClientError(f"failed to stop container {container_id}: {stderr.strip()}")

    async def remove_container(self, container_id: str) -> None:
        rc, _, stderr = await self._docker("rm", "--force", "--volumes", container_id)
        if rc != 0:
            raise RuntimeClientError(f"failed to remove container {container_id}: {stderr.strip()}")

    async def exec(
        self,
        container_id: str,
        argv: list[str],
        *,
        workdir: str | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        args = ["exec"]
        if workdir:
            args += ["--workdir", workdir]
        args.append(container_id)
        args.extend(argv)
        rc, stdout, stderr = await self._docker(*args, timeout=timeout)
        # docker exec reports daemon-side failures with its own message, which
        # is not something the command inside the container produced
        if rc != 0 and stderr.startswith(("Error response from daemon", "Error: No such container")):
            raise RuntimeClientError(f"exec in {container_id} failed: {stderr.strip()}")
        return ExecResult(exit_code=rc, stdout=stdout, stderr=stderr)

    async def stats(self, container_id: str) -> dict[str, Any]:
        """One snapshot of ``docker stats`` for a container (formatted fields)."""
        rc, stdout, stderr = await self._docker(
            "stats", "--no-stream", "--no-trunc", "--format", "{{json .}}", container_id
        )
        if rc != 0:
            raise RuntimeClientError(f"failed to read stats for {container_id}: {stderr.strip()}")
        line = stdout.strip().splitlines()[0] if stdout.strip() else "{}"
        return json.loads(line)

    # ── Images ───────────────────────────────────────────────────────────

    async def image_exists(self, image: str) -> bool:
        rc, _, _ = await self._docker("image", "inspect", image)
        return rc == 0

    async def build_image(self, image: str, dockerfile: str) -> None:
        logger.info("Building base image %s", image)
        rc, _, stderr = await self._docker(
            "build", "--tag", image, "-", stdin=dockerfile, timeout=1800
        )
        if rc != 0:
            raise RuntimeClientError(f"failed to build image {image}: {stderr.strip()}")
        logger.info("Base image %s built", image)

    # ── Private helpers ──────────────────────────────────────────────────

    async def _docker(
        self,
        *args: str,
        stdin: str | None = None,
        timeout: float | None = None,
    ) -> tuple[int, str, str]:
        """Run the docker CLI asynchronously.

        Returns (returncode, stdout, stderr).
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                self._binary,
                *args,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise RuntimeClientError(f"container runtime binary not found: {self._binary}") from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(stdin.encode() if stdin is not None else None),
                timeout=timeout or self._default_timeout,
            )
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise RuntimeClientError(
                f"'{self._binary} {args[0]}' timed out after {timeout or self._default_timeout}s"
            ) from exc
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise
        return (
            proc.returncode or 0,
            (stdout_bytes or b"").decode(errors="replace"),
            (stderr_bytes or b"").decode(errors="replace"),
        )


def _is_missing(stderr: str) -> bool:
    return any(marker in stderr for marker in _NO_SUCH_CONTAINER)


def _parse_label_string(raw: str) -> dict[str, str]:
    """Parse docker ps' ``k=v,k=v`` label rendering (values must not contain commas)."""
    labels: dict[str, str] = {}
    for part in str(raw).split(","):
        if "=" in part:
            key, value = part.split("=", 1)
            labels[key.strip()] = value
    return labels
