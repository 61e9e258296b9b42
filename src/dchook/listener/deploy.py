"""Docker Compose redeploys triggered by accepted webhooks."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional, Protocol

import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter

LOGGER = structlog.get_logger("dchook.listener.deploy")

DEPLOYS_STARTED_COUNTER = GLOBAL_REGISTRY.register(Counter("dchook_deploys_started_total", "Deployments started"))
DEPLOYS_FAILED_COUNTER = GLOBAL_REGISTRY.register(Counter("dchook_deploys_failed_total", "Deployments that failed"))


class DeployError(RuntimeError):
    """A compose step exited unsuccessfully."""


class ComposeUnavailableError(RuntimeError):
    """The compose file or the docker CLI is unusable; raised at startup."""


class Deployer(Protocol):
    async def ensure_ready(self) -> None: ...

    async def deploy(self) -> None: ...


class ComposeDeployer:
    """Pulls images and recreates services for a single compose file."""

    def __init__(self, compose_file: Path, *, docker_binary: str = "docker") -> None:
        self.compose_file = compose_file
        self.docker_binary = docker_binary

    def compose_command(self, *args: str) -> list[str]:
        return [self.docker_binary, "compose", "-f", str(self.compose_file), *args]

    async def _run(self, command: list[str]) -> int:
        process = await asyncio.create_subprocess_exec(*command)
        return await process.wait()

    async def ensure_ready(self) -> None:
        if not self.compose_file.is_file():
            raise ComposeUnavailableError(f"Compose file not found: {self.compose_file}")
        try:
            process = await asyncio.create_subprocess_exec(
                self.docker_binary,
                "version",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            code = await process.wait()
        except OSError as exc:
            raise ComposeUnavailableError(f"Cannot access docker: {exc}") from exc
        if code != 0:
            raise ComposeUnavailableError(
                f"Cannot access docker (exit {code}); ensure docker is running and the user has access"
            )

    async def deploy(self) -> None:
        LOGGER.info("deploy_started", compose_file=str(self.compose_file))
        code = await self._run(self.compose_command("pull"))
        if code != 0:
            raise DeployError(f"pull failed with exit code {code}")
        code = await self._run(self.compose_command("up", "-d", "--remove-orphans"))
        if code != 0:
            raise DeployError(f"up failed with exit code {code}")
        LOGGER.info("deploy_complete", compose_file=str(self.compose_file))


class DeployDispatcher:
    """
    Starts deployments detached from the request that triggered them.

    Overlapping triggers are not serialized; each one runs its own
    pull/up sequence.
    """

    def __init__(self, deployer: Deployer) -> None:
        self.deployer = deployer
        self._tasks: set[asyncio.Task] = set()

    def trigger(self, *, client_ip: str, version: str, commit: str) -> asyncio.Task:
        DEPLOYS_STARTED_COUNTER.inc()
        LOGGER.info("deploy_triggered", client_ip=client_ip, client_version=version, client_commit=commit)
        task = asyncio.create_task(self._run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self) -> None:
        try:
            await self.deployer.deploy()
        except Exception as exc:
            DEPLOYS_FAILED_COUNTER.inc()
            LOGGER.error("deploy_failed", error=str(exc), error_type=type(exc).__name__)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight deployments, used on shutdown."""
        if not self._tasks:
            return
        await asyncio.wait(set(self._tasks), timeout=timeout)
