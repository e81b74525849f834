# -----------------------------------------------------------------------------
# DOCKER PROVIDER
# -----------------------------------------------------------------------------
# Responsibility: A wrapper around the Docker SDK with connection validation,
# DOCKER_HOST proxy support and detailed error reporting.
#
# This is part of the Infrastructure layer - it hands a live DockerClient to
# the Foundry without exposing SDK connection details.
# -----------------------------------------------------------------------------

import os
import platform
import subprocess
import time

import docker
from docker import DockerClient
from docker.errors import DockerException
from rich.console import Console
from rich.panel import Panel

console = Console()

# Image builds can stream for a long time before the daemon answers
CLIENT_TIMEOUT_SECONDS = 600
WAKE_ATTEMPTS = 60


class DockerProviderError(Exception):
    """Raised when Docker connection fails and cannot be recovered."""

    pass


class DockerProvider:
    """
    Docker SDK wrapper with optional auto-wake.

    Connects to DOCKER_HOST when set (e.g. a socket proxy), otherwise to the
    local engine described by the environment.
    """

    def __init__(
        self,
        auto_wake: bool = False,
        base_url: str | None = None,
        timeout: int = CLIENT_TIMEOUT_SECONDS,
    ) -> None:
        """
        Initialize the Docker provider.

        Args:
            auto_wake: If True, attempt to start Docker Desktop if it's sleeping.
            base_url: Engine URL; defaults to DOCKER_HOST.
            timeout: Client-side API timeout in seconds.
        """
        self._client: DockerClient | None = None
        self._auto_wake = auto_wake
        self._base_url = base_url or os.getenv("DOCKER_HOST")
        self._timeout = timeout

        self._connect()

    def _open(self) -> DockerClient:
        if self._base_url:
            return docker.DockerClient(base_url=self._base_url, timeout=self._timeout)
        return docker.from_env(timeout=self._timeout)

    def _wake_docker(self) -> DockerClient | None:
        """Start a local engine and poll until it answers; None when it never does."""
        system = platform.system()
        console.print("[yellow][DOCKER] Engine sleeping. Attempting auto-wake...[/yellow]")

        try:
            if system == "Darwin":
                subprocess.run(["open", "-a", "Docker"], check=False)
            elif system == "Linux":
                # user-level systemctl avoids a sudo prompt
                subprocess.run(["systemctl", "--user", "start", "docker"], check=False)
            else:
                console.print(f"[yellow][DOCKER] Auto-wake not supported on {system}[/yellow]")
                return None
        except OSError as e:
            console.print(f"[red][DOCKER] Auto-wake failed: {e}[/red]")
            return None

        with console.status("[yellow]Waiting for Docker Engine (up to 60s)...[/yellow]"):
            for _ in range(WAKE_ATTEMPTS):
                try:
                    client = self._open()
                    client.ping()
                    console.print("[green][DOCKER] Engine Online.[/green]")
                    return client
                except DockerException:
                    time.sleep(1)

        console.print("[red][DOCKER] Wake timeout - Docker did not respond[/red]")
        return None

    def _connect(self) -> None:
        """Open and ping the client, falling back to auto-wake when enabled."""
        try:
            self._client = self._open()
            self._client.ping()
            target = self._base_url or "local engine"
            console.print(f"[green][DOCKER] Connected to {target}[/green]")
        except DockerException as e:
            self._client = self._wake_docker() if self._auto_wake else None

            if self._client is None:
                console.print(
                    Panel(
                        "[bold red]Docker Engine Unavailable[/bold red]\n\n"
                        f"{e}\n\n"
                        "Start Docker (or fix DOCKER_HOST) and rerun slipway.",
                        title="BUILD HALTED",
                        border_style="red",
                    )
                )
                raise DockerProviderError(f"Docker Engine is not available: {e}") from e

    def get_client(self) -> DockerClient:
        """The connected client, pinged first so builds fail fast on a dead engine."""
        if self._client is None:
            raise DockerProviderError("Docker client not initialized")

        try:
            self._client.ping()
            return self._client
        except DockerException as e:
            console.print(f"[red][DOCKER] Connection lost: {e}[/red]")
            raise DockerProviderError(f"Docker connection lost: {e}") from e

