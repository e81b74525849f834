# Copyright 2026 Pramod Kumar Voola
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

# -----------------------------------------------------------------------------
# THE DEPLOYER - AZURE RESOURCE MANAGER HAND-OFF
# -----------------------------------------------------------------------------
# Responsibility: Hand a validated template to Azure Resource Manager through
# the Azure CLI and report what it did.
#
# ARM owns create-or-update, ordering and RBAC. Failures (naming conflicts,
# quota, permissions) are surfaced with the CLI's own message; nothing is
# retried or rolled back here.
# -----------------------------------------------------------------------------

import json
import os
import shutil
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path

import requests
from rich.console import Console

from src.core.template import build_parameters
from src.domain.models import TemplateParameters

console = Console()

# The az CLI can hang on network issues or interactive login prompts
DEPLOY_TIMEOUT_SECONDS = int(os.getenv("SLIPWAY_DEPLOY_TIMEOUT", "1800"))

# what-if change types that leave a resource untouched
UNCHANGED = {"NoChange", "Ignore"}


class DeploymentError(Exception):
    """Raised when an ARM deployment (or its pre-checks) fails."""

    pass


@dataclass
class DeploymentResult:
    """Outcome of a completed ARM deployment."""

    name: str
    resource_group: str
    provisioning_state: str
    outputs: dict[str, object] = field(default_factory=dict)


@dataclass
class ResourceChange:
    """One entry of a what-if report."""

    change_type: str
    resource_id: str

    @property
    def is_change(self) -> bool:
        return self.change_type not in UNCHANGED


class AzureDeployer:
    """
    Azure Resource Manager deployment handler.

    Requirements:
    - The Azure CLI (`az`) on PATH, logged in (`az login` or a managed identity)
    - A target resource group (AZURE_RESOURCE_GROUP or passed explicitly)
    """

    def __init__(
        self,
        resource_group: str | None = None,
        az_path: str | None = None,
        timeout: int = DEPLOY_TIMEOUT_SECONDS,
    ) -> None:
        self._resource_group = resource_group or os.getenv("AZURE_RESOURCE_GROUP")
        self._az = az_path or shutil.which("az")
        self._timeout = timeout

        if self._az:
            console.print(f"[green][DEPLOYER] Azure CLI found: {self._az}[/green]")
        else:
            console.print("[yellow][DEPLOYER] Azure CLI not found - deployment disabled[/yellow]")

    def is_configured(self) -> bool:
        """Check if a deployment can be attempted."""
        return bool(self._az and self._resource_group)

    def _require(self, resource_group: str | None) -> str:
        if not self._az:
            raise DeploymentError("Azure CLI (az) not found on PATH")
        resource_group = resource_group or self._resource_group
        if not resource_group:
            raise DeploymentError("No resource group given (set AZURE_RESOURCE_GROUP)")
        return resource_group

    def _run(self, args: list[str]) -> str:
        """
        Run an az command and return stdout.

        Raises:
            DeploymentError: On a non-zero exit status or timeout.
        """
        cmd = [self._az, *args, "--output", "json", "--only-show-errors"]
        console.print(f"[dim][DEPLOYER] az {' '.join(args[:3])}...[/dim]")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self._timeout)
        except subprocess.TimeoutExpired as e:
            console.print(f"[red][DEPLOYER] Command timeout ({self._timeout}s)[/red]")
            raise DeploymentError(f"az {args[0]} timed out after {self._timeout}s") from e
        except OSError as e:
            raise DeploymentError(f"Could not run az: {e}") from e

        if result.returncode != 0:
            message = (result.stderr or result.stdout or "unknown error").strip()
            console.print(f"[red][DEPLOYER] az failed: {message[:200]}[/red]")
            raise DeploymentError(f"az {' '.join(args[:3])} failed: {message[:1000]}")

        return result.stdout

    def _group_args(
        self,
        verb: str,
        template: dict,
        params: TemplateParameters,
        resource_group: str,
        name: str,
        workdir: Path,
    ) -> list[str]:
        template_path = workdir / "azuredeploy.json"
        parameters_path = workdir / "azuredeploy.parameters.json"
        template_path.write_text(json.dumps(template))
        parameters_path.write_text(json.dumps(build_parameters(params)))
        return [
            "deployment",
            "group",
            verb,
            "--resource-group",
            resource_group,
            "--name",
            name,
            "--template-file",
            str(template_path),
            "--parameters",
            f"@{parameters_path}",
        ]

    def deploy(
        self,
        template: dict,
        params: TemplateParameters,
        resource_group: str | None = None,
        name: str | None = None,
    ) -> DeploymentResult:
        """
        Create or update the resources declared by template.

        Returns:
            DeploymentResult with outputs flattened to their values.

        Raises:
            DeploymentError: If ARM rejects or fails the deployment.
        """
        resource_group = self._require(resource_group)
        name = name or f"{params.app_name}-{int(time.time())}"
        console.print(f"[cyan][DEPLOYER] Deploying {name} to {resource_group}...[/cyan]")

        with tempfile.TemporaryDirectory(prefix="slipway-") as tmp:
            args = self._group_args("create", template, params, resource_group, name, Path(tmp))
            output = self._run(args)

        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            raise DeploymentError(f"Unreadable az output: {output[:300]}") from e

        properties = data.get("properties") or {}
        state = properties.get("provisioningState", "Unknown")
        outputs = {
            key: (value or {}).get("value")
            for key, value in (properties.get("outputs") or {}).items()
        }

        if state != "Succeeded":
            raise DeploymentError(f"Deployment {name} finished in state {state}")

        console.print(f"[green][DEPLOYER] Deployment {name}: {state}[/green]")
        return DeploymentResult(
            name=name, resource_group=resource_group, provisioning_state=state, outputs=outputs
        )

    def what_if(
        self,
        template: dict,
        params: TemplateParameters,
        resource_group: str | None = None,
    ) -> list[ResourceChange]:
        """
        Preview what a deployment would change.

        Re-applying an unchanged template should report only NoChange/Ignore.
        """
        resource_group = self._require(resource_group)
        with tempfile.TemporaryDirectory(prefix="slipway-") as tmp:
            args = self._group_args(
                "what-if", template, params, resource_group, f"{params.app_name}-whatif", Path(tmp)
            )
            output = self._run(args + ["--no-pretty-print"])

        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            raise DeploymentError(f"Unreadable what-if output: {output[:300]}") from e

        return [
            ResourceChange(change_type=c.get("changeType", "Unknown"), resource_id=c.get("resourceId", ""))
            for c in data.get("changes") or []
        ]

    @staticmethod
    def is_idempotent(changes: list[ResourceChange]) -> bool:
        return not any(change.is_change for change in changes)

    def verify_hostname(self, hostname: str, retries: int = 3, delay: float = 5.0) -> bool:
        """
        Verify that the deployed web app answers.

        Args:
            hostname: The web app's default host name.
            retries: Attempts (containers take a moment to pull and start).
            delay: Seconds between attempts.

        Returns:
            True if https://<hostname>/health responds with 2xx/3xx.
        """
        url = f"https://{hostname}/health"
        console.print(f"[cyan][DEPLOYER] Verifying deployment at {url}...[/cyan]")

        for attempt in range(retries):
            if attempt > 0:
                time.sleep(delay)
            try:
                response = requests.get(url, timeout=10, allow_redirects=True)
            except requests.RequestException as e:
                console.print(
                    f"[yellow][DEPLOYER] Request failed: {e} (attempt {attempt + 1}/{retries})[/yellow]"
                )
                continue

            if 200 <= response.status_code < 400:
                console.print(f"[green][DEPLOYER] Got {response.status_code} from {url}[/green]")
                return True
            console.print(
                f"[yellow][DEPLOYER] Got {response.status_code} (attempt {attempt + 1}/{retries})[/yellow]"
            )

        return False
