# -----------------------------------------------------------------------------
# THE RELEASE PIPELINE - BUILD-AND-DEPLOY ORCHESTRATOR
# -----------------------------------------------------------------------------
# Performs the hand-off between the two pipelines in one sequential pass:
#
#   policy -> build + verify image -> push -> template -> validate
#          -> deploy -> verify hostname
#
# Functions:
# - run: Execute every phase, stop at the first failure
# - _phase_*: One phase each, recording evidence as it goes
#
# Nothing is retried; each phase's own error type propagates to the caller.
# -----------------------------------------------------------------------------

import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from rich.console import Console

from src.core.deployer import AzureDeployer, DeploymentError, DeploymentResult
from src.core.foundry import BUILDS_DIR, BlackBox, BuildResult, Foundry
from src.core.policy import PolicyGate
from src.core.template import (
    build_parameters,
    build_template,
    preview_outputs,
    registry_login_server,
    validate_template,
)
from src.domain.models import ImageRecipe, ImageRef, TemplateParameters

console = Console()


class ReleaseStatus(str, Enum):
    PENDING = "PENDING"
    BUILT = "BUILT"
    PUSHED = "PUSHED"
    DEPLOYED = "DEPLOYED"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"


@dataclass
class ReleaseResult:
    """Everything a release produced, phase by phase."""

    release_id: str
    status: ReleaseStatus = ReleaseStatus.PENDING
    image: ImageRef | None = None
    build: BuildResult | None = None
    digest: str | None = None
    deployment: DeploymentResult | None = None
    outputs: dict[str, object] = field(default_factory=dict)
    evidence_path: Path | None = None
    error: str | None = None


class ReleasePipeline:
    """
    The release orchestrator.

    Collaborators are injectable so each can be replaced in isolation.
    """

    def __init__(
        self,
        foundry: Foundry | None = None,
        deployer: AzureDeployer | None = None,
        policy: PolicyGate | None = None,
        evidence_root: Path = BUILDS_DIR,
    ) -> None:
        self._foundry = foundry or Foundry()
        self._deployer = deployer or AzureDeployer()
        self._policy = policy or PolicyGate()
        self._evidence_root = Path(evidence_root)

    def image_ref(self, params: TemplateParameters) -> ImageRef:
        """Where the template expects the image: <registry>.azurecr.io/<appName>:<imageTag>."""
        return ImageRef(
            server=registry_login_server(params.app_name),
            repository=params.app_name.lower(),
            tag=params.image_tag,
        )

    def run(
        self,
        context_dir: Path,
        recipe: ImageRecipe,
        params: TemplateParameters,
        resource_group: str | None = None,
        deploy: bool = True,
        push: bool = True,
    ) -> ReleaseResult:
        """
        Execute the release.

        Args:
            context_dir: Root of the source tree to build.
            recipe: Image recipe.
            params: Template parameters (app name, tag, repository...).
            resource_group: Target resource group (AZURE_RESOURCE_GROUP when None).
            deploy: Hand the template to ARM after pushing.
            push: Push the image (implied by deploy).

        Returns:
            ReleaseResult with the furthest status reached.

        Raises:
            The failing phase's own exception, after the result is recorded.
        """
        release_id = uuid.uuid4().hex[:12]
        result = ReleaseResult(release_id=release_id, image=self.image_ref(params))
        console.print(f"[cyan][RELEASE] {release_id}: {params.app_name} -> {result.image}[/cyan]")

        box = BlackBox(f"release-{release_id}", root=self._evidence_root)
        result.evidence_path = box.folder
        try:
            self._phase_validate(box, recipe, params)
            self._phase_build(box, result, context_dir, recipe)
            if push or deploy:
                self._phase_push(box, result)
            template = self._phase_template(box, params)
            if deploy:
                self._phase_deploy(box, result, template, params, resource_group)
                self._phase_verify(box, result)
            else:
                result.outputs = dict(preview_outputs(params))
        except Exception as e:
            result.status = ReleaseStatus.FAILED
            result.error = str(e)
            box.log("RELEASE_FAILED", str(e))
            console.print(f"[red][RELEASE] {release_id} failed: {e}[/red]")
            raise
        finally:
            box.save_json(
                "release.json",
                {
                    "release_id": release_id,
                    "status": result.status.value,
                    "image": str(result.image),
                    "digest": result.digest,
                    "outputs": result.outputs,
                    "error": result.error,
                },
            )
            box.finalize()

        console.print(f"[green][RELEASE] {release_id}: {result.status.value}[/green]")
        return result

    # =========================================================================
    # PHASES
    # =========================================================================

    def _phase_validate(self, box: BlackBox, recipe: ImageRecipe, params: TemplateParameters) -> None:
        self._policy.validate(recipe, params)
        box.record_verdict("policy", True)

    def _phase_build(
        self, box: BlackBox, result: ReleaseResult, context_dir: Path, recipe: ImageRecipe
    ) -> None:
        local_tag = f"{result.image.repository}:{result.image.tag}"
        result.build = self._foundry.build(
            recipe, context_dir, local_tag, build_id=f"{box.run_id}-build"
        )
        box.record_verdict("build", True, result.build.image_id)
        result.status = ReleaseStatus.BUILT

    def _phase_push(self, box: BlackBox, result: ReleaseResult) -> None:
        result.digest = self._foundry.push(result.image, result.build.tag)
        box.record_verdict("push", True, result.digest)
        result.status = ReleaseStatus.PUSHED

    def _phase_template(self, box: BlackBox, params: TemplateParameters) -> dict:
        template = build_template()
        validate_template(template)
        box.save_json("azuredeploy.json", template)
        box.save_json("azuredeploy.parameters.json", build_parameters(params))
        box.record_verdict("template", True)
        return template

    def _phase_deploy(
        self,
        box: BlackBox,
        result: ReleaseResult,
        template: dict,
        params: TemplateParameters,
        resource_group: str | None,
    ) -> None:
        result.deployment = self._deployer.deploy(
            template, params, resource_group=resource_group, name=f"{params.app_name}-{result.release_id}"
        )
        result.outputs = dict(result.deployment.outputs)
        box.record_verdict("deploy", True, result.deployment.provisioning_state)
        result.status = ReleaseStatus.DEPLOYED

    def _phase_verify(self, box: BlackBox, result: ReleaseResult) -> None:
        hostname = result.outputs.get("hostname")
        if not hostname:
            raise DeploymentError("Deployment reported no hostname output")
        if not self._deployer.verify_hostname(str(hostname)):
            box.record_verdict("verify", False, str(hostname))
            raise DeploymentError(f"https://{hostname}/health is not responding")
        box.record_verdict("verify", True, str(hostname))
        result.status = ReleaseStatus.VERIFIED
