# =============================================================================
# SLIPWAY RELEASE PIPELINE TESTS
# =============================================================================
# Tests for the build-and-deploy orchestrator.
# =============================================================================

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from src.core.deployer import DeploymentError, DeploymentResult
from src.core.foundry import BuildFailedError, BuildResult
from src.core.pipeline import ReleasePipeline, ReleaseStatus
from src.core.policy import PolicyGate, PolicyViolation
from src.domain.models import ImageRecipe, TemplateParameters


@pytest.fixture
def params():
    return TemplateParameters(
        app_name="My-App", repo_url="https://github.com/contoso/my-app", image_tag="abc1234"
    )


@pytest.fixture
def foundry():
    foundry = MagicMock()
    foundry.build.return_value = BuildResult(
        build_id="b1",
        tag="my-app:abc1234",
        image_id="sha256:feedface",
        duration_seconds=1.0,
        evidence_path=Path("/tmp/b1"),
        verified=True,
    )
    foundry.push.return_value = "sha256:digest"
    return foundry


@pytest.fixture
def deployer():
    deployer = MagicMock()
    deployer.deploy.return_value = DeploymentResult(
        name="My-App-1",
        resource_group="rg",
        provisioning_state="Succeeded",
        outputs={"registryName": "myappacr", "hostname": "my-app.azurewebsites.net"},
    )
    deployer.verify_hostname.return_value = True
    return deployer


@pytest.fixture
def pipeline(foundry, deployer, tmp_path):
    return ReleasePipeline(foundry=foundry, deployer=deployer, policy=PolicyGate(), evidence_root=tmp_path)


def _release_record(result) -> dict:
    return json.loads((result.evidence_path / "release.json").read_text())


class TestReleasePipeline:
    """Test ReleasePipeline.run()."""

    def test_image_ref(self, pipeline, params):
        """The image goes where the template's linuxFxVersion points."""
        ref = pipeline.image_ref(params)
        assert str(ref) == "myappacr.azurecr.io/my-app:abc1234"

    def test_full_release(self, pipeline, foundry, deployer, params, tmp_path):
        result = pipeline.run(tmp_path / "src", ImageRecipe(), params, resource_group="rg")

        assert result.status == ReleaseStatus.VERIFIED
        assert result.digest == "sha256:digest"
        assert result.outputs["hostname"] == "my-app.azurewebsites.net"

        foundry.build.assert_called_once()
        assert foundry.build.call_args.args[2] == "my-app:abc1234"
        foundry.push.assert_called_once_with(pipeline.image_ref(params), "my-app:abc1234")
        assert deployer.deploy.call_args.kwargs["resource_group"] == "rg"
        deployer.verify_hostname.assert_called_once_with("my-app.azurewebsites.net")

        record = _release_record(result)
        assert record["status"] == "VERIFIED"
        assert record["image"] == "myappacr.azurecr.io/my-app:abc1234"
        assert (result.evidence_path / "azuredeploy.json").exists()
        assert (result.evidence_path / "azuredeploy.parameters.json").exists()

    def test_push_without_deploy(self, pipeline, foundry, deployer, params, tmp_path):
        """Without deploy the outputs are previewed locally."""
        result = pipeline.run(tmp_path, ImageRecipe(), params, deploy=False)

        assert result.status == ReleaseStatus.PUSHED
        assert result.outputs == {"registryName": "myappacr", "hostname": "my-app.azurewebsites.net"}
        deployer.deploy.assert_not_called()

    def test_build_only(self, pipeline, foundry, params, tmp_path):
        result = pipeline.run(tmp_path, ImageRecipe(), params, deploy=False, push=False)

        assert result.status == ReleaseStatus.BUILT
        foundry.push.assert_not_called()

    def test_policy_violation_stops_before_build(self, foundry, deployer, params, tmp_path):
        policy_path = tmp_path / "policy.yaml"
        policy_path.write_text("allowed_skus: [F1]\n")
        pipeline = ReleasePipeline(
            foundry=foundry, deployer=deployer, policy=PolicyGate(policy_path), evidence_root=tmp_path
        )

        with pytest.raises(PolicyViolation):
            pipeline.run(tmp_path, ImageRecipe(), params)

        foundry.build.assert_not_called()

    def test_non_default_port_never_built(self, pipeline, foundry, deployer, params, tmp_path):
        """An image on another port would not receive App Service traffic."""
        with pytest.raises(PolicyViolation) as exc_info:
            pipeline.run(tmp_path, ImageRecipe(port=9000), params)

        assert exc_info.value.rule == "port"
        foundry.build.assert_not_called()
        deployer.deploy.assert_not_called()
        record = json.loads(next(tmp_path.glob("release-*/release.json")).read_text())
        assert record["status"] == "FAILED"

    def test_build_failure_recorded(self, pipeline, foundry, deployer, params, tmp_path):
        """A failing phase marks the release FAILED and re-raises its own error."""
        foundry.build.side_effect = BuildFailedError("Build failed: exit 101")

        with pytest.raises(BuildFailedError):
            pipeline.run(tmp_path, ImageRecipe(), params)

        deployer.deploy.assert_not_called()
        records = list(tmp_path.glob("release-*/release.json"))
        assert len(records) == 1
        record = json.loads(records[0].read_text())
        assert record["status"] == "FAILED"
        assert "exit 101" in record["error"]

    def test_unresponsive_app(self, pipeline, deployer, params, tmp_path):
        deployer.verify_hostname.return_value = False

        with pytest.raises(DeploymentError, match="not responding"):
            pipeline.run(tmp_path, ImageRecipe(), params)

    def test_missing_hostname_output(self, pipeline, deployer, params, tmp_path):
        deployer.deploy.return_value.outputs = {"registryName": "myappacr"}

        with pytest.raises(DeploymentError, match="hostname"):
            pipeline.run(tmp_path, ImageRecipe(), params)
