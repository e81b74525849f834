"""
Tests for release policy enforcement.
"""

import pytest

from src.core.policy import POLICY_PATH, PolicyConfig, PolicyGate, PolicyViolation
from src.domain.models import ImageRecipe, StackType, TemplateParameters


def _params(**overrides) -> TemplateParameters:
    values = {"app_name": "my-app", "repo_url": "https://github.com/contoso/my-app"}
    values.update(overrides)
    return TemplateParameters(**values)


class TestPolicyGate:
    """Tests for PolicyGate enforcement."""

    @pytest.fixture
    def policy_gate(self):
        """Create a PolicyGate from the repository policy."""
        return PolicyGate()

    def test_repository_policy_loaded(self, policy_gate):
        """The shipped policy.yaml is found and parsed."""
        assert POLICY_PATH.exists()
        assert "P1v3" in policy_gate.config.allowed_skus
        assert policy_gate.config.allowed_locations == []

    def test_valid_release_passes(self, policy_gate):
        """A default recipe with a B1 plan passes."""
        assert policy_gate.validate(ImageRecipe(), _params()) is True

    def test_python_stack_allowed(self, policy_gate):
        assert policy_gate.validate(ImageRecipe(stack=StackType.PYTHON), _params()) is True

    def test_sku_case_insensitive(self, policy_gate):
        assert policy_gate.validate(ImageRecipe(), _params(sku="p1V3")) is True

    def test_forbidden_sku(self, policy_gate):
        """SKUs outside the allow-list are denied."""
        with pytest.raises(PolicyViolation) as exc_info:
            policy_gate.validate(ImageRecipe(), _params(sku="P3v3"))
        assert exc_info.value.rule == "allowed_skus"
        assert "P3v3" in str(exc_info.value)

    def test_port_must_match_websites_port(self, policy_gate):
        """The image must listen where App Service routes traffic."""
        with pytest.raises(PolicyViolation) as exc_info:
            policy_gate.validate(ImageRecipe(port=9000), _params())
        assert exc_info.value.rule == "port"
        assert exc_info.value.details == "Required: 8000"

    def test_any_location_when_unrestricted(self, policy_gate):
        assert policy_gate.validate(ImageRecipe(), _params(location="japaneast")) is True


class TestPolicyFile:
    """Tests for custom policy files."""

    def test_missing_file_uses_defaults(self, tmp_path):
        gate = PolicyGate(tmp_path / "nope.yaml")
        assert gate.config == PolicyConfig()

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text("")
        assert PolicyGate(path).config == PolicyConfig()

    def test_restricted_locations(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text("allowed_locations:\n  - westeurope\n  - northeurope\n")
        gate = PolicyGate(path)

        assert gate.validate(ImageRecipe(), _params(location="WestEurope")) is True
        # no explicit location means the resource group's region
        assert gate.validate(ImageRecipe(), _params()) is True
        with pytest.raises(PolicyViolation) as exc_info:
            gate.validate(ImageRecipe(), _params(location="eastus"))
        assert exc_info.value.rule == "allowed_locations"

    def test_restricted_stacks(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text("allowed_stacks: [rust]\n")
        gate = PolicyGate(path)

        with pytest.raises(PolicyViolation) as exc_info:
            gate.validate(ImageRecipe(stack=StackType.PYTHON), _params())
        assert exc_info.value.rule == "allowed_stacks"

    def test_name_length(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text("max_app_name_length: 10\n")
        gate = PolicyGate(path)

        with pytest.raises(PolicyViolation) as exc_info:
            gate.validate(ImageRecipe(), _params(app_name="much-too-long-name"))
        assert exc_info.value.rule == "max_app_name_length"
        assert "10" in exc_info.value.details

    def test_invalid_policy_rejected(self, tmp_path):
        """A malformed policy fails loudly rather than allowing everything."""
        path = tmp_path / "policy.yaml"
        path.write_text("max_app_name_length: 500\n")
        with pytest.raises(ValueError):
            PolicyGate(path)


class TestPolicyViolation:
    """Tests for PolicyViolation exception."""

    def test_policy_violation_fields(self):
        error = PolicyViolation("Access Denied: x", rule="allowed_skus", details="Allowed: [B1]")
        assert str(error) == "Access Denied: x"
        assert error.rule == "allowed_skus"
        assert error.details == "Allowed: [B1]"
