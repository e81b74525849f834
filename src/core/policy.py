# -----------------------------------------------------------------------------
# THE GATEKEEPER - POLICY ENGINE
# -----------------------------------------------------------------------------
# Responsibility: Validates a release (recipe + template parameters) against
# policy before any Docker build or Azure call. A release that violates
# policy is REJECTED.
# -----------------------------------------------------------------------------

from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from rich.console import Console

from src.domain.models import DEFAULT_PORT, ImageRecipe, StackType, TemplateParameters

console = Console()

# Policy file location
POLICY_PATH = Path(__file__).parent.parent.parent / "policy.yaml"


class PolicyConfig(BaseModel):
    """
    Pydantic model for the policy configuration.

    Loaded from policy.yaml at startup. An empty allowed_locations list
    allows every region.
    """

    allowed_stacks: list[str] = Field(default_factory=lambda: [s.value for s in StackType])
    allowed_skus: list[str] = Field(
        default_factory=lambda: ["F1", "B1", "B2", "B3", "S1", "S2", "S3", "P1v3", "P2v3", "P3v3"]
    )
    allowed_locations: list[str] = Field(default_factory=list)
    max_app_name_length: int = Field(60, ge=2, le=60)


class PolicyViolation(Exception):
    """
    Raised when a release violates policy.

    Contains details about which rule was violated.
    """

    def __init__(self, message: str, rule: str, details: str = "") -> None:
        super().__init__(message)
        self.rule = rule
        self.details = details


class PolicyGate:
    """The bouncer between a release request and the build/deploy tools."""

    def __init__(self, policy_path: Path = POLICY_PATH) -> None:
        self._policy_path = Path(policy_path)
        self._config: PolicyConfig = self._load_policy()
        console.print(
            f"[green][GATEKEEPER] Policy loaded: {len(self._config.allowed_skus)} SKUs, "
            f"{len(self._config.allowed_locations) or 'any'} locations[/green]"
        )

    @property
    def config(self) -> PolicyConfig:
        return self._config

    def _load_policy(self) -> PolicyConfig:
        if not self._policy_path.exists():
            console.print("[yellow][GATEKEEPER] Policy file not found, using defaults[/yellow]")
            return PolicyConfig()

        with open(self._policy_path) as f:
            data = yaml.safe_load(f) or {}

        return PolicyConfig(**data)

    def validate(self, recipe: ImageRecipe, params: TemplateParameters) -> bool:
        """
        Validate a release against all policy rules.

        Raises:
            PolicyViolation: On the first rule violated.
        """
        console.print(f"[cyan][GATEKEEPER] Validating: {params.app_name}[/cyan]")

        self._check_stack(recipe)
        self._check_port(recipe)
        self._check_sku(params)
        self._check_location(params)
        self._check_name(params)

        console.print(f"[green][GATEKEEPER] Access Granted: {params.app_name}[/green]")
        return True

    def _deny(self, message: str, rule: str, details: str = "") -> None:
        console.print(f"[red][GATEKEEPER] Access Denied: {message}[/red]")
        raise PolicyViolation(f"Access Denied: {message}", rule=rule, details=details)

    def _check_stack(self, recipe: ImageRecipe) -> None:
        stack = StackType(recipe.stack).value
        if stack not in [s.lower() for s in self._config.allowed_stacks]:
            self._deny(
                f"Stack '{stack}' is not allowed",
                rule="allowed_stacks",
                details=f"Allowed: {self._config.allowed_stacks}",
            )

    def _check_port(self, recipe: ImageRecipe) -> None:
        # the template routes App Service traffic to WEBSITES_PORT=8000
        if recipe.port != DEFAULT_PORT:
            self._deny(
                f"Port {recipe.port} does not match WEBSITES_PORT",
                rule="port",
                details=f"Required: {DEFAULT_PORT}",
            )

    def _check_sku(self, params: TemplateParameters) -> None:
        if params.sku.lower() not in [s.lower() for s in self._config.allowed_skus]:
            self._deny(
                f"SKU '{params.sku}' is not allowed",
                rule="allowed_skus",
                details=f"Allowed: {self._config.allowed_skus}",
            )

    def _check_location(self, params: TemplateParameters) -> None:
        allowed = [loc.lower() for loc in self._config.allowed_locations]
        if allowed and params.location and params.location.lower() not in allowed:
            self._deny(
                f"Location '{params.location}' is not allowed",
                rule="allowed_locations",
                details=f"Allowed: {self._config.allowed_locations}",
            )

    def _check_name(self, params: TemplateParameters) -> None:
        if len(params.app_name) > self._config.max_app_name_length:
            self._deny(
                f"App name '{params.app_name}' is too long",
                rule="max_app_name_length",
                details=f"Maximum: {self._config.max_app_name_length}",
            )
