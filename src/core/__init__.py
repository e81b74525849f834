# -----------------------------------------------------------------------------
# CORE LAYER
# -----------------------------------------------------------------------------
# The business logic of Slipway:
# - recipe: Dockerfile rendering and inspection
# - Foundry: Docker image build, verification and push
# - template: ARM template generation and validation
# - AzureDeployer: ARM deployments through the az CLI
# - PolicyGate: Deployment gatekeeper
# - ReleasePipeline: Build-and-deploy orchestrator
# -----------------------------------------------------------------------------

from .deployer import AzureDeployer, DeploymentError, DeploymentResult
from .foundry import BuildFailedError, Foundry, ImageVerificationError, PushError, SourceTreeError
from .pipeline import ReleasePipeline, ReleaseResult, ReleaseStatus
from .policy import PolicyGate, PolicyViolation
from .recipe import RecipeError, check_dockerfile, inspect_dockerfile, render_dockerfile
from .template import TemplateValidationError, build_template, deployment_order, validate_template

__all__ = [
    "AzureDeployer", "DeploymentError", "DeploymentResult",
    "Foundry", "BuildFailedError", "ImageVerificationError", "PushError", "SourceTreeError",
    "ReleasePipeline", "ReleaseResult", "ReleaseStatus",
    "PolicyGate", "PolicyViolation",
    "RecipeError", "render_dockerfile", "inspect_dockerfile", "check_dockerfile",
    "TemplateValidationError", "build_template", "deployment_order", "validate_template",
]
