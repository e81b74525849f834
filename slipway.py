#!/usr/bin/env python3
# -----------------------------------------------------------------------------
# SLIPWAY - COMMAND LINE
# -----------------------------------------------------------------------------
# One entry point for both halves of the release:
#
#   slipway render    Print (or write) the Dockerfile for a recipe
#   slipway check     Inspect an existing Dockerfile and source tree
#   slipway template  Write the ARM template + parameters files
#   slipway build     Build and verify the runtime image
#   slipway deploy    Validate and deploy the template
#   slipway what-if   Preview a deployment (idempotency check)
#   slipway release   Build, push, deploy and verify in one pass
#   slipway serve     Run the web service
#
# Handled failures print a red panel and exit with status 1.
# -----------------------------------------------------------------------------

import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

PROJECT_ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.core.deployer import AzureDeployer, DeploymentError
from src.core.foundry import (
    BuildFailedError,
    Foundry,
    ImageVerificationError,
    PushError,
    SourceTreeError,
)
from src.core.pipeline import ReleasePipeline
from src.core.policy import PolicyGate, PolicyViolation
from src.core.recipe import (
    RecipeError,
    check_dockerfile,
    inspect_dockerfile,
    missing_sources,
    render_dockerfile,
)
from src.core.template import (
    TemplateValidationError,
    build_template,
    deployment_order,
    load_template,
    preview_outputs,
    validate_template,
    write_template,
)
from src.domain.models import ImageRecipe, RecipeVariant, StackType, TemplateParameters
from src.infra.docker_client import DockerProviderError
from src.infra.git_client import GitError, GitProvider

SYSTEM_NAME = "SLIPWAY"
console = Console()

# Everything a command may raise that deserves a panel rather than a traceback
HANDLED_ERRORS = (
    BuildFailedError,
    DeploymentError,
    DockerProviderError,
    GitError,
    ImageVerificationError,
    OSError,
    PolicyViolation,
    PushError,
    RecipeError,
    SourceTreeError,
    TemplateValidationError,
    ValidationError,
)


# =============================================================================
# ARGUMENT HELPERS
# =============================================================================


def _add_recipe_args(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("recipe")
    group.add_argument("--binary", default="axum-app", help="executable name (default: axum-app)")
    group.add_argument("--stack", choices=[s.value for s in StackType], default=StackType.RUST.value)
    group.add_argument(
        "--variant", choices=[v.value for v in RecipeVariant], default=RecipeVariant.APPSERVICE.value
    )
    group.add_argument("--port", type=int, default=8000)
    group.add_argument("--builder-image", help="override the builder base image")
    group.add_argument("--runtime-image", help="override the runtime base image")


def _add_params_args(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("template parameters")
    group.add_argument("--app-name", required=True, help="web app name (also the image repository)")
    group.add_argument("--location", help="Azure region (default: the resource group's)")
    group.add_argument("--sku", default="B1")
    group.add_argument("--image-tag", help="image tag (default: short commit of --source)")
    group.add_argument("--repo-url", help="repository URL (default: origin of --source)")
    group.add_argument("--branch", help="branch (default: current branch of --source)")


def _add_source_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--source", type=Path, default=Path("."), help="source tree root (default: .)")


def _add_wake_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--wake", action="store_true", help="start the Docker engine if it is not running")


def _recipe_from_args(args: argparse.Namespace) -> ImageRecipe:
    return ImageRecipe(
        binary_name=args.binary,
        stack=StackType(args.stack),
        variant=RecipeVariant(args.variant),
        port=args.port,
        builder_image=args.builder_image,
        runtime_image=args.runtime_image,
    )


def _commit_tag(git: GitProvider) -> str:
    """Short commit of the working copy, marked when it has uncommitted changes."""
    tag = git.short_commit()
    if git.is_dirty():
        console.print(f"[yellow][GIT] Uncommitted changes - tagging {tag}-dirty[/yellow]")
        tag = f"{tag}-dirty"
    return tag


def _params_from_args(args: argparse.Namespace) -> TemplateParameters:
    """Fill unset repository fields from the working copy at --source."""
    source = getattr(args, "source", None) or Path(".")
    git = None
    if not (args.repo_url and args.branch and args.image_tag):
        git = GitProvider(source)

    return TemplateParameters(
        app_name=args.app_name,
        location=args.location,
        sku=args.sku,
        image_tag=args.image_tag or _commit_tag(git),
        repo_url=args.repo_url or git.remote_url(),
        branch=args.branch or git.current_branch(),
    )


def _print_outputs(outputs: dict) -> None:
    table = Table(title="Outputs", show_header=True)
    table.add_column("Name", style="cyan")
    table.add_column("Value")
    for key, value in outputs.items():
        table.add_row(key, str(value))
    console.print(table)


# =============================================================================
# COMMANDS
# =============================================================================


def cmd_render(args: argparse.Namespace) -> int:
    dockerfile = render_dockerfile(_recipe_from_args(args))
    if args.output:
        Path(args.output).write_text(dockerfile)
        console.print(f"[green][RENDER] Wrote {args.output}[/green]")
    else:
        # plain stdout so the output can be redirected
        sys.stdout.write(dockerfile)
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    recipe = _recipe_from_args(args)
    dockerfile_path = args.dockerfile or args.source / "Dockerfile"
    summary = inspect_dockerfile(Path(dockerfile_path).read_text())

    problems = check_dockerfile(summary, recipe)
    problems += [f"source tree is missing {path}" for path in missing_sources(recipe, args.source)]

    tree = Tree(f"[bold]{dockerfile_path}[/bold]")
    for stage in summary.stages:
        tree.add(f"FROM {stage.base}" + (f" AS {stage.name}" if stage.name else ""))
    console.print(tree)

    if problems:
        console.print(
            Panel(
                "\n".join(f"- {p}" for p in problems),
                title="CHECK FAILED",
                border_style="red",
            )
        )
        return 1

    console.print(f"[green][CHECK] {dockerfile_path} matches the runtime layout[/green]")
    return 0


def cmd_template(args: argparse.Namespace) -> int:
    params = _params_from_args(args)
    template = build_template()
    validate_template(template)

    template_path, parameters_path = write_template(args.out_dir, params)
    console.print(f"[green][TEMPLATE] Wrote {template_path} and {parameters_path}[/green]")

    order = Tree("[bold]Deployment order[/bold]")
    for label in deployment_order(template):
        order.add(label)
    console.print(order)
    _print_outputs(preview_outputs(params))
    return 0


def cmd_build(args: argparse.Namespace) -> int:
    recipe = _recipe_from_args(args)
    tag = args.tag
    if not tag:
        try:
            tag = f"{recipe.binary_name}:{_commit_tag(GitProvider(args.source))}"
        except GitError:
            tag = f"{recipe.binary_name}:latest"

    foundry = Foundry(auto_wake=args.wake)
    result = foundry.build(recipe, args.source, tag, pull=args.pull, verify=not args.no_verify)
    console.print(
        Panel(
            f"Image:    {result.tag}\n"
            f"ID:       {result.image_id}\n"
            f"Duration: {result.duration_seconds}s\n"
            f"Verified: {result.verified}\n"
            f"Evidence: {result.evidence_path}",
            title="BUILD COMPLETE",
            border_style="green",
        )
    )
    return 0


def _configured_deployer(args: argparse.Namespace) -> AzureDeployer:
    deployer = AzureDeployer(resource_group=args.resource_group)
    if not deployer.is_configured():
        raise DeploymentError(
            "Deployment needs the Azure CLI (az) on PATH and a resource group "
            "(--resource-group or AZURE_RESOURCE_GROUP)"
        )
    return deployer


def _load_or_build_template(args: argparse.Namespace) -> dict:
    template = load_template(args.template) if args.template else build_template()
    validate_template(template)
    return template


def cmd_deploy(args: argparse.Namespace) -> int:
    params = _params_from_args(args)
    PolicyGate().validate(ImageRecipe(), params)
    template = _load_or_build_template(args)

    deployer = _configured_deployer(args)
    result = deployer.deploy(template, params)
    _print_outputs(result.outputs)

    if args.verify:
        hostname = result.outputs.get("hostname")
        if not hostname or not deployer.verify_hostname(str(hostname)):
            raise DeploymentError(f"Deployed app at {hostname} is not responding")
    return 0


def cmd_what_if(args: argparse.Namespace) -> int:
    params = _params_from_args(args)
    template = _load_or_build_template(args)

    changes = _configured_deployer(args).what_if(template, params)
    table = Table(title="What-if", show_header=True)
    table.add_column("Change", style="cyan")
    table.add_column("Resource")
    for change in changes:
        table.add_row(change.change_type, change.resource_id)
    console.print(table)

    if AzureDeployer.is_idempotent(changes):
        console.print("[green][WHAT-IF] No changes - deployment is up to date[/green]")
    else:
        count = sum(1 for c in changes if c.is_change)
        console.print(f"[yellow][WHAT-IF] {count} resource(s) would change[/yellow]")
    return 0


def cmd_release(args: argparse.Namespace) -> int:
    recipe = _recipe_from_args(args)
    params = _params_from_args(args)

    deployer = (
        AzureDeployer(resource_group=args.resource_group) if args.no_deploy else _configured_deployer(args)
    )
    pipeline = ReleasePipeline(
        foundry=Foundry(auto_wake=args.wake),
        deployer=deployer,
        policy=PolicyGate(args.policy) if args.policy else None,
    )
    result = pipeline.run(
        args.source,
        recipe,
        params,
        resource_group=args.resource_group,
        deploy=not args.no_deploy,
        push=not args.no_push,
    )

    console.print(
        Panel(
            f"Status:   {result.status.value}\n"
            f"Image:    {result.image}\n"
            f"Digest:   {result.digest or '-'}\n"
            f"Evidence: {result.evidence_path}",
            title=f"RELEASE {result.release_id}",
            border_style="green",
        )
    )
    _print_outputs(result.outputs)
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    from src.main import serve

    serve()
    return 0


# =============================================================================
# ENTRY POINT
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="slipway",
        description="Build container images and deploy them to Azure App Service.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("render", help="print the Dockerfile for a recipe")
    _add_recipe_args(p)
    p.add_argument("-o", "--output", help="write to this file instead of stdout")
    p.set_defaults(func=cmd_render)

    p = sub.add_parser("check", help="inspect an existing Dockerfile and source tree")
    _add_recipe_args(p)
    _add_source_arg(p)
    p.add_argument("--dockerfile", type=Path, help="Dockerfile to inspect (default: <source>/Dockerfile)")
    p.set_defaults(func=cmd_check)

    p = sub.add_parser("template", help="write the ARM template and parameters files")
    _add_params_args(p)
    _add_source_arg(p)
    p.add_argument("--out-dir", type=Path, default=Path("."))
    p.set_defaults(func=cmd_template)

    p = sub.add_parser("build", help="build and verify the runtime image")
    _add_recipe_args(p)
    _add_source_arg(p)
    p.add_argument("--tag", help="local image tag (default: <binary>:<short commit>)")
    p.add_argument("--pull", action="store_true", help="always pull newer base images")
    p.add_argument("--no-verify", action="store_true", help="skip the image layout check")
    _add_wake_arg(p)
    p.set_defaults(func=cmd_build)

    for name, func, help_text in (
        ("deploy", cmd_deploy, "validate and deploy the template"),
        ("what-if", cmd_what_if, "preview what a deployment would change"),
    ):
        p = sub.add_parser(name, help=help_text)
        _add_params_args(p)
        _add_source_arg(p)
        p.add_argument("--resource-group", help="target resource group (default: AZURE_RESOURCE_GROUP)")
        p.add_argument("--template", type=Path, help="template file (default: the generated one)")
        if name == "deploy":
            p.add_argument("--verify", action="store_true", help="probe https://<hostname>/health")
        p.set_defaults(func=func)

    p = sub.add_parser("release", help="build, push, deploy and verify")
    _add_recipe_args(p)
    _add_params_args(p)
    _add_source_arg(p)
    p.add_argument("--resource-group", help="target resource group (default: AZURE_RESOURCE_GROUP)")
    p.add_argument("--policy", type=Path, help="policy file (default: policy.yaml)")
    p.add_argument("--no-deploy", action="store_true", help="stop after pushing the image")
    p.add_argument("--no-push", action="store_true", help="stop after building (implies --no-deploy)")
    _add_wake_arg(p)
    p.set_defaults(func=cmd_release)

    p = sub.add_parser("serve", help="run the web service")
    p.set_defaults(func=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv(PROJECT_ROOT / ".env")
    args = build_parser().parse_args(argv)

    # --no-push without --no-deploy would deploy an image that was never pushed
    if getattr(args, "no_push", False):
        args.no_deploy = True

    try:
        return args.func(args)
    except HANDLED_ERRORS as e:
        console.print(
            Panel(
                f"[bold red]{type(e).__name__}[/bold red]\n\n{e}",
                title=f"{SYSTEM_NAME} HALT",
                border_style="red",
            )
        )
        return 1


if __name__ == "__main__":
    sys.exit(main())
