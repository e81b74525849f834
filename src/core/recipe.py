# -----------------------------------------------------------------------------
# THE RECIPE - DOCKERFILE RENDERING & INSPECTION
# -----------------------------------------------------------------------------
# Responsibility: Turn an ImageRecipe into a two-stage Dockerfile, and read
# existing Dockerfiles back into a summary that can be checked against the
# runtime layout contract:
#
#   /app/<binary>     the compiled entry point (also the working directory)
#   /app/static       static assets
#   /app/templates    page templates
#   EXPOSE 8000       the only declared port
#
# Rendering is deterministic: the same recipe always yields the same text.
# -----------------------------------------------------------------------------

import json
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from jinja2 import Environment, StrictUndefined

from src.domain.models import ImageRecipe, RecipeVariant, StackType

BUILD_DIR = "/build"
BUILDER_STAGE = "builder"

# instruction keyword, then its arguments after any run of whitespace
_INSTRUCTION = re.compile(r"(\S+)(\s+|$)(.*)", re.DOTALL)

STACK_DEFAULTS: dict[StackType, dict[str, list[str]]] = {
    StackType.RUST: {"manifests": ["Cargo.lock", "Cargo.toml"], "sources": ["src"]},
    StackType.PYTHON: {"manifests": ["pyproject.toml"], "sources": ["src", "slipway.py"]},
}

# (builder, runtime) per stack and variant
BASE_IMAGES: dict[tuple[StackType, RecipeVariant], tuple[str, str]] = {
    (StackType.RUST, RecipeVariant.APPSERVICE): ("rust:latest", "debian:bullseye-slim"),
    (StackType.RUST, RecipeVariant.SLIM): ("rust:1-bookworm", "debian:bookworm-slim"),
    (StackType.PYTHON, RecipeVariant.APPSERVICE): (
        "python:3.12-bullseye",
        "python:3.12-slim-bullseye",
    ),
    (StackType.PYTHON, RecipeVariant.SLIM): ("python:3.12-bookworm", "python:3.12-slim-bookworm"),
}

DOCKERFILE_TEMPLATE = """\
# Generated by slipway ({{ stack }}/{{ variant }}) for {{ binary }}
FROM {{ builder_image }} AS {{ builder_stage }}
{% for cmd in setup %}

RUN {{ cmd }}
{% endfor %}

{% for path in copies %}
COPY {{ path }} {{ build_dir }}/{{ path }}
{% endfor %}

WORKDIR {{ build_dir }}

{% for cmd in build %}
RUN {{ cmd }}
{% endfor %}

FROM {{ runtime_image }}

COPY --from={{ builder_stage }} {{ app_dir }} {{ app_dir }}
{% for asset in assets %}
COPY {{ asset }} {{ app_dir }}/{{ asset }}
{% endfor %}
{% if init_script %}

COPY {{ init_script }} /bin/
RUN chmod 755 /bin/{{ init_script }}
{% endif %}

WORKDIR {{ app_dir }}
EXPOSE {{ port }}

ENTRYPOINT {{ entrypoint }}
"""

_env = Environment(
    trim_blocks=True, lstrip_blocks=True, keep_trailing_newline=True, undefined=StrictUndefined
)
_template = _env.from_string(DOCKERFILE_TEMPLATE)


class RecipeError(Exception):
    """Raised when a Dockerfile cannot be parsed."""

    pass


def _stack(recipe: ImageRecipe) -> StackType:
    return StackType(recipe.stack)


def _variant(recipe: ImageRecipe) -> RecipeVariant:
    return RecipeVariant(recipe.variant)


def manifest_files(recipe: ImageRecipe) -> list[str]:
    if recipe.manifest_files is not None:
        return list(recipe.manifest_files)
    return list(STACK_DEFAULTS[_stack(recipe)]["manifests"])


def source_paths(recipe: ImageRecipe) -> list[str]:
    if recipe.source_paths is not None:
        return list(recipe.source_paths)
    return list(STACK_DEFAULTS[_stack(recipe)]["sources"])


def base_images(recipe: ImageRecipe) -> tuple[str, str]:
    """Return (builder_image, runtime_image), honouring recipe overrides."""
    builder, runtime = BASE_IMAGES[(_stack(recipe), _variant(recipe))]
    return recipe.builder_image or builder, recipe.runtime_image or runtime


def uses_init_script(recipe: ImageRecipe) -> bool:
    return _variant(recipe) == RecipeVariant.APPSERVICE


def context_paths(recipe: ImageRecipe) -> list[str]:
    """Every path of the source tree that goes into the build context."""
    paths = manifest_files(recipe) + source_paths(recipe) + list(recipe.asset_dirs)
    if uses_init_script(recipe):
        paths.append(recipe.init_script)
    return paths


def missing_sources(recipe: ImageRecipe, context_dir: Path) -> list[str]:
    """Required paths absent from the source tree, in context order."""
    context_dir = Path(context_dir)
    return [p for p in context_paths(recipe) if not (context_dir / p).exists()]


def _setup_commands(recipe: ImageRecipe) -> list[str]:
    if _stack(recipe) == StackType.RUST and _variant(recipe) == RecipeVariant.APPSERVICE:
        return ["rustup install nightly"]
    return []


def _build_commands(recipe: ImageRecipe) -> list[str]:
    app_dir = recipe.app_dir.rstrip("/")
    if _stack(recipe) == StackType.RUST:
        cargo = "cargo +nightly" if _variant(recipe) == RecipeVariant.APPSERVICE else "cargo"
        return [
            f"{cargo} build --release",
            f"mkdir -p {app_dir} && mv target/release/{recipe.binary_name} {app_dir}/",
        ]

    venv = f"{app_dir}/.venv"
    return [
        f"python -m venv {venv}",
        f"{venv}/bin/pip install --no-cache-dir .",
        f"ln -s {venv}/bin/{recipe.binary_name} {recipe.binary_path}",
    ]


def render_dockerfile(recipe: ImageRecipe) -> str:
    """
    Render the two-stage Dockerfile for a recipe.

    Args:
        recipe: The image recipe.

    Returns:
        Dockerfile text ending with a newline.
    """
    builder_image, runtime_image = base_images(recipe)
    init_script = recipe.init_script if uses_init_script(recipe) else None
    entrypoint = [f"/bin/{init_script}"] if init_script else [recipe.binary_path]

    return _template.render(
        stack=_stack(recipe).value,
        variant=_variant(recipe).value,
        binary=recipe.binary_name,
        builder_image=builder_image,
        runtime_image=runtime_image,
        builder_stage=BUILDER_STAGE,
        build_dir=BUILD_DIR,
        setup=_setup_commands(recipe),
        copies=manifest_files(recipe) + source_paths(recipe),
        build=_build_commands(recipe),
        app_dir=recipe.app_dir.rstrip("/"),
        assets=recipe.asset_dirs,
        init_script=init_script,
        port=recipe.port,
        entrypoint=json.dumps(entrypoint),
    )


# -----------------------------------------------------------------------------
# INSPECTION
# -----------------------------------------------------------------------------


@dataclass
class CopyInstruction:
    """A COPY (or ADD) line of a stage."""

    sources: list[str]
    dest: str
    from_stage: str | None = None


@dataclass
class Stage:
    """One FROM block of a Dockerfile."""

    base: str
    name: str | None = None
    workdir: str | None = None
    exposed_ports: list[int] = field(default_factory=list)
    copies: list[CopyInstruction] = field(default_factory=list)
    runs: list[str] = field(default_factory=list)
    entrypoint: list[str] | None = None


@dataclass
class DockerfileSummary:
    stages: list[Stage]

    @property
    def final(self) -> Stage | None:
        return self.stages[-1] if self.stages else None


def _logical_lines(text: str) -> list[str]:
    """Join backslash continuations and drop comments and blank lines."""
    lines: list[str] = []
    pending = ""
    for raw in text.splitlines():
        stripped = raw.strip()
        if not pending and (not stripped or stripped.startswith("#")):
            continue
        if stripped.startswith("#"):
            continue
        if stripped.endswith("\\"):
            pending += stripped[:-1].rstrip() + " "
            continue
        lines.append((pending + stripped).strip())
        pending = ""
    if pending.strip():
        lines.append(pending.strip())
    return lines


def _split_args(rest: str) -> list[str]:
    rest = rest.strip()
    if rest.startswith("["):
        try:
            value = json.loads(rest)
        except json.JSONDecodeError as e:
            raise RecipeError(f"Malformed JSON arguments: {rest}") from e
        return [str(v) for v in value]
    return shlex.split(rest)


def _parse_from(rest: str) -> Stage:
    args = [a for a in rest.split() if not a.startswith("--")]
    if not args:
        raise RecipeError("FROM without an image")
    name = None
    if len(args) >= 3 and args[1].lower() == "as":
        name = args[2]
    return Stage(base=args[0], name=name)


def _parse_copy(rest: str) -> CopyInstruction:
    tokens = rest.split()
    from_stage = None
    while tokens and tokens[0].startswith("--"):
        flag = tokens.pop(0)
        if flag.startswith("--from="):
            from_stage = flag.split("=", 1)[1]
    args = _split_args(" ".join(tokens))
    if len(args) < 2:
        raise RecipeError(f"COPY needs a source and a destination: {rest}")
    return CopyInstruction(sources=args[:-1], dest=args[-1], from_stage=from_stage)


def _parse_ports(rest: str) -> list[int]:
    ports = []
    for token in rest.split():
        number = token.split("/", 1)[0]
        try:
            ports.append(int(number))
        except ValueError as e:
            raise RecipeError(f"Unsupported EXPOSE value: {token}") from e
    return ports


def inspect_dockerfile(text: str) -> DockerfileSummary:
    """
    Parse a Dockerfile into per-stage facts.

    Only the instructions relevant to the runtime layout are interpreted:
    FROM, WORKDIR, EXPOSE, COPY/ADD, RUN and ENTRYPOINT.

    Raises:
        RecipeError: If an instruction appears before FROM or is malformed.
    """
    stages: list[Stage] = []
    for line in _logical_lines(text):
        keyword, _, rest = _INSTRUCTION.match(line).groups()
        keyword = keyword.upper()

        if keyword == "FROM":
            stages.append(_parse_from(rest))
            continue
        if keyword == "ARG" and not stages:
            continue
        if not stages:
            raise RecipeError(f"Instruction before FROM: {line}")

        stage = stages[-1]
        if keyword == "WORKDIR":
            path = rest.strip()
            if not path.startswith("/") and stage.workdir:
                path = f"{stage.workdir.rstrip('/')}/{path}"
            stage.workdir = path
        elif keyword == "EXPOSE":
            stage.exposed_ports.extend(_parse_ports(rest))
        elif keyword in ("COPY", "ADD"):
            stage.copies.append(_parse_copy(rest))
        elif keyword == "RUN":
            stage.runs.append(rest.strip())
        elif keyword == "ENTRYPOINT":
            stage.entrypoint = _split_args(rest)

    return DockerfileSummary(stages=stages)


def check_dockerfile(summary: DockerfileSummary, recipe: ImageRecipe) -> list[str]:
    """
    Compare a parsed Dockerfile with the runtime layout a recipe promises.

    Returns:
        Human-readable problems; empty when the Dockerfile conforms.
    """
    final = summary.final
    if final is None:
        return ["no FROM instruction"]

    problems: list[str] = []
    app_dir = recipe.app_dir.rstrip("/")

    if len(summary.stages) < 2:
        problems.append("expected a builder stage and a runtime stage")

    if final.exposed_ports != [recipe.port]:
        problems.append(
            f"runtime stage must expose exactly port {recipe.port}, found {final.exposed_ports}"
        )

    if (final.workdir or "").rstrip("/") != app_dir:
        problems.append(f"runtime working directory is {final.workdir!r}, expected {app_dir!r}")

    if not any(c.from_stage and c.dest.rstrip("/") == app_dir for c in final.copies):
        problems.append(f"runtime stage does not copy the build output into {app_dir}")

    for asset in recipe.asset_dirs:
        target = recipe.asset_path(asset)
        if not any(
            c.from_stage is None
            and c.dest.rstrip("/") == target
            and any(s.rstrip("/") == asset for s in c.sources)
            for c in final.copies
        ):
            problems.append(f"runtime stage does not copy {asset}/ to {target}")

    if not final.entrypoint:
        problems.append("runtime stage has no ENTRYPOINT")

    return problems
