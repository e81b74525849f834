# -----------------------------------------------------------------------------
# THE FOUNDRY - IMAGE BUILDER & EVIDENCE
# -----------------------------------------------------------------------------
# Responsibility: Builds the runtime image for an ImageRecipe, checks that the
# result honours the runtime layout, and pushes it to a registry.
# Creates Evidence (Black Box) for every build, pass or fail.
#
# Guarantees:
# - Pre-flight: a source tree missing required paths never reaches Docker
# - Single pass: a compile error aborts the build; nothing is tagged
# - Black Box: every step is logged to flight_recorder.json
# -----------------------------------------------------------------------------

import io
import json
import os
import tarfile
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from docker import DockerClient
from docker.errors import APIError, BuildError, ImageNotFound, NotFound
from rich.console import Console

from src.core.recipe import context_paths, missing_sources, render_dockerfile
from src.domain.models import ImageRecipe, ImageRef
from src.infra.docker_client import DockerProvider

console = Console()

BUILDS_DIR = Path(os.getenv("SLIPWAY_BUILDS_DIR", Path(__file__).parent.parent.parent / "builds"))

# Never shipped into a build context
CONTEXT_EXCLUDES = {".git", "target", "__pycache__", ".venv", "node_modules", ".pytest_cache"}

# Go's os.ModeDir, as reported in the container archive stat header
_MODE_DIR = 1 << 31


class SourceTreeError(Exception):
    """Raised when the source tree lacks paths the recipe needs."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"Source tree is missing: {', '.join(missing)}")
        self.missing = missing


class BuildFailedError(Exception):
    """Raised when the image build fails (compile error, bad base image...)."""

    def __init__(self, message: str, log: str = "") -> None:
        super().__init__(message)
        self.log = log


class ImageVerificationError(Exception):
    """Raised when a built image does not match the runtime layout."""

    def __init__(self, problems: list[str]) -> None:
        super().__init__("Image verification failed: " + "; ".join(problems))
        self.problems = problems


class PushError(Exception):
    """Raised when pushing an image to the registry fails."""

    pass


@dataclass
class FlightLogEntry:
    """A single entry in the flight recorder."""

    timestamp: str
    event: str
    details: str | None = None


@dataclass
class BuildResult:
    """Result of a successful build."""

    build_id: str
    tag: str
    image_id: str
    duration_seconds: float
    evidence_path: Path
    verified: bool = False


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class BlackBox:
    """
    Evidence Pack - The Flight Recorder.

    Every build (and every release wrapping one) gets a folder with:
    - recipe.json + Dockerfile: what was asked for
    - build_log.txt: the daemon's output
    - verdict.json: PASS/FAIL per stage
    - flight_recorder.json: complete session log
    """

    def __init__(self, run_id: str, root: Path = BUILDS_DIR) -> None:
        self.run_id = run_id
        self.folder = Path(root) / run_id
        self.folder.mkdir(parents=True, exist_ok=True)
        self._log: list[FlightLogEntry] = []
        self._verdicts: dict[str, dict] = {}

        console.print(f"[cyan][BLACKBOX] Evidence folder: {self.folder}[/cyan]")

    def log(self, event: str, details: str | None = None) -> None:
        """Record an event in the flight recorder."""
        self._log.append(FlightLogEntry(timestamp=_now(), event=event, details=details))

    def save_text(self, name: str, text: str) -> Path:
        path = self.folder / name
        path.write_text(text)
        self.log("SAVED", name)
        return path

    def save_json(self, name: str, data: dict) -> Path:
        path = self.folder / name
        with open(path, "w") as f:
            json.dump(data, f, indent=2)
        self.log("SAVED", name)
        return path

    def save_recipe(self, recipe: ImageRecipe, dockerfile: str) -> None:
        self.save_json("recipe.json", recipe.model_dump(mode="json"))
        self.save_text("Dockerfile", dockerfile)

    def record_verdict(self, stage: str, passed: bool, details: str | None = None) -> None:
        verdict = "PASS" if passed else "FAIL"
        self._verdicts[stage] = {"timestamp": _now(), "verdict": verdict, "details": details}
        self.log(f"{stage.upper()}_{verdict}", details)

    def finalize(self) -> None:
        """Save verdict.json and flight_recorder.json."""
        self.save_json("verdict.json", self._verdicts)
        path = self.folder / "flight_recorder.json"
        with open(path, "w") as f:
            json.dump(
                [{"timestamp": e.timestamp, "event": e.event, "details": e.details} for e in self._log],
                f,
                indent=2,
            )
        console.print(f"[green][BLACKBOX] Flight recorder saved: {path}[/green]")


def _format_build_log(chunks) -> str:
    lines = []
    for chunk in chunks or []:
        if not isinstance(chunk, dict):
            lines.append(str(chunk))
            continue
        text = chunk.get("stream") or chunk.get("status") or chunk.get("error")
        if text:
            lines.append(text.rstrip("\n"))
    return "\n".join(lines)


def _exclude_filter(info: tarfile.TarInfo) -> tarfile.TarInfo | None:
    if CONTEXT_EXCLUDES.intersection(Path(info.name).parts):
        return None
    return info


class Foundry:
    """
    The Docker Body that turns a source tree into a runtime image.

    Connects through DockerProvider (honours DOCKER_HOST); auto_wake starts
    a sleeping local engine first.
    """

    def __init__(
        self,
        client: DockerClient | None = None,
        builds_dir: Path = BUILDS_DIR,
        auto_wake: bool = False,
    ) -> None:
        self._client = client or DockerProvider(auto_wake=auto_wake).get_client()
        self._builds_dir = Path(builds_dir)

    def create_context(self, recipe: ImageRecipe, context_dir: Path) -> io.BytesIO:
        """
        Assemble the build context as an in-memory tar stream.

        The rendered Dockerfile is injected at the root; only the paths the
        recipe names are copied from the source tree.
        """
        context_dir = Path(context_dir)
        dockerfile = render_dockerfile(recipe).encode("utf-8")

        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            info = tarfile.TarInfo(name="Dockerfile")
            info.size = len(dockerfile)
            info.mtime = int(time.time())
            tar.addfile(info, io.BytesIO(dockerfile))

            for rel in context_paths(recipe):
                tar.add(str(context_dir / rel), arcname=rel, filter=_exclude_filter)

        buffer.seek(0)
        return buffer

    def build(
        self,
        recipe: ImageRecipe,
        context_dir: Path,
        tag: str,
        pull: bool = False,
        build_id: str | None = None,
        verify: bool = True,
    ) -> BuildResult:
        """
        Build (and by default verify) the runtime image.

        Args:
            recipe: What to build.
            context_dir: Root of the source tree.
            tag: Local tag for the resulting image.
            pull: Always pull newer base images.
            build_id: Evidence folder name (random when None).
            verify: Run verify_image after a successful build.

        Raises:
            SourceTreeError: Required source paths are missing.
            BuildFailedError: The daemon reported a build error.
            ImageVerificationError: The image does not match the layout.
        """
        build_id = build_id or uuid.uuid4().hex[:12]
        box = BlackBox(build_id, root=self._builds_dir)
        box.log("BUILD_STARTED", f"{recipe.stack}/{recipe.variant} -> {tag}")

        try:
            missing = missing_sources(recipe, context_dir)
            if missing:
                box.record_verdict("preflight", False, ", ".join(missing))
                console.print(f"[red][FOUNDRY] Source tree incomplete: {missing}[/red]")
                raise SourceTreeError(missing)
            box.record_verdict("preflight", True)

            dockerfile = render_dockerfile(recipe)
            box.save_recipe(recipe, dockerfile)
            context = self.create_context(recipe, context_dir)

            console.print(f"[cyan][FOUNDRY] Building {tag} ({recipe.stack}/{recipe.variant})...[/cyan]")
            start = time.monotonic()
            try:
                image, logs = self._client.images.build(
                    fileobj=context,
                    custom_context=True,
                    tag=tag,
                    rm=True,
                    forcerm=True,
                    pull=pull,
                )
            except BuildError as e:
                log_text = _format_build_log(e.build_log)
                box.save_text("build_log.txt", log_text)
                box.record_verdict("build", False, e.msg)
                console.print(f"[red][FOUNDRY] Build failed: {e.msg}[/red]")
                raise BuildFailedError(f"Build failed: {e.msg}", log=log_text) from e
            except APIError as e:
                box.record_verdict("build", False, str(e))
                console.print(f"[red][FOUNDRY] Docker API error: {e}[/red]")
                raise BuildFailedError(f"Docker API error: {e}") from e

            duration = time.monotonic() - start
            box.save_text("build_log.txt", _format_build_log(logs))
            box.record_verdict("build", True, image.id)
            console.print(f"[green][FOUNDRY] Built {tag} in {duration:.1f}s[/green]")

            result = BuildResult(
                build_id=build_id,
                tag=tag,
                image_id=image.id,
                duration_seconds=round(duration, 2),
                evidence_path=box.folder,
            )

            if verify:
                try:
                    self.verify_image(tag, recipe)
                except ImageVerificationError as e:
                    box.record_verdict("verify", False, "; ".join(e.problems))
                    raise
                box.record_verdict("verify", True)
                result.verified = True

            return result
        finally:
            box.finalize()

    def verify_image(self, tag: str, recipe: ImageRecipe) -> None:
        """
        Check a built image against the runtime layout.

        Exposed ports must be exactly {<port>/tcp}, the working directory the
        app dir, and the binary plus asset directories present. The files are
        inspected through a created (never started) container.

        Raises:
            ImageVerificationError: With every problem found.
        """
        try:
            image = self._client.images.get(tag)
        except ImageNotFound as e:
            raise ImageVerificationError([f"image {tag} not found"]) from e

        config = image.attrs.get("Config") or {}
        problems: list[str] = []

        exposed = set((config.get("ExposedPorts") or {}).keys())
        expected = {f"{recipe.port}/tcp"}
        if exposed != expected:
            problems.append(f"exposed ports {sorted(exposed)} != {sorted(expected)}")

        app_dir = recipe.app_dir.rstrip("/")
        workdir = (config.get("WorkingDir") or "").rstrip("/")
        if workdir != app_dir:
            problems.append(f"working directory {workdir or '<unset>'} != {app_dir}")

        container = self._client.containers.create(tag)
        try:
            expected_paths = [(recipe.binary_path, False)] + [
                (recipe.asset_path(a), True) for a in recipe.asset_dirs
            ]
            for path, want_dir in expected_paths:
                try:
                    bits, stat = container.get_archive(path)
                except NotFound:
                    problems.append(f"{path} missing from image")
                    continue
                # the archive is streamed; read it out so the connection is released
                for _ in bits:
                    pass
                is_dir = bool(int(stat.get("mode", 0)) & _MODE_DIR)
                if is_dir != want_dir:
                    kind = "directory" if want_dir else "file"
                    problems.append(f"{path} is not a {kind}")
        finally:
            container.remove(force=True)

        if problems:
            console.print(f"[red][FOUNDRY] Verification failed for {tag}[/red]")
            raise ImageVerificationError(problems)

        console.print(f"[green][FOUNDRY] Verified {tag}: port {recipe.port}, layout OK[/green]")

    def _auth_config(self) -> dict | None:
        username = os.getenv("REGISTRY_USERNAME")
        password = os.getenv("REGISTRY_PASSWORD")
        if username and password:
            return {"username": username, "password": password}
        return None

    def push(self, image_ref: ImageRef, source_tag: str) -> str | None:
        """
        Tag a local image as image_ref and push it.

        Returns:
            The pushed manifest digest when the registry reports one.

        Raises:
            PushError: If the image is missing or the registry rejects the push.
        """
        try:
            image = self._client.images.get(source_tag)
        except ImageNotFound as e:
            raise PushError(f"Local image {source_tag} not found") from e

        image.tag(image_ref.name, tag=image_ref.tag)
        console.print(f"[cyan][FOUNDRY] Pushing {image_ref}...[/cyan]")

        digest = None
        try:
            for chunk in self._client.images.push(
                image_ref.name,
                tag=image_ref.tag,
                stream=True,
                decode=True,
                auth_config=self._auth_config(),
            ):
                if "error" in chunk:
                    raise PushError(f"Push of {image_ref} failed: {chunk['error']}")
                aux = chunk.get("aux") or {}
                digest = aux.get("Digest", digest)
        except APIError as e:
            raise PushError(f"Push of {image_ref} failed: {e}") from e

        console.print(f"[green][FOUNDRY] Pushed {image_ref} {digest or ''}[/green]")
        return digest
