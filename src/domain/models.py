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
# DOMAIN MODELS - RELEASE INSTRUCTIONS
# -----------------------------------------------------------------------------
# These Pydantic models describe what gets built (ImageRecipe) and where it
# gets deployed (TemplateParameters). The Foundry and the template renderer
# consume them without further checks.
#
# Invalid recipes or parameters are rejected here, before any Docker or
# Azure call is made.
# -----------------------------------------------------------------------------

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

APP_DIR = "/app"
DEFAULT_PORT = 8000
ASSET_DIRS = ["static", "templates"]
INIT_SCRIPT = "init_container.sh"


class StackType(str, Enum):
    """
    Supported build stacks.

    Each stack maps to a builder image, a runtime image and the commands
    that turn a source tree into a single executable under /app.
    """

    RUST = "rust"
    PYTHON = "python"


class RecipeVariant(str, Enum):
    """
    The two Dockerfile flavours.

    APPSERVICE: nightly toolchain, bullseye runtime, init_container.sh entry point.
    SLIM: stable toolchain, bookworm runtime, the binary is the entry point.
    """

    APPSERVICE = "appservice"
    SLIM = "slim"


class ImageRecipe(BaseModel):
    """
    Build instructions for one container image.

    The runtime image always carries the binary at <app_dir>/<binary_name>
    with the asset directories next to it.
    """

    model_config = ConfigDict(str_strip_whitespace=True, use_enum_values=False)

    binary_name: str = Field(
        "axum-app",
        min_length=1,
        max_length=64,
        pattern=r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$",
        description="Name of the executable produced by the build",
    )
    stack: StackType = Field(StackType.RUST, description="Build stack")
    variant: RecipeVariant = Field(RecipeVariant.APPSERVICE, description="Dockerfile flavour")
    builder_image: str | None = Field(None, description="Override for the builder base image")
    runtime_image: str | None = Field(None, description="Override for the runtime base image")
    port: int = Field(DEFAULT_PORT, ge=1, le=65535, description="Listening port to EXPOSE")
    app_dir: str = Field(APP_DIR, pattern=r"^/[^\s]*$")
    asset_dirs: list[str] = Field(default_factory=lambda: list(ASSET_DIRS))
    manifest_files: list[str] | None = Field(
        None, description="Dependency manifests copied first (stack default when None)"
    )
    source_paths: list[str] | None = Field(
        None, description="Source files/directories copied into the builder (stack default when None)"
    )
    init_script: str = Field(INIT_SCRIPT, min_length=1)

    @property
    def binary_path(self) -> str:
        return f"{self.app_dir.rstrip('/')}/{self.binary_name}"

    def asset_path(self, asset: str) -> str:
        return f"{self.app_dir.rstrip('/')}/{asset}"


class TemplateParameters(BaseModel):
    """
    Inputs of the infrastructure template.

    location=None means "use the resource group's region".
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    app_name: str = Field(
        ...,
        min_length=2,
        max_length=60,
        pattern=r"^[a-zA-Z][a-zA-Z0-9-]*$",
        description="Web app name; also the image repository name",
    )
    location: str | None = Field(None, description="Azure region (resource group region when None)")
    sku: str = Field("B1", min_length=1, description="App Service plan pricing tier")
    image_tag: str = Field(
        "latest", min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$"
    )
    repo_url: str = Field(..., min_length=1, description="Git repository bound to the web app")
    branch: str = Field("main", min_length=1)


class ImageRef(BaseModel):
    """A fully qualified image reference: <server>/<repository>:<tag>."""

    server: str = Field(..., min_length=1)
    repository: str = Field(..., min_length=1)
    tag: str = Field("latest", min_length=1)

    @property
    def name(self) -> str:
        return f"{self.server}/{self.repository}"

    def __str__(self) -> str:
        return f"{self.name}:{self.tag}"
