"""
Tests for Pydantic domain models.
"""

import pytest
from pydantic import ValidationError

from src.domain.models import (
    APP_DIR,
    DEFAULT_PORT,
    ImageRecipe,
    ImageRef,
    RecipeVariant,
    StackType,
    TemplateParameters,
)


class TestStackType:
    """Tests for StackType enum."""

    def test_valid_stack_types(self):
        """Test all valid stack types."""
        assert StackType.RUST.value == "rust"
        assert StackType.PYTHON.value == "python"

    def test_stack_type_from_string(self):
        """Test creating StackType from string."""
        assert StackType("rust") == StackType.RUST
        assert StackType("python") == StackType.PYTHON

    def test_invalid_stack_type(self):
        """Test that invalid stack type raises error."""
        with pytest.raises(ValueError):
            StackType("node")


class TestImageRecipe:
    """Tests for ImageRecipe model."""

    def test_defaults(self):
        """Defaults describe the axum app on the appservice variant."""
        recipe = ImageRecipe()
        assert recipe.binary_name == "axum-app"
        assert recipe.stack == StackType.RUST
        assert recipe.variant == RecipeVariant.APPSERVICE
        assert recipe.port == DEFAULT_PORT == 8000
        assert recipe.app_dir == APP_DIR == "/app"
        assert recipe.asset_dirs == ["static", "templates"]
        assert recipe.init_script == "init_container.sh"

    def test_stack_from_string(self):
        """Enum fields accept their string values."""
        recipe = ImageRecipe(stack="python", variant="slim")
        assert recipe.stack == StackType.PYTHON
        assert recipe.variant == RecipeVariant.SLIM

    def test_binary_path(self):
        """The binary lives directly under the app dir."""
        assert ImageRecipe(binary_name="web").binary_path == "/app/web"
        assert ImageRecipe(app_dir="/srv/").binary_path == "/srv/axum-app"

    def test_asset_path(self):
        """Asset dirs sit next to the binary."""
        assert ImageRecipe().asset_path("static") == "/app/static"

    def test_binary_name_whitespace_stripped(self):
        """Whitespace around the binary name is stripped."""
        assert ImageRecipe(binary_name="  web  ").binary_name == "web"

    def test_invalid_binary_name(self):
        """Binary names with path separators are rejected."""
        with pytest.raises(ValidationError):
            ImageRecipe(binary_name="../evil")

    def test_invalid_port(self):
        """Ports outside 1-65535 are rejected."""
        with pytest.raises(ValidationError):
            ImageRecipe(port=0)
        with pytest.raises(ValidationError):
            ImageRecipe(port=70000)

    def test_relative_app_dir_rejected(self):
        """The app dir must be absolute."""
        with pytest.raises(ValidationError):
            ImageRecipe(app_dir="app")

    def test_asset_dirs_independent(self):
        """Each recipe gets its own asset list."""
        first = ImageRecipe()
        first.asset_dirs.append("media")
        assert ImageRecipe().asset_dirs == ["static", "templates"]


class TestTemplateParameters:
    """Tests for TemplateParameters model."""

    def test_defaults(self):
        """Only appName and repoUrl are required."""
        params = TemplateParameters(app_name="my-app", repo_url="https://github.com/o/r")
        assert params.location is None
        assert params.sku == "B1"
        assert params.image_tag == "latest"
        assert params.branch == "main"

    def test_app_name_required(self):
        """Missing appName is rejected."""
        with pytest.raises(ValidationError):
            TemplateParameters(repo_url="https://github.com/o/r")

    @pytest.mark.parametrize("name", ["a", "1app", "my_app", "my app", "x" * 61])
    def test_invalid_app_names(self, name):
        """App names must start with a letter and hold letters, digits and hyphens."""
        with pytest.raises(ValidationError):
            TemplateParameters(app_name=name, repo_url="https://github.com/o/r")

    def test_invalid_image_tag(self):
        """Image tags follow the Docker tag grammar."""
        with pytest.raises(ValidationError):
            TemplateParameters(app_name="my-app", repo_url="x", image_tag="-bad")


class TestImageRef:
    """Tests for ImageRef model."""

    def test_name_and_str(self):
        """name omits the tag; str includes it."""
        ref = ImageRef(server="myappacr.azurecr.io", repository="my-app", tag="abc1234")
        assert ref.name == "myappacr.azurecr.io/my-app"
        assert str(ref) == "myappacr.azurecr.io/my-app:abc1234"

    def test_default_tag(self):
        """The tag defaults to latest."""
        assert ImageRef(server="r.io", repository="x").tag == "latest"
