"""
Pytest configuration and fixtures for Slipway tests.
"""

import json
import os
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test environment variables
os.environ.setdefault("SLIPWAY_BUILDS_DIR", str(Path(__file__).parent / ".builds"))
os.environ.setdefault("ADO_ORGANIZATION", "https://dev.azure.com/contoso")

from tests.payloads import make_build_resource, make_event, make_notification


@pytest.fixture
def build_resource():
    return make_build_resource()


@pytest.fixture
def event_body(build_resource):
    return make_event(build_resource)


@pytest.fixture
def notification_body():
    return make_notification()


@pytest.fixture
def mock_response():
    """Factory for requests.Response stand-ins."""

    def _make(status_code: int = 200, body=None, text: str | None = None):
        response = MagicMock()
        response.status_code = status_code
        if text is None:
            text = json.dumps(body) if body is not None else ""
        response.text = text
        response.json.side_effect = lambda: json.loads(text)
        return response

    return _make


@pytest.fixture
def mock_docker_client():
    """Mock Docker client for testing."""
    client = MagicMock()
    client.ping.return_value = True

    image = MagicMock()
    image.id = "sha256:feedface"
    image.attrs = {"Config": {"ExposedPorts": {"8000/tcp": {}}, "WorkingDir": "/app"}}
    client.images.get.return_value = image
    client.images.build.return_value = (image, [{"stream": "Step 1/12 : FROM rust:latest\n"}])
    client.images.push.return_value = iter(
        [
            {"status": "Pushing"},
            {"aux": {"Tag": "latest", "Digest": "sha256:abc123", "Size": 1024}},
        ]
    )

    container = MagicMock()
    container.short_id = "abc123"

    def _get_archive(path):
        is_dir = not path.endswith("axum-app")
        mode = (1 << 31) | 0o755 if is_dir else 0o755
        return iter([b""]), {"name": path.rsplit("/", 1)[-1], "mode": mode}

    container.get_archive.side_effect = _get_archive
    client.containers.create.return_value = container

    return client


@pytest.fixture
def rust_source_tree(tmp_path):
    """A minimal source tree for the default (rust/appservice) recipe."""
    root = tmp_path / "app"
    (root / "src").mkdir(parents=True)
    (root / "src" / "main.rs").write_text("fn main() {}\n")
    (root / "Cargo.toml").write_text('[package]\nname = "axum-app"\nversion = "0.1.0"\n')
    (root / "Cargo.lock").write_text("# lock\n")
    (root / "static").mkdir()
    (root / "static" / "style.css").write_text("body {}\n")
    (root / "templates").mkdir()
    (root / "templates" / "index.html").write_text("<h1>hi</h1>\n")
    (root / "init_container.sh").write_text("#!/bin/sh\nexec /app/axum-app\n")
    (root / "target").mkdir()
    (root / "target" / "junk.o").write_text("ignored\n")
    return root
