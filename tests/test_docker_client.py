# =============================================================================
# SLIPWAY DOCKER CLIENT TESTS
# =============================================================================
# Tests for the Docker infrastructure client.
# =============================================================================

from unittest.mock import MagicMock, patch

import pytest
from docker.errors import DockerException

from src.infra.docker_client import DockerProvider, DockerProviderError


class TestDockerProvider:
    """Test DockerProvider connection handling."""

    @patch("src.infra.docker_client.docker.from_env")
    def test_connects_to_local_engine(self, mock_from_env):
        client = MagicMock()
        mock_from_env.return_value = client

        with patch.dict("os.environ", {"DOCKER_HOST": ""}):
            provider = DockerProvider()

        assert provider.get_client() is client
        client.ping.assert_called()

    @patch("src.infra.docker_client.docker.DockerClient")
    def test_docker_host_proxy(self, mock_client_cls):
        """DOCKER_HOST routes the client through a socket proxy."""
        with patch.dict("os.environ", {"DOCKER_HOST": "tcp://docker-proxy:2375"}):
            DockerProvider()

        assert mock_client_cls.call_args.kwargs["base_url"] == "tcp://docker-proxy:2375"

    @patch("src.infra.docker_client.docker.from_env")
    def test_engine_down_without_wake(self, mock_from_env):
        mock_from_env.side_effect = DockerException("connection refused")

        with patch.dict("os.environ", {"DOCKER_HOST": ""}):
            with pytest.raises(DockerProviderError, match="not available"):
                DockerProvider(auto_wake=False)

    @patch("src.infra.docker_client.docker.from_env")
    def test_auto_wake_recovers(self, mock_from_env):
        client = MagicMock()
        mock_from_env.side_effect = [DockerException("sleeping"), client]

        with patch.dict("os.environ", {"DOCKER_HOST": ""}), \
                patch("src.infra.docker_client.platform.system", return_value="Linux"), \
                patch("src.infra.docker_client.subprocess.run") as mock_run:
            provider = DockerProvider(auto_wake=True)

        assert provider.get_client() is client
        assert mock_run.call_args.args[0] == ["systemctl", "--user", "start", "docker"]

    @patch("src.infra.docker_client.docker.from_env")
    def test_connection_lost(self, mock_from_env):
        client = MagicMock()
        mock_from_env.return_value = client

        with patch.dict("os.environ", {"DOCKER_HOST": ""}):
            provider = DockerProvider()

        client.ping.side_effect = DockerException("gone")
        with pytest.raises(DockerProviderError, match="lost"):
            provider.get_client()


class TestDockerProviderError:
    """Test DockerProviderError exception."""

    def test_docker_provider_error_message(self):
        error = DockerProviderError("Docker Engine is not available")
        assert "not available" in str(error)
