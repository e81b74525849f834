# -----------------------------------------------------------------------------
# INFRASTRUCTURE LAYER
# -----------------------------------------------------------------------------
# Contains low-level infrastructure wrappers:
# - DockerProvider: Docker SDK wrapper with connection validation
# - GitProvider: read-only working copy metadata
# - ManagedIdentityCredential: platform-issued access tokens
# -----------------------------------------------------------------------------

from .docker_client import DockerProvider, DockerProviderError
from .git_client import GitError, GitProvider
from .identity import AccessToken, IdentityError, ManagedIdentityCredential

__all__ = [
    "AccessToken",
    "DockerProvider",
    "DockerProviderError",
    "GitError",
    "GitProvider",
    "IdentityError",
    "ManagedIdentityCredential",
]
