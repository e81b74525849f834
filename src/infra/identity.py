# -----------------------------------------------------------------------------
# MANAGED IDENTITY CREDENTIAL
# -----------------------------------------------------------------------------
# Responsibility: Obtain Entra ID access tokens for the identity the platform
# assigned to this process, without any stored secret.
#
# Sources, in order:
# - App Service / Functions: IDENTITY_ENDPOINT + IDENTITY_HEADER
# - Azure VMs and containers: the Instance Metadata Service (IMDS)
# -----------------------------------------------------------------------------

import os
import threading
import time
from dataclasses import dataclass

import requests
from rich.console import Console

console = Console()

IMDS_ENDPOINT = "http://169.254.169.254/metadata/identity/oauth2/token"
IMDS_API_VERSION = "2018-02-01"
APP_SERVICE_API_VERSION = "2019-08-01"

# Refresh this long before the token actually expires
REFRESH_MARGIN_SECONDS = 300
TOKEN_REQUEST_TIMEOUT = 10


class IdentityError(Exception):
    """Raised when no token can be obtained from the managed identity endpoint."""

    pass


@dataclass
class AccessToken:
    token: str
    expires_on: int

    def is_fresh(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return self.expires_on - REFRESH_MARGIN_SECONDS > now


class ManagedIdentityCredential:
    """
    Token source backed by the platform's managed identity endpoint.

    Tokens are cached per resource until shortly before they expire.
    """

    def __init__(self, client_id: str | None = None) -> None:
        self._client_id = client_id or os.getenv("AZURE_CLIENT_ID")
        self._cache: dict[str, AccessToken] = {}
        self._lock = threading.Lock()

    def _request(self, resource: str) -> requests.Response:
        endpoint = os.getenv("IDENTITY_ENDPOINT")
        header = os.getenv("IDENTITY_HEADER")

        if endpoint and header:
            params = {"resource": resource, "api-version": APP_SERVICE_API_VERSION}
            if self._client_id:
                params["client_id"] = self._client_id
            return requests.get(
                endpoint,
                params=params,
                headers={"X-IDENTITY-HEADER": header},
                timeout=TOKEN_REQUEST_TIMEOUT,
            )

        params = {"resource": resource, "api-version": IMDS_API_VERSION}
        if self._client_id:
            params["client_id"] = self._client_id
        return requests.get(
            IMDS_ENDPOINT,
            params=params,
            headers={"Metadata": "true"},
            timeout=TOKEN_REQUEST_TIMEOUT,
        )

    def get_token(self, resource: str) -> AccessToken:
        """
        Get an access token whose audience is resource.

        Args:
            resource: Resource URI or application id (e.g. the ADO GUID).

        Raises:
            IdentityError: If the endpoint is unreachable or refuses.
        """
        with self._lock:
            cached = self._cache.get(resource)
            if cached and cached.is_fresh():
                return cached

        try:
            response = self._request(resource)
        except requests.RequestException as e:
            raise IdentityError(f"Managed identity endpoint unreachable: {e}") from e

        if response.status_code != 200:
            raise IdentityError(
                f"Managed identity endpoint returned {response.status_code}: {response.text[:200]}"
            )

        try:
            data = response.json()
            token = AccessToken(token=data["access_token"], expires_on=int(data["expires_on"]))
        except (ValueError, KeyError, TypeError) as e:
            raise IdentityError(f"Malformed token response: {e}") from e

        with self._lock:
            self._cache[resource] = token
        console.print(f"[green][IDENTITY] Token acquired for {resource}[/green]")
        return token
