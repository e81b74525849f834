# -----------------------------------------------------------------------------
# AZURE DEVOPS SERVICE HOOK
# -----------------------------------------------------------------------------
# Endpoint: POST /hooks/ado/build
#
# Receives build.complete events from an ADO web hook subscription. Events
# are re-fetched from the ADO hooks API (authenticated with this app's
# managed identity) before they are trusted, since anyone can POST here.
#
# The identity needs read access to the target ADO organization.
# -----------------------------------------------------------------------------

import os
from functools import lru_cache
from typing import Annotated

import requests
from fastapi import APIRouter, Depends
from pydantic import ValidationError
from rich.console import Console

from src.domain.events import BuildComplete, Event, Notification
from src.infra.identity import AccessToken, IdentityError, ManagedIdentityCredential

console = Console()

# Application id of Azure DevOps; tokens must carry it as their audience
ADO_RESOURCE = "499b84ac-1321-427f-aa17-267ca6975798"
ADO_API_VERSION = "7.1-preview.1"
ADO_REQUEST_TIMEOUT = 30

BUILD_COMPLETE = "build.complete"


class HookError(Exception):
    """Raised when a hook delivery cannot be verified or processed."""

    pass


def secure_fetch_enabled() -> bool:
    """Whether events are verified against the ADO API even when they carry data."""
    return os.getenv("ADO_SECURE_FETCH", "true").strip().lower() not in ("0", "false", "no", "off")


def ado_organization() -> str | None:
    """Organization URL, e.g. https://dev.azure.com/contoso."""
    org = os.getenv("ADO_ORGANIZATION", "").strip()
    return org.rstrip("/") or None


@lru_cache(maxsize=1)
def get_credential() -> ManagedIdentityCredential:
    return ManagedIdentityCredential()


def notification_url(organization: str, event: Event) -> str:
    """
    ADO hooks API URL for the notification that delivered event.

    Raises:
        HookError: If the event lacks its subscription or notification id.
    """
    if event.notification_id is None:
        raise HookError("event had no notification id")
    if event.subscription_id is None:
        raise HookError("event had no subscription id")

    # UUIDs and integers are URL-safe; nothing attacker-controlled is spliced in raw
    return (
        f"{organization}/_apis/hooks/subscriptions/{event.subscription_id}"
        f"/notifications/{event.notification_id}?api-version={ADO_API_VERSION}"
    )


def verify(token: AccessToken, event: Event, organization: str | None = None) -> Event:
    """
    Verify that an event really originated from the target ADO organization.

    The notification record is fetched from ADO and compared with the
    delivery. When the delivery carried no resource data, the event stored
    in the notification is returned instead.

    Raises:
        HookError: If the notification cannot be fetched or does not match.
    """
    organization = organization or ado_organization()
    if not organization:
        raise HookError("ADO_ORGANIZATION is not configured")

    url = notification_url(organization, event)
    try:
        response = requests.get(
            url,
            headers={"Authorization": f"Bearer {token.token}"},
            timeout=ADO_REQUEST_TIMEOUT,
        )
    except requests.RequestException as e:
        raise HookError(f"failed to fetch notification data: {e}") from e

    if response.status_code != 200:
        raise HookError(f"{url}: code {response.status_code}")

    try:
        notification = Notification.model_validate_json(response.text)
    except ValidationError as e:
        raise HookError(f"failed to decode notification data: {response.text[:500]}") from e

    # ADO offers nothing stronger than matching these fields
    if (
        notification.event_id != event.id
        or notification.id != event.notification_id
        or notification.status != "processing"
    ):
        console.print(f"[red][ADO] Verification mismatch for event {event.id}[/red]")
        raise HookError("failed to verify event")

    if event.resource is None and notification.details.event is not None:
        return notification.details.event
    return event


def build_complete(token: AccessToken, event: Event) -> BuildComplete:
    """
    Process a verified build.complete event.

    Raises:
        HookError: If the resource data is missing or malformed.
    """
    if event.resource is None:
        raise HookError("resource data not present")

    try:
        build = BuildComplete.model_validate(event.resource)
    except ValidationError as e:
        raise HookError(f"failed to decode resource: {e}") from e

    colour = "green" if build.result == "succeeded" else "yellow"
    console.print(
        f"[{colour}][ADO] Build {build.build_number} (#{build.id}) {build.status}/{build.result}, "
        f"reason={build.reason}[/{colour}]"
    )
    return build


router = APIRouter()


@router.post("/build")
def build(
    event: Event,
    credential: Annotated[ManagedIdentityCredential, Depends(get_credential)],
) -> dict:
    """Hook invoked for build.complete events."""
    console.print(f"[cyan][ADO] received event: {event.model_dump_json(by_alias=True)}[/cyan]")

    try:
        token = credential.get_token(ADO_RESOURCE)
    except IdentityError as e:
        raise HookError(f"failed to query identity: {e}") from e

    # No payload, or secure mode: ask ADO for the authoritative copy
    if event.resource is None or secure_fetch_enabled():
        try:
            event = verify(token, event)
        except HookError as e:
            raise HookError(f"failed to verify event: {e}") from e

    if event.event_type == BUILD_COMPLETE:
        result = build_complete(token, event)
        return {"eventType": event.event_type, "handled": True, "buildNumber": result.build_number}

    console.print(f"[dim][ADO] Ignoring event type {event.event_type}[/dim]")
    return {"eventType": event.event_type, "handled": False}
