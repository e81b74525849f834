"""
Sample Azure DevOps hook payloads shared by the tests.
"""

import json
from pathlib import Path

FIXTURES_DIR = Path(__file__).parent / "fixtures"

SUBSCRIPTION_ID = "0a6e9c4f-7d3b-4c1e-9f2a-5b8d1e6c3a70"
EVENT_ID = "5f2b1c3d-8e4a-4b6f-9a0c-7d1e2f3a4b5c"
COLLECTION_ID = "c12d0eb8-e382-443b-9f9c-c52cba5014c2"


def make_build_resource(**overrides) -> dict:
    """A build.complete resource as ADO sends it (7-digit fractional seconds)."""
    resource = {
        "_links": {
            "web": {"href": "https://dev.azure.com/contoso/web/build.aspx?id=1"},
        },
        "id": 1,
        "url": "https://dev.azure.com/contoso/_apis/build/Builds/1",
        "buildNumber": "20221202.1",
        "status": "completed",
        "result": "succeeded",
        "queueTime": "2022-12-02T18:09:39.7716431Z",
        "startTime": "2022-12-02T18:09:41.1234567Z",
        "finishTime": "2022-12-02T18:12:05.9876543Z",
        "reason": "manual",
    }
    resource.update(overrides)
    return resource


def make_event(resource: dict | None = None, event_type: str = "build.complete", **overrides) -> dict:
    """A web hook delivery body."""
    event = {
        "subscriptionId": SUBSCRIPTION_ID,
        "notificationId": 7,
        "id": EVENT_ID,
        "eventType": event_type,
        "publisherId": "tfs",
        "message": {
            "text": "Build 20221202.1 succeeded",
            "html": "Build <a href=\"x\">20221202.1</a> succeeded",
            "markdown": "Build [20221202.1](x) succeeded",
        },
        "resourceVersion": "2.0",
        "resourceContainers": {
            "collection": {"id": COLLECTION_ID, "baseUrl": "https://dev.azure.com/contoso/"},
        },
        "createdDate": "2022-12-02T18:12:07.3302347Z",
    }
    if resource is not None:
        event["resource"] = resource
    event.update(overrides)
    return event


def make_notification(event: dict | None = None, **overrides) -> dict:
    """A notification record as returned by the ADO hooks API."""
    notification = {
        "id": 7,
        "subscriptionId": SUBSCRIPTION_ID,
        "subscriberId": "00000000-0000-0000-0000-000000000001",
        "eventId": EVENT_ID,
        "status": "processing",
        "result": "pending",
        "createdDate": "2022-12-02T18:12:07.4761234Z",
        "modifiedDate": "2022-12-02T18:12:07.5123456Z",
        "details": {"eventType": "build.complete"},
    }
    if event is not None:
        notification["details"]["event"] = event
    notification.update(overrides)
    return notification


def load_fixture(name: str) -> dict:
    """A notification captured from ADO's web hook test page."""
    return json.loads((FIXTURES_DIR / name).read_text())
