# -----------------------------------------------------------------------------
# AZURE DEVOPS SERVICE HOOK PAYLOADS
# -----------------------------------------------------------------------------
# Wire models for the events ADO posts to /hooks/ado/build and for the
# notification records returned by the ADO hooks API.
#
# Reference:
# https://learn.microsoft.com/en-us/rest/api/azure/devops/hooks/notifications/get
# -----------------------------------------------------------------------------

import re
import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# ADO timestamps carry .NET tick precision (7 fractional digits)
_TICKS = re.compile(r"(\.\d{6})\d+")


def _trim_ticks(value: Any) -> Any:
    if isinstance(value, str):
        return _TICKS.sub(r"\1", value)
    return value


class AdoModel(BaseModel):
    """Base for ADO payloads: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Link(AdoModel):
    href: str


class Container(AdoModel):
    id: uuid.UUID
    base_url: str | None = None


class Message(AdoModel):
    text: str
    html: str
    markdown: str


class Event(AdoModel):
    """An event as delivered by a web hook subscription."""

    id: uuid.UUID
    subscription_id: uuid.UUID | None = None
    notification_id: int | None = None
    event_type: str
    publisher_id: str
    message: Message | None = None
    detailed_message: Message | None = None
    resource: dict[str, Any] | None = None
    resource_version: str | None = None
    resource_containers: dict[str, Container] = Field(default_factory=dict)
    created_date: datetime

    @field_validator("created_date", mode="before")
    @classmethod
    def trim_ticks(cls, value: Any) -> Any:
        return _trim_ticks(value)


class NotificationDetails(AdoModel):
    event_type: str
    # documented as required, but ADO omits it for hooks sent without details
    event: Event | None = None


class Notification(AdoModel):
    id: int
    subscription_id: uuid.UUID
    subscriber_id: uuid.UUID
    event_id: uuid.UUID
    status: str
    result: str
    created_date: datetime
    modified_date: datetime
    details: NotificationDetails

    @field_validator("created_date", "modified_date", mode="before")
    @classmethod
    def trim_ticks(cls, value: Any) -> Any:
        return _trim_ticks(value)


class Build(AdoModel):
    """The fields of a finished pipeline run that the hook cares about."""

    tags: list[str] = Field(default_factory=list)
    template_parameters: dict[str, Any] = Field(default_factory=dict)
    id: int
    url: str
    build_number: str  # e.g. "20221202.1"
    status: str  # e.g. "completed"
    result: str  # e.g. "succeeded"
    queue_time: datetime
    start_time: datetime
    finish_time: datetime
    reason: str  # e.g. "manual", "batchedCI"

    @field_validator("queue_time", "start_time", "finish_time", mode="before")
    @classmethod
    def trim_ticks(cls, value: Any) -> Any:
        return _trim_ticks(value)


class BuildComplete(Build):
    """Resource payload of a build.complete event."""

    links: dict[str, Link] = Field(default_factory=dict, alias="_links")
