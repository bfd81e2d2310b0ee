"""Webhook event model.

Known event tags form a closed enum; anything else is still parsed into a
WebhookEvent with ``kind=None`` and its raw tag and payload intact, so a new
event type from the remote never crashes dispatch.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from storesync.errors import InvalidEventError


class EventType(str, Enum):
    """Event tags this package understands."""
    ORDER_CREATED = "order.created"
    PURCHASE_CREATED = "purchase.created"
    PURCHASE_CONFIRMED = "purchase.confirmed"
    PURCHASE_REFUNDED = "purchase.refunded"
    INVENTORY_UPDATED = "inventory.updated"
    ITEM_UPDATED = "item.updated"


_KNOWN_TAGS = {e.value: e for e in EventType}


@dataclass(frozen=True)
class WebhookEvent:
    """An immutable event delivered by the remote system.

    ``id`` is unique per logical event but may be redelivered.
    """

    id: str
    event_type: str
    resource_type: str = ""
    resource_id: str = ""
    occurred_at: datetime | None = None
    api_version: str = ""
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> EventType | None:
        """The known EventType, or None for a tag this package doesn't know."""
        return _KNOWN_TAGS.get(self.event_type)

    @property
    def is_known(self) -> bool:
        return self.kind is not None

    def to_dict(self) -> dict[str, Any]:
        """Wire shape (camelCase), e.g. for dead-letter storage."""
        return {
            "id": self.id,
            "eventType": self.event_type,
            "resourceType": self.resource_type,
            "resourceId": self.resource_id,
            "occurredAt": self.occurred_at.isoformat() if self.occurred_at else None,
            "apiVersion": self.api_version,
            "payload": self.payload,
        }


def _parse_occurred_at(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise InvalidEventError(f"Bad occurredAt: {value!r}") from e
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as e:
        raise InvalidEventError(f"Bad occurredAt: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_event(data: Mapping[str, Any]) -> WebhookEvent:
    """Build a WebhookEvent from a decoded JSON document.

    Raises:
        InvalidEventError: if ``id`` or ``eventType`` is missing, or a field
            has the wrong shape.
    """
    if not isinstance(data, Mapping):
        raise InvalidEventError("Event document must be a JSON object")

    event_id = data.get("id")
    event_type = data.get("eventType")
    if not event_id or not isinstance(event_id, (str, int)):
        raise InvalidEventError("Event is missing 'id'")
    if not event_type or not isinstance(event_type, str):
        raise InvalidEventError("Event is missing 'eventType'")

    payload = data.get("payload") or {}
    if not isinstance(payload, Mapping):
        raise InvalidEventError("'payload' must be an object")

    return WebhookEvent(
        id=str(event_id),
        event_type=event_type,
        resource_type=str(data.get("resourceType") or ""),
        resource_id=str(data.get("resourceId") or ""),
        occurred_at=_parse_occurred_at(data.get("occurredAt")),
        api_version=str(data.get("apiVersion") or ""),
        payload=dict(payload),
    )


def parse_body(raw_body: bytes) -> WebhookEvent:
    """Decode a raw delivery body and parse it into a WebhookEvent."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidEventError("Body is not valid JSON") from e
    return parse_event(data)
