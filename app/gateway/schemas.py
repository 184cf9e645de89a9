"""Session Router – Gateway Schemas.

Pydantic models for the control surface and the Redis bus.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class MessageDirection(str, Enum):
    """Direction a message is recorded with in the CRM conversation."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class DispatchOutcome(str, Enum):
    SENT = "sent"
    NO_CONNECTED_CHANNEL = "no_connected_channel"
    SEND_FAILED = "send_failed"


class OutboundRequest(BaseModel):
    """Message the CRM asks the router to deliver over WhatsApp."""

    tenant_id: str = Field(..., description="CRM location id")
    destination: str = Field(..., description="Recipient address, normalized to +<digits>")
    text: str = Field(default="", description="Message text (may carry spintax/delay tags)")
    media_urls: list[str] = Field(default_factory=list, description="Attachment URLs")
    contact_id: str | None = Field(default=None, description="CRM contact id, when known")


class DispatchResult(BaseModel):
    outcome: DispatchOutcome
    message_id: str | None = None
    channel_address: str | None = None
    slot_id: int | None = None
    attempts: int = 0


class ChannelStatus(BaseModel):
    tenant_id: str
    slot_id: int
    connected: bool
    state: str = Field(..., description="connected|pairing|disconnected")
    bound_address: str | None = None
    priority: int | None = None
    tags: list[str] = Field(default_factory=list)


class ChannelConfigUpdate(BaseModel):
    priority: int | None = Field(default=None, ge=1)
    add_tag: str | None = None
    remove_tag: str | None = None


class PairingArtifact(BaseModel):
    tenant_id: str
    slot_id: int
    qr: str | None = None
    connected: bool = False


class SystemEvent(BaseModel):
    """Internal system event published to the Redis bus."""

    event_type: str = Field(..., description="Event type identifier")
    source: str = Field(..., description="Originating component")
    payload: dict[str, Any] = Field(default_factory=dict, description="Event data")
    severity: str = Field(default="info", description="info|warning|error|critical")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
