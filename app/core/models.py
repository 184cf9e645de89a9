from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, Text, LargeBinary
from app.core.db import Base


class AuthStateRecord(Base):
    """One opaque credential/key blob of a WhatsApp session (encrypted at rest)."""
    __tablename__ = "wa_auth_state"

    session_id = Column(String(128), primary_key=True, index=True)
    key_id = Column(String(256), primary_key=True)
    data = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class ChannelSlot(Base):
    __tablename__ = "channel_slots"

    tenant_id = Column(String(255), primary_key=True, index=True)
    slot_id = Column(Integer, primary_key=True)
    phone_number = Column(String(50), nullable=True)  # bound address, "+598..."
    priority = Column(Integer, default=99, nullable=False)
    tags = Column(Text, nullable=False, default="[]")  # JSON list: ["priority", "ventas"]
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class ChannelPriorityCounter(Base):
    """Highest priority ever handed out per tenant, so freed numbers are never reused."""
    __tablename__ = "channel_priority_counters"

    tenant_id = Column(String(255), primary_key=True)
    last_priority = Column(Integer, nullable=False, default=0)


class RoutingEntry(Base):
    __tablename__ = "phone_routing"

    phone = Column(String(50), primary_key=True)
    tenant_id = Column(String(255), primary_key=True, index=True)
    contact_id = Column(String(255), nullable=True)
    channel_number = Column(String(50), nullable=True)
    message_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class CrmToken(Base):
    __tablename__ = "crm_tokens"

    tenant_id = Column(String(255), primary_key=True)
    raw_token = Column(Text, nullable=False)  # JSON, encrypted via app.core.crypto
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
