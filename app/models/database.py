from datetime import datetime
from enum import Enum
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Integer,
    String,
    Text,
    DateTime,
)
from app.core.database import Base


class ConnectionStatus(str, Enum):
    """Lifecycle states of a shop's Airbyte connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class Session(Base):
    """Shopify access-token session (online or offline) for a shop."""

    __tablename__ = "sessions"

    id = Column(String, primary_key=True)  # "{shop}_offline" or "{shop}_{user_id}"
    shop = Column(String, nullable=False, index=True)
    state = Column(String, nullable=False, default="")
    is_online = Column(Boolean, nullable=False, default=False)
    scope = Column(String, nullable=True)
    expires = Column(DateTime, nullable=True)
    access_token = Column(String, nullable=True)
    user_id = Column(BigInteger, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    account_owner = Column(Boolean, nullable=True)
    locale = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ConnectionRecord(Base):
    """Airbyte pipeline connection state, one row per shop."""

    __tablename__ = "airbyte_connections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop = Column(String, nullable=False, unique=True, index=True)
    status = Column(String, nullable=False, default=ConnectionStatus.DISCONNECTED.value)
    connection_id = Column(String, nullable=True)
    source_id = Column(String, nullable=True)
    destination_id = Column(String, nullable=True)
    job_id = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    last_sync_at = Column(DateTime, nullable=True)
    sync_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
