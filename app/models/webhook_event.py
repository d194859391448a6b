"""Webhook event model for tracking received Shopify webhooks."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, JSON

from app.core.database import Base


class WebhookEvent(Base):
    """Webhook received from Shopify and its processing outcome."""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop = Column(String, nullable=False, index=True)
    topic = Column(String, nullable=False)  # "APP_UNINSTALLED", "APP_SCOPES_UPDATE", ...
    payload = Column(JSON, nullable=True)
    processed = Column(Boolean, nullable=False, default=False)
    processing_error = Column(Text, nullable=True)
    received_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)
