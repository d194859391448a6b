# Database models
from app.models.database import (
    ConnectionStatus,
    Session,
    ConnectionRecord,
)
from app.models.app_log import AppLog, AppMetric
from app.models.webhook_event import WebhookEvent

__all__ = [
    "ConnectionStatus",
    "Session",
    "ConnectionRecord",
    "AppLog",
    "AppMetric",
    "WebhookEvent",
]
