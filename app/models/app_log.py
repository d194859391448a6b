"""Append-only log and metric records written by the structured logger."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Float, Text, JSON

from app.core.database import Base


class AppLog(Base):
    """Log line persisted for a shop."""

    __tablename__ = "app_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop = Column(String, nullable=True, index=True)
    level = Column(String, nullable=False)  # "debug", "info", "warn", "error"
    message = Column(Text, nullable=False)
    context = Column(JSON, nullable=True)
    source = Column(String, nullable=False)
    user_id = Column(String, nullable=True)
    request_id = Column(String, nullable=True, index=True)
    user_agent = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)


class AppMetric(Base):
    """Named numeric measurement for a shop."""

    __tablename__ = "app_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop = Column(String, nullable=False, index=True)
    metric_name = Column(String, nullable=False, index=True)
    metric_value = Column(Float, nullable=False)
    # "metadata" is reserved on declarative classes
    metric_metadata = Column("metadata", JSON, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
