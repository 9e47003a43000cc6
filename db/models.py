"""
SQLAlchemy models.
"""
from sqlalchemy import Column, String, DateTime, JSON
from sqlalchemy.sql import func
from .database import Base
import ulid


class StripeWebhookEvent(Base):
    """
    Stripe webhook event log.
    Prevents duplicate processing of webhook events and keeps an audit
    trail of what each delivery did.
    """

    __tablename__ = "stripe_webhook_events"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    stripe_event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)

    # Outcome reported by the handler (success, skipped, pending, logged, ignored)
    status = Column(String(50), nullable=True)

    # Processing status
    received_at = Column(DateTime, server_default=func.now(), nullable=False)
    processed_at = Column(DateTime, nullable=True)

    # Handler result summary (no raw payload, it carries PII)
    result_json = Column(JSON, nullable=True)

    def __repr__(self):
        return f"<StripeWebhookEvent(id={self.id}, event_id={self.stripe_event_id}, type={self.event_type})>"
