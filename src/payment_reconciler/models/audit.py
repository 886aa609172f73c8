"""Audit trail and in-app notification models."""

from __future__ import annotations

from typing import Any

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from payment_reconciler.models.base import Base, TimestampMixin, new_id


class PaymentEvent(Base, TimestampMixin):
    """Every inbound gateway event, including no-ops. Never updated."""

    __tablename__ = "payment_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    event_kind: Mapped[str] = mapped_column(String, nullable=False)
    gateway_event_type: Mapped[str | None] = mapped_column(String, nullable=True)
    record_type: Mapped[str | None] = mapped_column(String, nullable=True)
    record_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    outcome: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)

    __table_args__ = (Index("payment_events_record_idx", "record_type", "record_id"),)


class Notification(Base, TimestampMixin):
    """In-app notification shown to a marketplace user."""

    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(String, nullable=False)
    link: Mapped[str | None] = mapped_column(String, nullable=True)
