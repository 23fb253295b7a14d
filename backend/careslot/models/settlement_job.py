"""Persisted settlement jobs (delayed simulated payment outcomes)."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from careslot.database import Base


class SettlementJobStatus:
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    FAILED = "failed"


class SettlementJob(Base):
    """
    One scheduled settlement per payment.

    The job only records the intended outcome; when it fires it is fed through
    reconciliation like any gateway notification, so a payment that already
    moved on is left untouched.
    """

    __tablename__ = "settlement_jobs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    payment_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("payments.id"), unique=True, nullable=False
    )
    booking_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    target_status: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=SettlementJobStatus.QUEUED, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<SettlementJob(payment_id={self.payment_id}, status={self.status}, target={self.target_status})>"
