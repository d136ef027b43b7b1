from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, BigInteger, DateTime, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from glucoscope.core.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PeriodStatisticsRecord(Base):
    __tablename__ = "period_statistics"

    account: Mapped[str] = mapped_column(String, primary_key=True)
    period_days: Mapped[int] = mapped_column(Integer, primary_key=True)
    start_mills: Mapped[int] = mapped_column(BigInteger, nullable=False)
    end_mills: Mapped[int] = mapped_column(BigInteger, nullable=False)

    payload: Mapped[dict] = mapped_column(JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
