"""SQLAlchemy ORM models for the reading store.

Natural keys double as primary keys so that duplicate writes can be
ignored with ``ON CONFLICT DO NOTHING`` and so that TimescaleDB accepts
the tables as hypertables (unique indexes must include the time column).
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Sensor(Base):
    __tablename__ = "sensors"

    sensor_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    location: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TemperatureReadingRow(Base):
    __tablename__ = "temperature_readings"

    sensor_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("sensors.sensor_id", ondelete="CASCADE"),
        primary_key=True,
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)
    temperature: Mapped[float] = mapped_column(Float, nullable=False)
    humidity: Mapped[float | None] = mapped_column(Float)
    location: Mapped[str | None] = mapped_column(String(255))
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PoolReadingRow(Base):
    __tablename__ = "pool_readings"

    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)
    email_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    temperature: Mapped[float | None] = mapped_column(Float)
    ph: Mapped[float | None] = mapped_column(Float)
    orp: Mapped[float | None] = mapped_column(Float)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# Tables converted to TimescaleDB hypertables when the extension exists.
HYPERTABLES = (
    (TemperatureReadingRow.__tablename__, "timestamp"),
    (PoolReadingRow.__tablename__, "timestamp"),
)
