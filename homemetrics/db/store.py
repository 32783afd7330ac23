"""Async SQLAlchemy implementation of :class:`ReadingStore`."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

import structlog
from sqlalchemy import text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    create_async_engine,
)

from ..config import DatabaseConfig
from ..errors import ConnectionLostError, ConstraintViolationError
from ..interface import ReadingStore
from ..models import PoolReading, SensorReading
from .models import HYPERTABLES, Base, PoolReadingRow, Sensor, TemperatureReadingRow

logger = structlog.get_logger()

T = TypeVar("T")


def _make_engine(config: DatabaseConfig) -> AsyncEngine:
    url = make_url(config.url)
    kwargs: dict[str, Any] = {"echo": False}
    if url.get_backend_name() != "sqlite":
        kwargs.update(pool_size=config.pool_size, max_overflow=config.pool_size * 2, pool_pre_ping=True)
    return create_async_engine(url, **kwargs)


class SqlReadingStore(ReadingStore):
    """PostgreSQL/TimescaleDB store (SQLite works for tests and local runs).

    Every save runs in its own transaction and is idempotent on the
    reading's natural key.
    """

    def __init__(self, config: DatabaseConfig, *, engine: AsyncEngine | None = None) -> None:
        self._config = config
        self._engine = engine or _make_engine(config)
        dialect = self._engine.dialect.name
        self._insert = postgresql.insert if dialect == "postgresql" else sqlite.insert

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._config.create_schema:
            try:
                await self.create_schema()
            except (DBAPIError, OSError) as exc:
                logger.error("store_start_failed", error=str(exc))
                raise ConnectionLostError(f"cannot create schema: {exc}") from exc
        logger.info("store_started", dialect=self._engine.dialect.name)

    async def stop(self) -> None:
        await self._engine.dispose()
        logger.info("store_stopped")

    async def create_schema(self) -> None:
        """Create missing tables; on PostgreSQL also try hypertables."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        if self._engine.dialect.name != "postgresql":
            return

        for table, column in HYPERTABLES:
            try:
                async with self._engine.begin() as conn:
                    await conn.execute(
                        text("SELECT create_hypertable(:table, :column, if_not_exists => TRUE)"),
                        {"table": table, "column": column},
                    )
            except DBAPIError as exc:
                logger.info("hypertable_skipped", table=table, reason=str(exc.orig))

    # ------------------------------------------------------------------
    # ReadingStore
    # ------------------------------------------------------------------

    async def save_sensor_readings(self, readings: Sequence[SensorReading]) -> int:
        if not readings:
            return 0
        return await self._bounded("save_sensor_readings", self._save_sensor_readings, readings)

    async def save_pool_reading(self, reading: PoolReading) -> bool:
        inserted = await self._bounded("save_pool_reading", self._save_pool_reading, reading)
        return inserted > 0

    async def _save_sensor_readings(self, conn: AsyncConnection, readings: Sequence[SensorReading]) -> int:
        sensors = {r.sensor_id: r.location for r in readings}
        for sensor_id, location in sensors.items():
            await conn.execute(
                self._insert(Sensor)
                .values(sensor_id=sensor_id, location=location)
                .on_conflict_do_nothing(index_elements=["sensor_id"])
            )

        inserted = 0
        for reading in readings:
            result = await conn.execute(
                self._insert(TemperatureReadingRow)
                .values(
                    sensor_id=reading.sensor_id,
                    timestamp=reading.timestamp,
                    temperature=reading.temperature,
                    humidity=reading.humidity,
                    location=reading.location,
                )
                .on_conflict_do_nothing(index_elements=["sensor_id", "timestamp"])
            )
            inserted += max(result.rowcount, 0)

        logger.debug("sensor_readings_saved", total=len(readings), inserted=inserted)
        return inserted

    async def _save_pool_reading(self, conn: AsyncConnection, reading: PoolReading) -> int:
        result = await conn.execute(
            self._insert(PoolReadingRow)
            .values(
                timestamp=reading.timestamp,
                email_id=reading.email_id,
                temperature=reading.temperature,
                ph=reading.ph,
                orp=reading.orp,
            )
            .on_conflict_do_nothing(index_elements=["timestamp", "email_id"])
        )
        return max(result.rowcount, 0)

    # ------------------------------------------------------------------
    # Transaction / timeout wrapper
    # ------------------------------------------------------------------

    async def _bounded(
        self,
        operation: str,
        func: Callable[..., Awaitable[T]],
        *args: Any,
    ) -> T:
        async def _in_transaction() -> T:
            async with self._engine.begin() as conn:
                return await func(conn, *args)

        try:
            return await asyncio.wait_for(_in_transaction(), timeout=self._config.timeout_seconds)
        except TimeoutError:
            raise ConnectionLostError(
                f"{operation} timed out after {self._config.timeout_seconds}s"
            ) from None
        except IntegrityError as exc:
            raise ConstraintViolationError(f"{operation}: {exc.orig}") from exc
        except (DBAPIError, OSError) as exc:
            logger.warning("store_call_failed", operation=operation, error=str(exc))
            raise ConnectionLostError(f"{operation}: {exc}") from exc
