"""Speed test service: measurement, persistence, scheduling and queries.

Measurements come from the Ookla ``speedtest`` CLI run as a subprocess with
JSON output. Bandwidth is kept in bytes per second exactly as the tool
reports it; conversion to Mbps happens at query time.
"""

import asyncio
import json
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from core.exceptions import SpeedtestError, StoreUnavailableError
from core.metrics import MBPS_DIVISOR, MonitorMetrics
from db import database
from db.base import utc_now
from db.models.speedtest_result import SpeedtestResult

logger = structlog.get_logger(__name__)

CRITICAL_FAILURE_THRESHOLD = 5


@dataclass(frozen=True)
class SpeedMeasurement:
    """One run of the measurement tool."""
    download_bps: int
    upload_bps: int
    latency_ms: float
    packet_loss: float = 0.0
    server_id: Optional[str] = None
    server_name: Optional[str] = None
    server_location: Optional[str] = None
    server_country: Optional[str] = None
    server_host: Optional[str] = None
    server_ip: Optional[str] = None
    result_url: Optional[str] = None

    @property
    def download_mbps(self) -> float:
        return round(self.download_bps / MBPS_DIVISOR, 2)

    @property
    def upload_mbps(self) -> float:
        return round(self.upload_bps / MBPS_DIVISOR, 2)

    @classmethod
    def from_cli_json(cls, payload: dict) -> "SpeedMeasurement":
        """Build a measurement from ``speedtest --format=json`` output.

        Raises:
            SpeedtestError: If required fields are missing
        """
        try:
            download = int(payload["download"]["bandwidth"])
            upload = int(payload["upload"]["bandwidth"])
            latency = float(payload["ping"]["latency"])
        except (KeyError, TypeError, ValueError) as e:
            raise SpeedtestError(f"Unexpected speedtest output: missing {e}") from e

        server = payload.get("server") or {}
        result = payload.get("result") or {}

        def _opt(value: Any) -> Optional[str]:
            return None if value is None else str(value)

        return cls(
            download_bps=download,
            upload_bps=upload,
            latency_ms=latency,
            packet_loss=float(payload.get("packetLoss") or 0),
            server_id=_opt(server.get("id")),
            server_name=server.get("name"),
            server_location=server.get("location"),
            server_country=server.get("country"),
            server_host=server.get("host"),
            server_ip=server.get("ip"),
            result_url=result.get("url"),
        )


class SpeedtestRunner:
    """Runs measurement cycles: measure with retries, then persist."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        metrics: Optional[MonitorMetrics] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        measure_fn: Optional[Callable[[], Awaitable[SpeedMeasurement]]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.metrics = metrics
        self._session_factory = session_factory
        self._measure_fn = measure_fn
        self._sleep = sleep
        self._cycle_lock = asyncio.Lock()

        self.run_count = 0
        self.error_count = 0
        self.consecutive_failures = 0
        self.last_measurement: Optional[SpeedMeasurement] = None

    def _new_session(self) -> AsyncSession:
        factory = self._session_factory or database.AsyncSessionLocal
        return factory()

    def build_command(self) -> list[str]:
        command = [
            self.settings.SPEEDTEST_COMMAND,
            "--format=json",
            "--accept-license",
            "--accept-gdpr",
        ]
        if self.settings.SPEEDTEST_SERVER_ID:
            command.append(f"--server-id={self.settings.SPEEDTEST_SERVER_ID}")
        return command

    async def measure(self) -> SpeedMeasurement:
        """Run the measurement tool once.

        Raises:
            SpeedtestError: On timeout, non-zero exit, or unparseable output
        """
        if self._measure_fn is not None:
            return await self._measure_fn()

        command = self.build_command()
        timeout = self.settings.SPEEDTEST_TIMEOUT_SECONDS
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SpeedtestError(f"Could not start {command[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise SpeedtestError(f"Speed test timed out after {timeout}s")

        stdout_text = stdout.decode("utf-8", errors="replace").strip()
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            raise SpeedtestError(
                f"{command[0]} exited with {process.returncode}: {stderr_text or stdout_text}"
            )

        # The CLI may print log lines before the result; the result is the last line
        lines = [line for line in stdout_text.splitlines() if line.strip()]
        try:
            payload = json.loads(lines[-1])
        except (json.JSONDecodeError, IndexError) as e:
            raise SpeedtestError("Speed test produced no JSON result") from e
        return SpeedMeasurement.from_cli_json(payload)

    async def run_with_retries(self) -> SpeedMeasurement:
        """Measure, retrying with a linear backoff.

        Raises:
            SpeedtestError: If every attempt failed (the last error)
        """
        retries = max(1, self.settings.SPEEDTEST_RETRIES)
        for attempt in range(1, retries + 1):
            logger.info("Running speed test", attempt=attempt, retries=retries)
            started = time.monotonic()
            try:
                measurement = await self.measure()
            except SpeedtestError as e:
                logger.error("Speed test attempt failed", attempt=attempt, error=e.message)
                if attempt == retries:
                    raise
                await self._sleep(self.settings.SPEEDTEST_RETRY_DELAY_SECONDS * attempt)
                continue

            logger.info(
                "Speed test completed",
                duration_ms=round((time.monotonic() - started) * 1000),
                download_mbps=measurement.download_mbps,
                upload_mbps=measurement.upload_mbps,
                latency_ms=round(measurement.latency_ms, 2),
                server=measurement.server_name,
            )
            return measurement

        raise SpeedtestError("Speed test was not attempted")

    async def save_result(self, measurement: SpeedMeasurement) -> str:
        """Insert one result row; returns its id.

        Raises:
            StoreUnavailableError: If the database write fails
        """
        row = SpeedtestResult(
            download_speed=measurement.download_bps,
            upload_speed=measurement.upload_bps,
            latency=measurement.latency_ms,
            server_id=measurement.server_id,
            server_name=measurement.server_name,
            server_location=measurement.server_location,
            server_country=measurement.server_country,
            server_host=measurement.server_host,
            server_ip=measurement.server_ip,
            result_url=measurement.result_url,
            packet_loss=measurement.packet_loss,
            timestamp=utc_now(),
        )
        try:
            async with self._new_session() as session:
                async with session.begin():
                    session.add(row)
        except SQLAlchemyError as e:
            raise StoreUnavailableError("Failed to save speed test result") from e

        logger.info("Speed test result saved", result_id=row.id)
        return row.id

    async def perform_speed_test(self) -> Optional[str]:
        """Run one full cycle. Never raises; failures are counted and logged.

        Returns:
            The saved result id, or None if the cycle failed
        """
        async with self._cycle_lock:
            try:
                measurement = await self.run_with_retries()
                result_id = await self.save_result(measurement)
            except (SpeedtestError, StoreUnavailableError) as e:
                self._record_failure(e)
                return None

            self.run_count += 1
            self.consecutive_failures = 0
            self.last_measurement = measurement
            if self.metrics is not None:
                self.metrics.record_speedtest_success(
                    measurement.download_bps,
                    measurement.upload_bps,
                    measurement.latency_ms,
                )
            return result_id

    def _record_failure(self, error: Exception) -> None:
        self.error_count += 1
        self.consecutive_failures += 1
        if self.metrics is not None:
            self.metrics.record_speedtest_failure()
        logger.error("Failed to complete speed test cycle", error=str(error))
        if self.consecutive_failures > CRITICAL_FAILURE_THRESHOLD:
            logger.critical(
                "Too many consecutive speed test failures",
                consecutive_failures=self.consecutive_failures,
            )


class SpeedtestScheduler:
    """Runs the measurement cycle periodically in the event loop."""

    def __init__(
        self,
        runner: SpeedtestRunner,
        interval_seconds: float,
        initial_delay_seconds: float = 5.0,
    ):
        self.runner = runner
        self.interval_seconds = interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self._task: Optional[asyncio.Task] = None
        self._triggered: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "Speed test scheduler started",
            interval_minutes=round(self.interval_seconds / 60, 1),
        )

    async def stop(self) -> None:
        tasks = list(self._triggered)
        if self._task is not None:
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._triggered.clear()
        logger.info("Speed test scheduler stopped")

    def trigger(self) -> int:
        """Start an immediate cycle in the background; returns a trigger id."""
        trigger_id = int(time.time() * 1000)
        task = asyncio.create_task(self.runner.perform_speed_test())
        self._triggered.add(task)
        task.add_done_callback(self._triggered.discard)
        logger.info("Speed test triggered", trigger_id=trigger_id)
        return trigger_id

    async def _loop(self) -> None:
        await asyncio.sleep(self.initial_delay_seconds)
        while True:
            await self.runner.perform_speed_test()
            await asyncio.sleep(self.interval_seconds)


def _mbps(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(float(value) / MBPS_DIVISOR, 2)


def _round(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(float(value), 2)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class ResultsService:
    """Read-side queries over stored results."""

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    @staticmethod
    def serialize(result: SpeedtestResult) -> dict:
        return {
            "id": result.id,
            "download_speed": result.download_speed,
            "upload_speed": result.upload_speed,
            "download_mbps": _mbps(result.download_speed),
            "upload_mbps": _mbps(result.upload_speed),
            "latency": result.latency,
            "packet_loss": result.packet_loss,
            "server_id": result.server_id,
            "server_name": result.server_name,
            "server_location": result.server_location,
            "server_country": result.server_country,
            "server_host": result.server_host,
            "server_ip": result.server_ip,
            "result_url": result.result_url,
            "timestamp": _iso(result.timestamp),
        }

    async def latest(self) -> Optional[dict]:
        result = await self.db.execute(
            select(SpeedtestResult).order_by(SpeedtestResult.timestamp.desc()).limit(1)
        )
        row = result.scalar_one_or_none()
        return self.serialize(row) if row else None

    async def stats(self, hours: int = 24) -> dict:
        """Aggregates over the last ``hours``; speeds in Mbps."""
        since = self.clock() - timedelta(hours=hours)
        result = await self.db.execute(
            select(
                func.count(SpeedtestResult.id),
                func.avg(SpeedtestResult.download_speed),
                func.avg(SpeedtestResult.upload_speed),
                func.avg(SpeedtestResult.latency),
                func.min(SpeedtestResult.download_speed),
                func.max(SpeedtestResult.download_speed),
            ).where(SpeedtestResult.timestamp > since)
        )
        total, avg_down, avg_up, avg_latency, min_down, max_down = result.one()
        return {
            "total_tests": total or 0,
            "avg_download_mbps": _mbps(avg_down),
            "avg_upload_mbps": _mbps(avg_up),
            "avg_latency_ms": _round(avg_latency),
            "min_download_mbps": _mbps(min_down),
            "max_download_mbps": _mbps(max_down),
        }

    async def history(self, hours: int = 24, limit: int = 1000) -> list[dict]:
        """Results from the last ``hours``, newest first."""
        since = self.clock() - timedelta(hours=hours)
        result = await self.db.execute(
            select(SpeedtestResult)
            .where(SpeedtestResult.timestamp > since)
            .order_by(SpeedtestResult.timestamp.desc())
            .limit(limit)
        )
        return [
            {
                "id": row.id,
                "download_mbps": _mbps(row.download_speed),
                "upload_mbps": _mbps(row.upload_speed),
                "latency": row.latency,
                "server_name": row.server_name,
                "server_location": row.server_location,
                "timestamp": _iso(row.timestamp),
            }
            for row in result.scalars().all()
        ]
