"""Tests for speed test measurement, persistence, scheduling and queries."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from structlog.testing import capture_logs

from app.config import Settings
from core.exceptions import SpeedtestError
from core.metrics import MonitorMetrics, generate_metrics
from db.models.speedtest_result import SpeedtestResult
from services.speedtest_service import (
    ResultsService,
    SpeedMeasurement,
    SpeedtestRunner,
    SpeedtestScheduler,
)

CLI_OUTPUT = {
    "type": "result",
    "ping": {"jitter": 0.5, "latency": 12.345},
    "download": {"bandwidth": 12500000, "bytes": 100000000, "elapsed": 8000},
    "upload": {"bandwidth": 2500000, "bytes": 20000000, "elapsed": 8000},
    "packetLoss": 0.5,
    "server": {
        "id": 1234,
        "host": "speedtest.example.net",
        "name": "Example ISP",
        "location": "Madrid",
        "country": "Spain",
        "ip": "192.0.2.10",
    },
    "result": {"url": "https://www.speedtest.net/result/c/abc"},
}

MEASUREMENT = SpeedMeasurement.from_cli_json(CLI_OUTPUT)


def settings(**overrides) -> Settings:
    values = {"SPEEDTEST_RETRIES": 3, "SPEEDTEST_RETRY_DELAY_SECONDS": 5.0}
    values.update(overrides)
    return Settings(**values)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class FlakyMeasure:
    """Fails ``failures`` times, then returns MEASUREMENT."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    async def __call__(self) -> SpeedMeasurement:
        self.calls += 1
        if self.calls <= self.failures:
            raise SpeedtestError(f"network unreachable (call {self.calls})")
        return MEASUREMENT


@pytest.mark.unit
class TestMeasurementParsing:

    def test_parses_cli_json(self):
        assert MEASUREMENT.download_bps == 12500000
        assert MEASUREMENT.upload_bps == 2500000
        assert MEASUREMENT.latency_ms == pytest.approx(12.345)
        assert MEASUREMENT.packet_loss == 0.5
        assert MEASUREMENT.server_id == "1234"
        assert MEASUREMENT.server_name == "Example ISP"
        assert MEASUREMENT.result_url == "https://www.speedtest.net/result/c/abc"

    def test_mbps_conversion(self):
        assert MEASUREMENT.download_mbps == 100.0
        assert MEASUREMENT.upload_mbps == 20.0

    def test_optional_fields(self):
        minimal = SpeedMeasurement.from_cli_json({
            "ping": {"latency": 1},
            "download": {"bandwidth": 1},
            "upload": {"bandwidth": 1},
        })
        assert minimal.packet_loss == 0.0
        assert minimal.server_name is None
        assert minimal.result_url is None

    def test_missing_bandwidth(self):
        with pytest.raises(SpeedtestError):
            SpeedMeasurement.from_cli_json({"ping": {"latency": 1}, "upload": {"bandwidth": 1}})

    def test_command_line(self):
        runner = SpeedtestRunner(settings(SPEEDTEST_SERVER_ID="4321"))
        assert runner.build_command() == [
            "speedtest", "--format=json", "--accept-license", "--accept-gdpr", "--server-id=4321",
        ]
        assert "--server-id" not in " ".join(SpeedtestRunner(settings()).build_command())


@pytest.mark.unit
class TestSubprocess:
    """measure() against stand-in commands."""

    async def test_reads_last_json_line(self, tmp_path):
        script = tmp_path / "fake-speedtest"
        script.write_text(
            "#!/bin/sh\n"
            "echo 'warming up'\n"
            f"echo '{json.dumps(CLI_OUTPUT)}'\n"
        )
        script.chmod(0o755)
        runner = SpeedtestRunner(settings(SPEEDTEST_COMMAND=str(script)))
        measurement = await runner.measure()
        assert measurement == MEASUREMENT

    async def test_nonzero_exit(self, tmp_path):
        script = tmp_path / "failing-speedtest"
        script.write_text("#!/bin/sh\necho 'no servers' >&2\nexit 2\n")
        script.chmod(0o755)
        runner = SpeedtestRunner(settings(SPEEDTEST_COMMAND=str(script)))
        with pytest.raises(SpeedtestError) as exc_info:
            await runner.measure()
        assert "no servers" in exc_info.value.message

    async def test_missing_binary(self, tmp_path):
        runner = SpeedtestRunner(settings(SPEEDTEST_COMMAND=str(tmp_path / "nope")))
        with pytest.raises(SpeedtestError):
            await runner.measure()


@pytest.mark.unit
class TestRetries:

    async def test_succeeds_after_failures_with_linear_backoff(self):
        sleep = RecordingSleep()
        measure = FlakyMeasure(failures=2)
        runner = SpeedtestRunner(settings(), measure_fn=measure, sleep=sleep)

        assert await runner.run_with_retries() == MEASUREMENT
        assert measure.calls == 3
        assert sleep.delays == [5.0, 10.0]

    async def test_gives_up_after_retries(self):
        sleep = RecordingSleep()
        measure = FlakyMeasure(failures=10)
        runner = SpeedtestRunner(settings(), measure_fn=measure, sleep=sleep)

        with pytest.raises(SpeedtestError) as exc_info:
            await runner.run_with_retries()
        assert measure.calls == 3
        assert sleep.delays == [5.0, 10.0]
        assert "call 3" in exc_info.value.message


@pytest.mark.integration
class TestSpeedTestCycle:

    async def test_successful_cycle_is_saved_and_counted(self, session_factory, db_session):
        metrics = MonitorMetrics()
        runner = SpeedtestRunner(
            settings(), metrics=metrics, session_factory=session_factory,
            measure_fn=FlakyMeasure(failures=0), sleep=RecordingSleep(),
        )
        result_id = await runner.perform_speed_test()

        row = await db_session.get(SpeedtestResult, result_id)
        assert row.download_speed == 12500000
        assert row.server_country == "Spain"
        assert row.packet_loss == 0.5
        assert runner.run_count == 1 and runner.error_count == 0

        snapshot = metrics.snapshot()
        assert snapshot.counter("speedtest_runs_total") == 1
        assert snapshot.gauge("speedtest_last_download_mbps") == 100.0
        assert snapshot.gauge("speedtest_last_latency_ms") == pytest.approx(12.345, abs=0.01)

    async def test_failed_cycle_is_counted_not_raised(self, session_factory, db_session):
        metrics = MonitorMetrics()
        runner = SpeedtestRunner(
            settings(), metrics=metrics, session_factory=session_factory,
            measure_fn=FlakyMeasure(failures=99), sleep=RecordingSleep(),
        )
        assert await runner.perform_speed_test() is None
        assert runner.error_count == 1
        assert metrics.snapshot().counter("speedtest_errors_total") == 1

        count = await db_session.scalar(select(func.count(SpeedtestResult.id)))
        assert count == 0

    async def test_critical_after_repeated_failures(self, session_factory):
        runner = SpeedtestRunner(
            settings(SPEEDTEST_RETRIES=1), session_factory=session_factory,
            measure_fn=FlakyMeasure(failures=99), sleep=RecordingSleep(),
        )
        with capture_logs() as logs:
            for _ in range(5):
                await runner.perform_speed_test()
        assert not [e for e in logs if e["log_level"] == "critical"]

        with capture_logs() as logs:
            await runner.perform_speed_test()
        assert runner.consecutive_failures == 6
        assert [e["event"] for e in logs if e["log_level"] == "critical"] == [
            "Too many consecutive speed test failures"
        ]

    async def test_success_resets_consecutive_failures(self, session_factory):
        measure = FlakyMeasure(failures=1)
        runner = SpeedtestRunner(
            settings(SPEEDTEST_RETRIES=1), session_factory=session_factory,
            measure_fn=measure, sleep=RecordingSleep(),
        )
        await runner.perform_speed_test()
        assert runner.consecutive_failures == 1
        await runner.perform_speed_test()
        assert runner.consecutive_failures == 0
        assert runner.error_count == 1


@pytest.mark.integration
class TestScheduler:

    async def test_runs_after_initial_delay_and_stops(self, session_factory):
        measure = FlakyMeasure(failures=0)
        runner = SpeedtestRunner(settings(), session_factory=session_factory, measure_fn=measure)
        scheduler = SpeedtestScheduler(runner, interval_seconds=3600, initial_delay_seconds=0)

        scheduler.start()
        assert scheduler.running
        for _ in range(50):
            if runner.run_count:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert runner.run_count == 1
        assert not scheduler.running

    async def test_trigger_runs_immediately(self, session_factory):
        runner = SpeedtestRunner(
            settings(), session_factory=session_factory, measure_fn=FlakyMeasure(failures=0),
        )
        scheduler = SpeedtestScheduler(runner, interval_seconds=3600)

        trigger_id = scheduler.trigger()
        assert isinstance(trigger_id, int)
        for _ in range(50):
            if runner.run_count:
                break
            await asyncio.sleep(0.01)
        assert runner.run_count == 1
        await scheduler.stop()


@pytest.mark.integration
class TestResultsService:

    async def _add(self, db_session, when, download, upload=1250000, latency=10.0):
        db_session.add(SpeedtestResult(
            download_speed=download, upload_speed=upload, latency=latency,
            server_name="S", server_location="L", timestamp=when,
        ))
        await db_session.commit()

    async def test_latest_and_stats(self, db_session):
        now = datetime.now(timezone.utc)
        await self._add(db_session, now - timedelta(hours=30), download=99 * 125000)
        await self._add(db_session, now - timedelta(hours=2), download=50 * 125000, latency=20.0)
        await self._add(db_session, now - timedelta(hours=1), download=100 * 125000, latency=10.0)

        service = ResultsService(db_session, clock=lambda: now)
        latest = await service.latest()
        assert latest["download_mbps"] == 100.0

        stats = await service.stats(hours=24)
        assert stats["total_tests"] == 2
        assert stats["avg_download_mbps"] == 75.0
        assert stats["min_download_mbps"] == 50.0
        assert stats["max_download_mbps"] == 100.0
        assert stats["avg_upload_mbps"] == 10.0
        assert stats["avg_latency_ms"] == 15.0

    async def test_empty_stats(self, db_session):
        service = ResultsService(db_session)
        assert await service.latest() is None
        stats = await service.stats()
        assert stats["total_tests"] == 0
        assert stats["avg_download_mbps"] is None

    async def test_history_newest_first_with_limit(self, db_session):
        now = datetime.now(timezone.utc)
        for hours_ago in (5, 1, 3):
            await self._add(db_session, now - timedelta(hours=hours_ago), download=hours_ago * 125000)

        rows = await ResultsService(db_session, clock=lambda: now).history(hours=24, limit=2)
        assert [r["download_mbps"] for r in rows] == [1.0, 3.0]


def test_metrics_exposition():
    metrics = MonitorMetrics()
    metrics.record_speedtest_success(12500000, 2500000, 12.345)
    metrics.record_auth("token", True)
    text = generate_metrics(metrics.snapshot())

    assert "# TYPE speedtest_runs_total counter" in text
    assert "speedtest_runs_total 1.0" in text
    assert "speedtest_last_download_mbps 100.0" in text
    assert 'auth_checks_total{method="token",result="success"} 1.0' in text
    assert "rate_limit_rejections_total 0" in text
    assert "process_uptime_seconds" in text
