"""
Tests for the engine command line and configuration building.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.engine.run import build_config, main, parse_arguments, run_engine


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("POSTGRES_HOST", "POSTGRES_PORT", "KAFKA_BOOTSTRAP_SERVERS", "KAFKA_TOPIC", "SMTP_HOST", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


class TestArguments:
    def test_defaults(self):
        config = build_config(parse_arguments([]))

        assert config.database.postgres_host == "localhost"
        assert config.kafka.kafka_topic == "security-events"
        assert config.kafka.kafka_auto_offset_reset == "latest"
        assert config.notifications.smtp_host is None
        assert config.enable_kafka and config.enable_redis

    def test_overrides(self):
        args = parse_arguments(
            [
                "--postgres-host", "db.internal",
                "--postgres-port", "6543",
                "--kafka-servers", "k1:9092,k2:9092",
                "--offset-reset", "earliest",
                "--smtp-host", "mail.internal",
                "--no-kafka",
                "--no-redis",
                "--duration", "30",
            ]
        )
        config = build_config(args)

        assert args.duration == 30
        assert config.database.postgres_port == 6543
        assert config.kafka.kafka_bootstrap_servers == "k1:9092,k2:9092"
        assert config.kafka.kafka_auto_offset_reset == "earliest"
        assert config.notifications.smtp_host == "mail.internal"
        assert not config.enable_kafka
        assert not config.enable_redis

    def test_environment_defaults(self, monkeypatch):
        monkeypatch.setenv("POSTGRES_HOST", "from-env")
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")

        args = parse_arguments([])

        assert args.postgres_host == "from-env"
        assert args.log_level == "DEBUG"

    def test_invalid_choice(self):
        with pytest.raises(SystemExit):
            parse_arguments(["--offset-reset", "middle"])


class TestMain:
    """Tests for the process entry point with the engine replaced."""

    def test_clean_run(self):
        with patch("src.engine.run.run_engine", new=AsyncMock()) as mock_run:
            assert main(["--duration", "1", "--skip-schema"]) == 0

        config, duration = mock_run.call_args.args
        assert duration == 1
        assert mock_run.call_args.kwargs == {"ensure_schema": False}
        assert config.enable_kafka

    def test_failure_returns_one(self):
        with patch("src.engine.run.run_engine", new=AsyncMock(side_effect=RuntimeError("db down"))):
            assert main([]) == 1

    @pytest.mark.asyncio
    async def test_schema_failure_still_stops_engine(self):
        engine = MagicMock()
        engine.ensure_tables = AsyncMock(return_value=False)
        engine.start = AsyncMock()
        engine.stop = AsyncMock()

        with patch("src.engine.run.MonitoringEngine", return_value=engine):
            with pytest.raises(RuntimeError, match="schema"):
                await run_engine(MagicMock(), duration=0)

        engine.start.assert_not_called()
        engine.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_timed_run(self):
        engine = MagicMock()
        engine.ensure_tables = AsyncMock(return_value=True)
        engine.start = AsyncMock()
        engine.stop = AsyncMock()

        with patch("src.engine.run.MonitoringEngine", return_value=engine):
            await run_engine(MagicMock(), duration=0)

        engine.start.assert_awaited_once()
        engine.stop.assert_awaited_once()
