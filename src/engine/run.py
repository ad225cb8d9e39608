"""
Command-line entry point for the monitoring engine.

    python -m src.engine.run
    python -m src.engine.run --no-kafka --duration 300
"""

import argparse
import asyncio
import logging
import os
import sys

import structlog

from src.core.logger import setup_logging
from src.core.models import DatabaseConfig, KafkaConfig, NotificationConfig, RedisConfig

from .models import EngineConfig
from .service import MonitoringEngine

logger = structlog.get_logger(__name__)


def parse_arguments(argv: list[str] | None = None):
    """Parse command-line arguments"""
    parser = argparse.ArgumentParser(
        description="Security monitoring engine: metrics, anomalies, alerts, health checks and breaches",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
        Examples:
        # Basic usage
        python -m src.engine.run

        # Without Kafka intake or Redis baseline cache
        python -m src.engine.run --no-kafka --no-redis

        # Test run for 5 minutes
        python -m src.engine.run --duration 300
        """,
    )

    # PostgreSQL settings
    parser.add_argument("--postgres-host", default=os.getenv("POSTGRES_HOST", "localhost"))
    parser.add_argument("--postgres-port", type=int, default=int(os.getenv("POSTGRES_PORT", "5432")))
    parser.add_argument("--postgres-db", default=os.getenv("POSTGRES_DB", "secops_db"))
    parser.add_argument("--postgres-user", default=os.getenv("POSTGRES_USER", "secops"))
    parser.add_argument("--postgres-password", default=os.getenv("POSTGRES_PASSWORD", "secops_password"))

    # Redis settings
    parser.add_argument("--redis-host", default=os.getenv("REDIS_HOST", "localhost"))
    parser.add_argument("--redis-port", type=int, default=int(os.getenv("REDIS_PORT", "6379")))
    parser.add_argument("--no-redis", action="store_true", help="Disable the baseline cache")

    # Kafka settings
    parser.add_argument(
        "--kafka-servers",
        default=os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092"),
        help="Kafka bootstrap servers (default: localhost:9092)",
    )
    parser.add_argument("--topic", default=os.getenv("KAFKA_TOPIC", "security-events"))
    parser.add_argument(
        "--offset-reset",
        choices=["earliest", "latest"],
        default="latest",
        help="Auto offset reset (default: latest - only new messages)",
    )
    parser.add_argument("--no-kafka", action="store_true", help="Disable the Kafka intake consumer")

    # Notification settings
    parser.add_argument("--smtp-host", default=os.getenv("SMTP_HOST"))
    parser.add_argument("--smtp-port", type=int, default=int(os.getenv("SMTP_PORT", "587")))
    parser.add_argument("--smtp-from", default=os.getenv("SMTP_FROM", "secops@localhost"))

    # Runtime settings
    parser.add_argument("--duration", type=int, help="Run for N seconds then stop (default: infinite)")
    parser.add_argument(
        "--skip-schema", action="store_true", help="Do not create missing tables on startup"
    )

    # Logging
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--json-logs", action="store_true", help="Render logs as JSON lines")

    return parser.parse_args(argv)


def build_config(args) -> EngineConfig:
    """Build configuration from arguments"""
    return EngineConfig(
        database=DatabaseConfig(
            postgres_host=args.postgres_host,
            postgres_port=args.postgres_port,
            postgres_database=args.postgres_db,
            postgres_user=args.postgres_user,
            postgres_password=args.postgres_password,
        ),
        redis=RedisConfig(redis_host=args.redis_host, redis_port=args.redis_port),
        kafka=KafkaConfig(
            kafka_bootstrap_servers=args.kafka_servers,
            kafka_topic=args.topic,
            kafka_auto_offset_reset=args.offset_reset,
        ),
        notifications=NotificationConfig(
            smtp_host=args.smtp_host,
            smtp_port=args.smtp_port,
            smtp_from=args.smtp_from,
        ),
        enable_kafka=not args.no_kafka,
        enable_redis=not args.no_redis,
    )


async def run_engine(config: EngineConfig, duration: int | None = None, ensure_schema: bool = True) -> None:
    engine = MonitoringEngine(config)
    try:
        if ensure_schema and not await engine.ensure_tables():
            raise RuntimeError("Failed to create database schema")
        await engine.start()
        if duration is not None:
            await asyncio.sleep(duration)
        else:
            await asyncio.Event().wait()
    finally:
        try:
            await engine.stop()
        except Exception as e:
            logger.error("Engine shutdown failed", error=str(e), exc_info=True)


def main(argv: list[str] | None = None) -> int:
    """Main entry point"""
    args = parse_arguments(argv)

    setup_logging(level=getattr(logging, args.log_level), json_output=args.json_logs)
    logger.info("Starting monitoring engine")

    try:
        config = build_config(args)
        asyncio.run(run_engine(config, args.duration, ensure_schema=not args.skip_schema))
        logger.info("Engine stopped cleanly")
        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0

    except Exception as e:
        logger.error("Engine failed", error=str(e), exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
