"""
Kafka intake: turns JSON messages into typed events on the bus.
"""

import asyncio
import json
import time
from typing import Any

import structlog
from kafka import KafkaConsumer

from src.core.clock import ensure_utc
from src.core.events import (
    AccessViolation,
    AnomalyDetected,
    Event,
    EventBus,
    ScannerFinding,
    SecurityEventOccurred,
    TokenCreated,
    TokenDenied,
    TokenUsed,
)
from src.core.models import KafkaConfig

logger = structlog.get_logger(__name__)

MESSAGE_TYPES: dict[str, type[Event]] = {
    "token_created": TokenCreated,
    "token_denied": TokenDenied,
    "token_used": TokenUsed,
    "access_violation": AccessViolation,
    "security_event": SecurityEventOccurred,
    "scanner_finding": ScannerFinding,
    "anomaly_detected": AnomalyDetected,
}

STATS_LOG_INTERVAL_SECONDS = 60


def _deserialize(raw: bytes) -> dict | None:
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None


def parse_message(message: dict[str, Any]) -> Event | None:
    """Build the typed event for a message; None for unknown types.

    Raises:
        TypeError: If the payload does not fit the event's fields
    """
    event_class = MESSAGE_TYPES.get(message.get("type"))
    if event_class is None:
        return None
    payload = {key: value for key, value in message.items() if key != "type"}
    if event_class is AnomalyDetected and payload.get("timestamp"):
        payload["timestamp"] = ensure_utc(payload["timestamp"])
    return event_class(**payload)


class IntakeConsumer:
    """Polls Kafka and publishes every recognised message"""

    def __init__(self, config: KafkaConfig, bus: EventBus):
        self.config = config
        self.bus = bus

        try:
            self.consumer = KafkaConsumer(
                config.kafka_topic,
                bootstrap_servers=config.kafka_bootstrap_servers,
                group_id=config.kafka_group_id,
                auto_offset_reset=config.kafka_auto_offset_reset,
                enable_auto_commit=False,
                max_poll_records=config.max_poll_records,
                value_deserializer=_deserialize,
            )
            logger.info(
                "Kafka intake initialized",
                bootstrap_servers=config.kafka_bootstrap_servers,
                topic=config.kafka_topic,
                group_id=config.kafka_group_id,
            )
        except Exception as e:
            logger.error("Failed to initialize Kafka consumer", error=str(e))
            raise

        self.stats = {
            "total_consumed": 0,
            "published": 0,
            "unknown_type": 0,
            "parse_errors": 0,
        }

    async def handle_message(self, message: dict[str, Any] | None) -> bool:
        self.stats["total_consumed"] += 1
        if not isinstance(message, dict):
            logger.warning("Undecodable message skipped")
            self.stats["parse_errors"] += 1
            return False

        try:
            event = parse_message(message)
        except (TypeError, ValueError) as e:
            logger.error("Failed to parse message", error=str(e), message=message)
            self.stats["parse_errors"] += 1
            return False

        if event is None:
            logger.warning("Unknown message type", type=message.get("type"))
            self.stats["unknown_type"] += 1
            return False

        await self.bus.publish(event)
        self.stats["published"] += 1
        return True

    async def poll_once(self) -> int:
        batches = await asyncio.to_thread(
            self.consumer.poll, timeout_ms=self.config.poll_timeout_ms
        )
        handled = 0
        for records in batches.values():
            for record in records:
                await self.handle_message(record.value)
                handled += 1
        if handled:
            await asyncio.to_thread(self.consumer.commit)
        return handled

    async def run(self, stop: asyncio.Event) -> None:
        """Consume until ``stop`` is set"""
        logger.info("Starting Kafka intake", topic=self.config.kafka_topic)
        last_log_time = time.monotonic()
        try:
            while not stop.is_set():
                try:
                    await self.poll_once()
                except Exception as e:
                    logger.error("Kafka poll failed", error=str(e), exc_info=True)
                    await asyncio.sleep(1)

                if time.monotonic() - last_log_time >= STATS_LOG_INTERVAL_SECONDS:
                    logger.info("Intake stats", **self.stats)
                    last_log_time = time.monotonic()
        finally:
            self.consumer.close()
            logger.info("Kafka intake stopped", **self.stats)
