"""
MonitoringEngine: builds every component once and owns their lifecycle.
"""

import asyncio

import structlog

from src.alerts.database import AlertDatabase
from src.alerts.engine import AlertEngine
from src.anomaly.cache import BaselineCache
from src.anomaly.database import AnomalyDatabase
from src.anomaly.detector import AnomalyDetector
from src.breach.cases import CaseStore
from src.breach.database import BreachDatabase
from src.breach.engine import BreachRuleEngine
from src.breach.listeners import BreachListeners
from src.core.clock import Clock, utcnow
from src.core.events import EventBus
from src.core.notifications import DispatchingNotificationSink, NotificationSink
from src.healthchecks.database import HealthCheckDatabase
from src.healthchecks.scheduler import HealthCheckScheduler
from src.intake.consumer import IntakeConsumer
from src.intake.database import EventDatabase
from src.intake.recorder import EventRecorder
from src.metrics.database import MetricDatabase
from src.metrics.store import MetricStore

from .models import EngineConfig

logger = structlog.get_logger(__name__)


class MonitoringEngine:
    """Wires databases, event bus, notification sink and services together.

    Listeners are subscribed in a fixed order: the event recorder first, so
    security events and access violations are searchable by the time the
    metric and case listeners run.
    """

    def __init__(
        self,
        config: EngineConfig,
        bus: EventBus | None = None,
        sink: NotificationSink | None = None,
        clock: Clock = utcnow,
    ):
        self.config = config
        self.bus = bus or EventBus()
        self.clock = clock
        self.sink = sink or DispatchingNotificationSink(config.notifications, self.bus)

        self.metric_db = MetricDatabase(config.database)
        self.event_db = EventDatabase(config.database)
        self.anomaly_db = AnomalyDatabase(config.database)
        self.alert_db = AlertDatabase(config.database)
        self.health_db = HealthCheckDatabase(config.database)
        self.breach_db = BreachDatabase(config.database)
        self.cache = BaselineCache(config.redis) if config.enable_redis else None

        self.recorder = EventRecorder(self.event_db, clock=clock)
        self.metrics = MetricStore(self.metric_db, bus=self.bus, clock=clock)
        self.anomalies = AnomalyDetector(
            self.anomaly_db,
            self.metrics,
            bus=self.bus,
            cache=self.cache,
            event_db=self.event_db,
            clock=clock,
            run_interval_seconds=config.anomaly_interval_seconds,
        )
        self.alerts = AlertEngine(
            self.alert_db,
            self.metrics,
            self.sink,
            bus=self.bus,
            clock=clock,
            sweep_interval_seconds=config.alert_sweep_interval_seconds,
        )
        self.health_checks = HealthCheckScheduler(
            self.health_db, metrics=self.metrics, bus=self.bus, clock=clock
        )
        self.cases = CaseStore(self.breach_db, metrics=self.metrics, bus=self.bus, clock=clock)
        self.breach_rules = BreachRuleEngine(
            self.breach_db,
            self.cases,
            self.metrics,
            self.anomaly_db,
            self.event_db,
            clock=clock,
            first_run_delay=config.breach_first_run_delay_seconds,
        )
        self.breach_listeners = BreachListeners(self.cases)
        self.intake = IntakeConsumer(config.kafka, self.bus) if config.enable_kafka else None

        self._stop = asyncio.Event()
        self._intake_task: asyncio.Task | None = None

    @property
    def databases(self) -> list:
        return [
            self.metric_db,
            self.event_db,
            self.anomaly_db,
            self.alert_db,
            self.health_db,
            self.breach_db,
        ]

    async def ensure_tables(self) -> bool:
        """Create every component's tables; returns False if any schema failed"""
        results = []
        for db in self.databases:
            results.append(await asyncio.to_thread(db.ensure_tables))
        return all(results)

    def subscribe_listeners(self) -> None:
        self.recorder.register_listeners(self.bus)
        self.metrics.register_listeners(self.bus)
        self.breach_listeners.register(self.bus)

    async def start(self) -> None:
        self.subscribe_listeners()
        await self.anomalies.start()
        await self.alerts.start()
        await self.health_checks.start()
        await self.breach_rules.start()
        if self.intake is not None:
            self._stop.clear()
            self._intake_task = asyncio.create_task(self.intake.run(self._stop), name="intake")
        logger.info(
            "Monitoring engine started",
            kafka=self.intake is not None,
            redis=self.cache is not None,
        )

    async def stop(self) -> None:
        self._stop.set()
        if self._intake_task is not None:
            await self._intake_task
            self._intake_task = None

        await self.breach_rules.stop()
        await self.health_checks.stop()
        await self.alerts.stop()
        await self.anomalies.stop()
        if isinstance(self.sink, DispatchingNotificationSink):
            await self.sink.aclose()

        if self.cache is not None:
            self.cache.close()
        for db in self.databases:
            db.close()
        logger.info("Monitoring engine stopped")
