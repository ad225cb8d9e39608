"""
Probe implementations for each health check type.

A probe never raises for an unhealthy target: unreachable hosts, bad
status codes and non-zero exit codes are outcomes, not errors.
"""

import asyncio
import shlex
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx
import psycopg2
import structlog

from src.core.database import PostgresConnection

from .models import CheckType, HealthCheckDefinition, Outcome

logger = structlog.get_logger(__name__)

MAX_BODY_CHARS = 1000


@dataclass
class ProbeOutcome:
    status: Outcome
    response_time_ms: float
    status_code: int | None = None
    body: str | None = None
    error: str | None = None


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


def status_matches(status_code: int, expected: str | None) -> bool:
    """Expected values starting with '2' (or unset) accept any 2xx; others are prefix matches"""
    if not expected or str(expected).startswith("2"):
        return 200 <= status_code < 300
    return str(status_code).startswith(str(expected))


class Probe(ABC):
    @abstractmethod
    async def run(self, check: HealthCheckDefinition) -> ProbeOutcome:
        pass


class HttpProbe(Probe):
    """Issues one request and judges the status code"""

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def run(self, check: HealthCheckDefinition) -> ProbeOutcome:
        started = time.perf_counter()
        try:
            response = await self.client.request(
                check.method or "GET",
                check.target,
                headers=check.headers or None,
                content=check.body,
                timeout=check.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            return ProbeOutcome(
                Outcome.TIMEOUT, _elapsed_ms(started), error=str(e) or "Request timed out"
            )
        except httpx.HTTPError as e:
            return ProbeOutcome(Outcome.FAILURE, _elapsed_ms(started), error=str(e) or repr(e))

        elapsed = _elapsed_ms(started)
        ok = status_matches(response.status_code, check.expected_status)
        return ProbeOutcome(
            Outcome.SUCCESS if ok else Outcome.FAILURE,
            elapsed,
            status_code=response.status_code,
            body=response.text[:MAX_BODY_CHARS],
            error=None if ok else f"Unexpected status code {response.status_code}",
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


class TcpProbe(Probe):
    """Opens a connection to host:port"""

    async def run(self, check: HealthCheckDefinition) -> ProbeOutcome:
        host, _, port = check.target.rpartition(":")
        started = time.perf_counter()
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host.strip("[]"), int(port)), check.timeout_seconds
            )
        except TimeoutError:
            return ProbeOutcome(Outcome.TIMEOUT, _elapsed_ms(started), error="Connection timed out")
        except (OSError, ValueError) as e:
            return ProbeOutcome(Outcome.FAILURE, _elapsed_ms(started), error=str(e))

        elapsed = _elapsed_ms(started)
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return ProbeOutcome(Outcome.SUCCESS, elapsed)


class ScriptProbe(Probe):
    """Runs a command; exit code 0 is healthy"""

    async def run(self, check: HealthCheckDefinition) -> ProbeOutcome:
        argv = shlex.split(check.script or check.target)
        started = time.perf_counter()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            return ProbeOutcome(Outcome.FAILURE, _elapsed_ms(started), error=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), check.timeout_seconds)
        except TimeoutError:
            process.kill()
            await process.wait()
            return ProbeOutcome(Outcome.TIMEOUT, _elapsed_ms(started), error="Script timed out")

        elapsed = _elapsed_ms(started)
        output = stdout.decode(errors="replace")[:MAX_BODY_CHARS]
        if process.returncode == 0:
            return ProbeOutcome(Outcome.SUCCESS, elapsed, body=output)
        error = stderr.decode(errors="replace").strip()[:MAX_BODY_CHARS]
        return ProbeOutcome(
            Outcome.FAILURE,
            elapsed,
            body=output,
            error=error or f"Exit code {process.returncode}",
        )


class DatabaseProbe(Probe):
    """Liveness query raced against the timeout.

    An empty target checks the engine's own store; otherwise the target is
    a libpq connection string.
    """

    def __init__(self, db: PostgresConnection | None = None):
        self.db = db

    def _ping(self, check: HealthCheckDefinition) -> bool:
        if not check.target:
            if self.db is None:
                raise RuntimeError("No database configured for liveness check")
            return self.db.check_health()

        connection = psycopg2.connect(check.target, connect_timeout=max(1, int(check.timeout_seconds)))
        try:
            with connection.cursor() as cursor:
                cursor.execute("SELECT 1")
                return cursor.fetchone()[0] == 1
        finally:
            connection.close()

    async def run(self, check: HealthCheckDefinition) -> ProbeOutcome:
        started = time.perf_counter()
        try:
            alive = await asyncio.wait_for(
                asyncio.to_thread(self._ping, check), check.timeout_seconds
            )
        except TimeoutError:
            return ProbeOutcome(Outcome.TIMEOUT, _elapsed_ms(started), error="Database check timed out")
        except Exception as e:
            return ProbeOutcome(Outcome.FAILURE, _elapsed_ms(started), error=str(e))

        if alive:
            return ProbeOutcome(Outcome.SUCCESS, _elapsed_ms(started))
        return ProbeOutcome(Outcome.FAILURE, _elapsed_ms(started), error="Liveness query failed")


def default_probes(
    db: PostgresConnection | None = None, client: httpx.AsyncClient | None = None
) -> dict[CheckType, Probe]:
    return {
        CheckType.HTTP: HttpProbe(client),
        CheckType.TCP: TcpProbe(),
        CheckType.SCRIPT: ScriptProbe(),
        CheckType.DATABASE: DatabaseProbe(db),
    }
