# checkgate/internal/collector/orchestrator.py

"""
Collection cycle: fan out to every probe concurrently, normalize what came back,
and write the batch to the metrics store.
"""

import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Callable, Sequence

from checkgate.internal.collector.normalizer import Normalizer
from checkgate.internal.collector.probes import Snapshot, SourceProbe
from checkgate.internal.errors import StoreError, ValidationError
from checkgate.internal.storage.base import MetricsStore
from checkgate.internal.utils.clock import Clock, SystemClock, truncate_to_millis
from checkgate.models.metrics import MetricRecord
from checkgate.models.results import (
    CollectionEvent,
    CycleResult,
    EventKind,
    ProbeError,
    ProbeErrorKind,
)

logger = logging.getLogger(__name__)

EventCallback = Callable[[CollectionEvent], None]


class CollectionOrchestrator:
    def __init__(
        self,
        probes: Sequence[SourceProbe],
        store: MetricsStore,
        hostname: str,
        normalizer: Normalizer | None = None,
        clock: Clock | None = None,
        probe_timeout: float = 10.0,
        write_timeout: float = 15.0,
        write_attempts: int = 3,
        write_retry_delay: float = 1.0,
        on_event: EventCallback | None = None,
    ):
        if not probes:
            raise ValueError("At least one probe is required")
        names = [p.name for p in probes]
        if len(set(names)) != len(names):
            raise ValueError(f"Probe names must be unique: {names}")

        self.probes = list(probes)
        self.store = store
        self.hostname = hostname
        self.normalizer = normalizer or Normalizer()
        self.clock = clock or SystemClock()
        self.probe_timeout = probe_timeout
        self.write_timeout = write_timeout
        self.write_attempts = max(1, write_attempts)
        self.write_retry_delay = write_retry_delay
        self.on_event = on_event
        self._last_timestamp: datetime | None = None
        self._shutdown = asyncio.Event()

    def request_shutdown(self):
        """Abandon outstanding probe calls of the in-flight cycle."""
        self._shutdown.set()

    def report(self, event: CollectionEvent):
        if event.kind in (EventKind.CYCLE_FAILED, EventKind.CYCLE_WRITE_FAILED):
            logger.error(f"{event.kind.value} (cycle {event.triggered_at.isoformat()}): {event.detail}")
        else:
            logger.warning(f"{event.kind.value} (cycle {event.triggered_at.isoformat()}): {event.detail}")
        if self.on_event:
            try:
                self.on_event(event)
            except Exception as e:
                logger.error(f"Event callback failed: {e}")

    def _cycle_timestamp(self, triggered_at: datetime) -> datetime:
        ts = truncate_to_millis(triggered_at)
        # Keep per-host timestamps strictly increasing across cycles
        if self._last_timestamp is not None and ts <= self._last_timestamp:
            ts = self._last_timestamp + timedelta(milliseconds=1)
        self._last_timestamp = ts
        return ts

    async def _sample(self, probe: SourceProbe) -> Snapshot | ProbeError:
        try:
            return await asyncio.wait_for(probe.sample(), timeout=self.probe_timeout)
        except asyncio.TimeoutError:
            return ProbeError(probe.name, ProbeErrorKind.TIMEOUT,
                              f"no response within {self.probe_timeout}s")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return ProbeError(probe.name, ProbeErrorKind.FAILURE, f"{type(e).__name__}: {e}")

    async def _fan_out(self) -> dict[str, Snapshot | ProbeError]:
        tasks = {asyncio.create_task(self._sample(p)): p for p in self.probes}
        pending = set(tasks)
        stop_waiter = asyncio.create_task(self._shutdown.wait())
        try:
            while pending:
                done, _ = await asyncio.wait(pending | {stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
                pending -= done
                if stop_waiter in done:
                    break
        finally:
            stop_waiter.cancel()
            for task in pending:
                task.cancel()

        outcomes: dict[str, Snapshot | ProbeError] = {}
        for task, probe in tasks.items():
            if task in pending:
                outcomes[probe.name] = ProbeError(probe.name, ProbeErrorKind.CANCELLED,
                                                  "abandoned at shutdown")
            else:
                outcomes[probe.name] = task.result()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return outcomes

    async def run_cycle(self, triggered_at: datetime | None = None) -> CycleResult:
        """
        Run one collection cycle.

        Failed probes are reported individually and left out of the batch. A
        failed mandatory probe still yields a partial host record so readers can
        see the attempt. When every probe fails nothing is written.
        """
        timestamp = self._cycle_timestamp(triggered_at or self.clock.now())
        result = CycleResult(triggered_at=timestamp)

        outcomes = await self._fan_out()

        mandatory_failed = False
        for probe in self.probes:
            outcome = outcomes[probe.name]
            if isinstance(outcome, Snapshot):
                try:
                    result.records.append(self.normalizer.normalize(outcome, timestamp))
                    continue
                except ValidationError as e:
                    outcome = ProbeError(probe.name, ProbeErrorKind.INVALID, str(e))
            result.errors.append(outcome)
            mandatory_failed = mandatory_failed or probe.mandatory
            self.report(CollectionEvent(EventKind.PROBE_FAILED, timestamp,
                                        f"{outcome.probe}: {outcome.kind.value}: {outcome.message}"))

        if not result.records:
            self.report(CollectionEvent(EventKind.CYCLE_FAILED, timestamp,
                                        f"all {len(self.probes)} probes failed"))
            return result

        if mandatory_failed:
            result.records.insert(0, MetricRecord(timestamp=timestamp, hostname=self.hostname))

        await self._write(result)
        if result.written:
            logger.info(
                f"Cycle {timestamp.isoformat()}: wrote {len(result.records)} records, "
                f"{len(result.errors)} probe errors"
            )
        return result

    async def _write(self, result: CycleResult):
        for attempt in range(1, self.write_attempts + 1):
            try:
                await asyncio.wait_for(self.store.write_batch(result.records), timeout=self.write_timeout)
                result.written = True
                result.write_error = None
                return
            except asyncio.TimeoutError:
                result.write_error = f"write timed out after {self.write_timeout}s"
            except StoreError as e:
                result.write_error = str(e)

            logger.warning(f"Write attempt {attempt}/{self.write_attempts} failed: {result.write_error}")
            if attempt < self.write_attempts:
                await self.clock.sleep(self.write_retry_delay * 2 ** (attempt - 1))

        self.report(CollectionEvent(
            EventKind.CYCLE_WRITE_FAILED, result.triggered_at,
            f"{len(result.records)} records lost after {self.write_attempts} attempts: {result.write_error}",
        ))


class CollectionScheduler:
    """
    Single-flight periodic driver for the orchestrator.

    Ticks fall at start + k * interval. A cycle that runs past the following tick
    causes every elapsed tick to be skipped (reported once as an overrun); the
    next cycle starts at the first tick still in the future.
    """

    def __init__(self, orchestrator: CollectionOrchestrator, interval: float = 30.0,
                 clock: Clock | None = None):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.orchestrator = orchestrator
        self.interval = interval
        self.clock = clock or orchestrator.clock
        self._stop_event = asyncio.Event()
        self.cycles_run = 0
        self.ticks_skipped = 0

    def stop(self):
        self._stop_event.set()
        self.orchestrator.request_shutdown()

    async def _wait(self, seconds: float) -> bool:
        """Sleep unless stopped first. Returns False when stopped."""
        if seconds <= 0:
            return not self._stop_event.is_set()
        sleeper = asyncio.create_task(self.clock.sleep(seconds))
        stopper = asyncio.create_task(self._stop_event.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            stopper.cancel()
        return not self._stop_event.is_set()

    async def run(self):
        logger.info(f"Starting collection loop (interval {self.interval}s)...")
        origin = self.clock.monotonic()
        tick = 0
        while not self._stop_event.is_set():
            triggered_at = self.clock.now()
            try:
                await self.orchestrator.run_cycle(triggered_at)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # A failed cycle never ends the loop
                logger.exception(f"Error in collection cycle: {e}")
            self.cycles_run += 1

            elapsed_ticks = (self.clock.monotonic() - origin) / self.interval
            next_tick = max(tick + 1, math.ceil(elapsed_ticks))
            skipped = next_tick - tick - 1
            if skipped > 0:
                self.ticks_skipped += skipped
                self.orchestrator.report(CollectionEvent(
                    EventKind.CYCLE_OVERRUN, triggered_at,
                    f"cycle exceeded the {self.interval}s interval, skipped {skipped} tick(s)",
                ))
            tick = next_tick

            if not await self._wait(origin + tick * self.interval - self.clock.monotonic()):
                break
        logger.info("Collection loop stopped.")
