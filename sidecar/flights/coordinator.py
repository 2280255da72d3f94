"""Flight coordinator: one retryable state machine per prompt attempt."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter
from typing import Any, Dict, List, Optional, Set, Union

from sidecar.config.providers import ProviderRegistry
from sidecar.errors import FlightCancelled, FlightNotFound, SidecarError, UnexpectedFlightError, describe_error
from sidecar.flights.models import Flight, FlightMetadata, FlightState, _utcnow
from sidecar.pool.pool import WorkerContextPool
from sidecar.race.engine import CompletionRaceEngine
from sidecar.race.models import RaceOutcome
from sidecar.store.base import SessionStore

LOGGER = logging.getLogger(__name__)


class FlightCoordinator:
    """Owns the flight table and moves flights through their states.

    Every transition first checks the flight's current state, so callbacks that
    fire after the flight moved on (a retry timer after a cancel, a driver
    finishing after a sweep) change nothing.
    """

    def __init__(
        self,
        pool: WorkerContextPool,
        engine: CompletionRaceEngine,
        store: SessionStore,
        providers: ProviderRegistry,
        *,
        default_timeout_ms: int = 30000,
        default_max_retries: int = 2,
        retry_delay_ms: int = 2000,
        completed_retention_seconds: float = 60.0,
        cancelled_retention_seconds: float = 10.0,
        sweep_interval_seconds: float = 120.0,
        terminal_max_age_seconds: float = 300.0,
        stuck_max_age_seconds: float = 900.0,
    ) -> None:
        self._pool = pool
        self._engine = engine
        self._store = store
        self._providers = providers
        self._default_timeout_ms = default_timeout_ms
        self._default_max_retries = default_max_retries
        self._retry_delay_ms = retry_delay_ms
        self._completed_retention = completed_retention_seconds
        self._cancelled_retention = cancelled_retention_seconds
        self._sweep_interval = sweep_interval_seconds
        self._terminal_max_age = terminal_max_age_seconds
        self._stuck_max_age = stuck_max_age_seconds

        self._flights: Dict[str, Flight] = {}
        self._finished: Dict[str, asyncio.Event] = {}
        self._drivers: Dict[str, asyncio.Task] = {}
        self._retry_timers: Dict[str, asyncio.TimerHandle] = {}
        self._removal_timers: Dict[str, asyncio.TimerHandle] = {}
        self._sweep_task: Optional[asyncio.Task] = None
        self._counters: Counter = Counter()

    # Lifecycle ------------------------------------------------------------------

    async def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="flight-sweep")

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        for flight_id in [flight.flight_id for flight in self._flights.values() if not flight.terminal]:
            await self.cancel(flight_id, "sidecar shutting down")
        for timer in list(self._retry_timers.values()) + list(self._removal_timers.values()):
            timer.cancel()
        self._retry_timers.clear()
        self._removal_timers.clear()

    # Launch & drive --------------------------------------------------------------

    async def launch(
        self,
        provider_key: str,
        prompt: str,
        *,
        timeout_ms: Optional[int] = None,
        max_retries: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Flight:
        provider = self._providers.get(provider_key)
        if max_retries is None:
            max_retries = provider.max_retries if provider.max_retries is not None else self._default_max_retries
        flight = Flight(
            flight_id=str(uuid.uuid4()),
            provider_key=provider_key,
            prompt=prompt,
            metadata=FlightMetadata(
                timeout_ms=timeout_ms or provider.timeout_ms or self._default_timeout_ms,
                max_retries=max_retries,
                extra=dict(metadata or {}),
            ),
        )
        self._flights[flight.flight_id] = flight
        self._finished[flight.flight_id] = asyncio.Event()
        self._counters["launched"] += 1
        LOGGER.info(
            "Flight %s launched for %s (timeout=%sms, maxRetries=%s)",
            flight.flight_id,
            provider_key,
            flight.metadata.timeout_ms,
            max_retries,
        )
        await self._save(flight)
        self._start_driver(flight)
        return flight

    async def run(
        self,
        provider_key: str,
        prompt: str,
        *,
        timeout_ms: Optional[int] = None,
        max_retries: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Flight:
        flight = await self.launch(
            provider_key,
            prompt,
            timeout_ms=timeout_ms,
            max_retries=max_retries,
            metadata=metadata,
        )
        return await self.wait(flight.flight_id)

    async def wait(self, flight_id: str, timeout: Optional[float] = None) -> Flight:
        flight = self._flights.get(flight_id)
        event = self._finished.get(flight_id)
        if flight is None or event is None:
            raise FlightNotFound(f"flight {flight_id} is not tracked")
        if timeout is None:
            await event.wait()
        else:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        return flight

    def _start_driver(self, flight: Flight) -> None:
        task = asyncio.create_task(self._drive(flight.flight_id), name=f"flight:{flight.flight_id}")
        self._drivers[flight.flight_id] = task

        def _finalise(done: asyncio.Task, flight_id: str = flight.flight_id) -> None:
            if self._drivers.get(flight_id) is done:
                self._drivers.pop(flight_id, None)

        task.add_done_callback(_finalise)

    async def _drive(self, flight_id: str) -> None:
        flight = self._flights.get(flight_id)
        if flight is None or flight.state is not FlightState.LAUNCHING:
            return
        LOGGER.debug("Flight %s attempt %s starting", flight_id, flight.attempts)
        try:
            context = await self._pool.acquire(flight.provider_key, flight_id=flight_id)
            if flight.state is not FlightState.LAUNCHING:
                self._pool.release(context.context_id)
                return
            flight.transition(FlightState.IN_FLIGHT)
            flight.context_id = context.context_id
            LOGGER.info("Flight %s in flight on context %s", flight_id, context.context_id)
            await self._pool.verify(context)
            outcome = await self._engine.execute(
                context.context_id,
                flight.provider_key,
                prompt=flight.prompt,
                flight_id=flight_id,
                timeout_ms=flight.metadata.timeout_ms,
            )
        except asyncio.CancelledError:
            raise
        except SidecarError as exc:
            await self.fail(flight_id, exc)
            return
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Unexpected failure while driving flight %s", flight_id)
            wrapped = UnexpectedFlightError(f"unexpected {type(exc).__name__}: {exc}")
            wrapped.__cause__ = exc
            await self.fail(flight_id, wrapped)
            return
        await self.complete(flight_id, outcome)

    # Transitions -----------------------------------------------------------------

    async def complete(self, flight_id: str, result: Union[RaceOutcome, str]) -> bool:
        flight = self._flights.get(flight_id)
        if flight is None or flight.state is not FlightState.IN_FLIGHT:
            LOGGER.debug("Ignoring completion of flight %s in state %s", flight_id, flight.state if flight else None)
            return False
        context_id = flight.context_id
        if isinstance(result, RaceOutcome):
            flight.result = result.text
            flight.winner = result.winner
            flight.harvest_strategy = result.harvest_strategy
            flight.elapsed_ms = result.elapsed_ms
        else:
            flight.result = result
        flight.error = None
        flight.exception = None
        flight.transition(FlightState.COMPLETED)
        if context_id is not None:
            self._pool.release(context_id)
        self._counters["completed"] += 1
        LOGGER.info("Flight %s completed (winner=%s)", flight_id, flight.winner)
        self._finish(flight, self._completed_retention)
        await self._save(flight)
        return True

    async def fail(self, flight_id: str, error: BaseException) -> bool:
        flight = self._flights.get(flight_id)
        if flight is None or flight.state not in (FlightState.LAUNCHING, FlightState.IN_FLIGHT):
            LOGGER.debug("Ignoring failure of flight %s in state %s", flight_id, flight.state if flight else None)
            return False
        context_id = flight.context_id
        info = describe_error(error)
        flight.error = info
        flight.exception = error
        flight.elapsed_ms = info.elapsed_ms
        flight.transition(FlightState.FAILED, reason=info.code)
        if context_id is not None:
            self._pool.mark_error(context_id, info.message)

        if getattr(error, "retryable", False) and flight.can_transition(FlightState.LAUNCHING):
            flight.transition(FlightState.LAUNCHING, reason="retry")
            flight.metadata.retry_count += 1
            flight.attempts += 1
            self._counters["retries"] += 1
            delay = self._retry_delay_for(flight) * flight.metadata.retry_count / 1000.0
            LOGGER.warning(
                "Flight %s attempt failed with %s; retry %s/%s in %.1fs",
                flight_id,
                info.code,
                flight.metadata.retry_count,
                flight.metadata.max_retries,
                delay,
            )
            loop = asyncio.get_running_loop()
            self._retry_timers[flight_id] = loop.call_later(delay, self._retry, flight_id, flight.attempts)
            return True

        self._counters["failed"] += 1
        LOGGER.warning("Flight %s failed after %s attempt(s): %s %s", flight_id, flight.attempts, info.code, info.message)
        self._finish(flight, self._completed_retention)
        await self._save(flight)
        return True

    async def cancel(self, flight_id: str, reason: str = "cancelled") -> bool:
        flight = self._flights.get(flight_id)
        if flight is None:
            raise FlightNotFound(f"flight {flight_id} is not tracked")
        if flight.terminal:
            return False
        context_id = flight.context_id
        cancellation = FlightCancelled(reason)
        flight.error = describe_error(cancellation)
        flight.exception = cancellation
        flight.transition(FlightState.CANCELLED, reason=reason)
        timer = self._retry_timers.pop(flight_id, None)
        if timer is not None:
            timer.cancel()
        driver = self._drivers.get(flight_id)
        if driver is not None and not driver.done() and driver is not asyncio.current_task():
            driver.cancel()
            await asyncio.gather(driver, return_exceptions=True)
        if context_id is not None:
            self._pool.release(context_id)
        self._counters["cancelled"] += 1
        LOGGER.info("Flight %s cancelled: %s", flight_id, reason)
        self._finish(flight, self._cancelled_retention)
        await self._save(flight)
        return True

    def _retry(self, flight_id: str, attempt: int) -> None:
        self._retry_timers.pop(flight_id, None)
        flight = self._flights.get(flight_id)
        if flight is None or flight.state is not FlightState.LAUNCHING or flight.attempts != attempt:
            LOGGER.debug("Dropping stale retry of flight %s", flight_id)
            return
        self._start_driver(flight)

    def _retry_delay_for(self, flight: Flight) -> int:
        if flight.provider_key in self._providers:
            provider = self._providers.get(flight.provider_key)
            if provider.retry_delay_ms is not None:
                return provider.retry_delay_ms
        return self._retry_delay_ms

    def _finish(self, flight: Flight, retention: float) -> None:
        event = self._finished.get(flight.flight_id)
        if event is not None:
            event.set()
        loop = asyncio.get_running_loop()
        self._removal_timers[flight.flight_id] = loop.call_later(retention, self._remove, flight.flight_id)

    def _remove(self, flight_id: str) -> None:
        timer = self._removal_timers.pop(flight_id, None)
        if timer is not None:
            timer.cancel()
        flight = self._flights.get(flight_id)
        if flight is None or not flight.terminal:
            return
        del self._flights[flight_id]
        self._finished.pop(flight_id, None)
        LOGGER.debug("Flight %s removed from the table", flight_id)

    async def _save(self, flight: Flight) -> None:
        try:
            await self._store.save(flight.snapshot())
        except Exception:  # noqa: BLE001
            LOGGER.exception("Failed to persist flight %s", flight.flight_id)

    # Sweep ----------------------------------------------------------------------

    async def sweep(self) -> List[str]:
        """Remove old terminal flights and fail flights stuck past the max age."""

        now = _utcnow()
        removed: List[str] = []
        for flight in list(self._flights.values()):
            if flight.terminal:
                if flight.end_time and (now - flight.end_time).total_seconds() > self._terminal_max_age:
                    self._remove(flight.flight_id)
                    removed.append(flight.flight_id)
                continue
            if (now - flight.start_time).total_seconds() <= self._stuck_max_age:
                continue
            LOGGER.warning("Flight %s stuck in %s; failing it", flight.flight_id, flight.state.value)
            await self._abandon(flight)
            removed.append(flight.flight_id)
        return removed

    async def _abandon(self, flight: Flight) -> None:
        flight_id = flight.flight_id
        context_id = flight.context_id
        error = UnexpectedFlightError(f"flight exceeded {int(self._stuck_max_age)}s without finishing")
        flight.error = describe_error(error)
        flight.exception = error
        flight.transition(FlightState.FAILED, reason=error.code)
        timer = self._retry_timers.pop(flight_id, None)
        if timer is not None:
            timer.cancel()
        driver = self._drivers.get(flight_id)
        if driver is not None and not driver.done():
            driver.cancel()
            await asyncio.gather(driver, return_exceptions=True)
        if context_id is not None:
            self._pool.mark_error(context_id, "flight abandoned by sweep")
        self._counters["failed"] += 1
        event = self._finished.get(flight_id)
        if event is not None:
            event.set()
        await self._save(flight)
        self._remove(flight_id)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                removed = await self.sweep()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Flight sweep failed")
                continue
            if removed:
                LOGGER.info("Flight sweep removed %s flight(s)", len(removed))

    # Introspection ----------------------------------------------------------------

    def get(self, flight_id: str) -> Optional[Flight]:
        return self._flights.get(flight_id)

    def list(self, provider_key: Optional[str] = None, state: Optional[FlightState] = None) -> List[Flight]:
        return [
            flight
            for flight in self._flights.values()
            if (provider_key is None or flight.provider_key == provider_key)
            and (state is None or flight.state is state)
        ]

    def stats(self) -> Dict[str, Any]:
        states = Counter(flight.state.value for flight in self._flights.values())
        return {
            "tracked": len(self._flights),
            "byState": {state.value: states.get(state.value, 0) for state in FlightState},
            "activeDrivers": len(self._drivers),
            "pendingRetries": len(self._retry_timers),
            "totals": {key: self._counters.get(key, 0) for key in ("launched", "completed", "failed", "cancelled", "retries")},
        }
