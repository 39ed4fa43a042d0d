"""
Scheduler — periodic status polling for submitted envelopes.

Infrastructure layer — uses APScheduler (3.x) for lightweight in-process
scheduling on a fixed interval.

Submissions register their track id in PendingDeliveries; each run
queries the authority for every pending id and drops the ones that
reached a final state (accepted, rejected, schema or signature error).
A failed query leaves the id pending for the next run. Final statuses are
kept for lookups, oldest first out once `max_final` of them are held.
"""

from __future__ import annotations

import signal
import sys
import threading
from collections import OrderedDict
from collections.abc import Callable

import structlog
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from sii_dte.domain.models import StatusResult
from sii_dte.domain.result import Result

log = structlog.get_logger()


DEFAULT_MAX_FINAL = 1024


class PendingDeliveries:
    """Thread-safe registry of track ids awaiting a final status."""

    def __init__(self, max_final: int = DEFAULT_MAX_FINAL) -> None:
        self._lock = threading.Lock()
        self._pending: set[str] = set()
        self._final: OrderedDict[str, StatusResult] = OrderedDict()
        self._max_final = max(max_final, 1)

    def add(self, track_id: str) -> None:
        with self._lock:
            self._pending.add(track_id)

    def resolve(self, track_id: str, result: StatusResult) -> None:
        """
        Record `result` as final for `track_id`, the id that was registered
        and queried; the authority may echo it back formatted differently.
        """
        with self._lock:
            self._pending.discard(track_id)
            self._final[track_id] = result
            self._final.move_to_end(track_id)
            while len(self._final) > self._max_final:
                self._final.popitem(last=False)

    def pending(self) -> list[str]:
        with self._lock:
            return sorted(self._pending)

    def final_status(self, track_id: str) -> StatusResult | None:
        with self._lock:
            return self._final.get(track_id)


def poll_pending(
    status_fn: Callable[[str], Result[StatusResult]],
    registry: PendingDeliveries,
) -> int:
    """Query every pending track id once. Returns how many became final."""
    resolved = 0
    for track_id in registry.pending():
        result = status_fn(track_id)
        if result.is_failure():
            failure = result.error()
            log.warning(
                "poller.query_failed",
                track_id=track_id,
                code=failure.code.value,
                error=failure.message,
            )
            continue
        status = result.value()
        if status.is_final:
            registry.resolve(track_id, status)
            resolved += 1
            log.info(
                "poller.status_final",
                track_id=track_id,
                status=status.status,
                accepted=status.accepted,
                rejected=status.rejected,
            )
        else:
            log.info("poller.status_pending", track_id=track_id, status=status.status)
    return resolved


def create_status_poller(
    status_fn: Callable[[str], Result[StatusResult]],
    registry: PendingDeliveries,
    interval_seconds: int = 60,
    register_signals: bool = True,
) -> BlockingScheduler:
    """
    Create a configured APScheduler that polls pending deliveries.

    Args:
        status_fn: Track id → Result[StatusResult] (the wired status query).
        registry: Shared PendingDeliveries.
        interval_seconds: Seconds between polling runs.
        register_signals: Install SIGINT/SIGTERM handlers; leave off when
            another server owns signal handling.

    Returns:
        A configured BlockingScheduler (call .start() to begin).
    """
    scheduler = BlockingScheduler()

    def _job() -> None:
        resolved = poll_pending(status_fn, registry)
        log.debug("poller.run_completed", resolved=resolved, pending=len(registry.pending()))

    scheduler.add_job(
        _job,
        trigger=IntervalTrigger(seconds=interval_seconds),
        id="sii_dte_status_poll",
        name="Envelope status polling",
        replace_existing=True,
        max_instances=1,
    )

    if register_signals:
        _register_shutdown_signals(scheduler)

    return scheduler


def _register_shutdown_signals(scheduler: BlockingScheduler) -> None:
    """Register SIGINT and SIGTERM handlers for graceful shutdown."""

    def _shutdown(signum: int, frame: object) -> None:
        sig_name = signal.Signals(signum).name
        log.info("scheduler.shutdown_requested", signal=sig_name)
        scheduler.shutdown(wait=False)
        sys.exit(0)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
