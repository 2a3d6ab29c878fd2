"""Ordered progress events for long-running operations.

Orchestrators emit ``(StepId, percent, message)`` through a
:class:`ProgressReporter`. The reporter owns the ``StepId -> DisplayState``
map, timestamps every event, keeps the overall percentage monotonic and fans
events out to plain callables. Renderers never reach back into the
orchestrator.
"""
from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from .models import DownloadProgress


class StepId(str, Enum):
    """Every step an orchestrator can report on."""

    # Upgrade
    DETECT = "detect"
    CHECK_REMOTE = "check_remote"
    ACQUIRE_PACKAGE = "acquire_package"
    BACKUP = "backup"
    STOP = "stop"
    REPLACE = "replace"
    MIGRATE = "migrate"
    RECONFIGURE = "reconfigure"
    START = "start"
    VERIFY_COMMIT = "verify_commit"
    ROLLBACK = "rollback"
    # Fresh install
    VALIDATE = "validate"
    COMMIT = "commit"
    # Repair
    REPAIR_FILES = "repair_files"
    REPAIR_SITE = "repair_site"
    REPAIR_SERVICE = "repair_service"
    REPAIR_CONFIG = "repair_config"
    REPAIR_DATABASE = "repair_database"
    # Uninstall
    REMOVE_SERVICE = "remove_service"
    REMOVE_SITE = "remove_site"
    DROP_DATABASE = "drop_database"
    REMOVE_FILES = "remove_files"
    REMOVE_RECORD = "remove_record"
    VERIFY_REMOVAL = "verify_removal"


UPGRADE_STEPS: tuple[StepId, ...] = (
    StepId.DETECT,
    StepId.CHECK_REMOTE,
    StepId.ACQUIRE_PACKAGE,
    StepId.BACKUP,
    StepId.STOP,
    StepId.REPLACE,
    StepId.MIGRATE,
    StepId.RECONFIGURE,
    StepId.START,
    StepId.VERIFY_COMMIT,
)

INSTALL_STEPS: tuple[StepId, ...] = (
    StepId.VALIDATE,
    StepId.CHECK_REMOTE,
    StepId.ACQUIRE_PACKAGE,
    StepId.REPLACE,
    StepId.MIGRATE,
    StepId.RECONFIGURE,
    StepId.START,
    StepId.COMMIT,
)

RECONFIGURE_STEPS: tuple[StepId, ...] = (
    StepId.DETECT,
    StepId.RECONFIGURE,
    StepId.START,
    StepId.COMMIT,
)

REPAIR_STEPS: tuple[StepId, ...] = (
    StepId.DETECT,
    StepId.REPAIR_FILES,
    StepId.REPAIR_SITE,
    StepId.REPAIR_SERVICE,
    StepId.REPAIR_CONFIG,
    StepId.REPAIR_DATABASE,
)

UNINSTALL_STEPS: tuple[StepId, ...] = (
    StepId.DETECT,
    StepId.VALIDATE,
    StepId.REMOVE_SERVICE,
    StepId.REMOVE_SITE,
    StepId.DROP_DATABASE,
    StepId.REMOVE_FILES,
    StepId.REMOVE_RECORD,
    StepId.VERIFY_REMOVAL,
)


class DisplayState(str, Enum):
    """How a step should be presented."""

    PENDING = "pending"
    ACTIVE = "active"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """One entry in the progress stream."""

    sequence: int
    step: StepId
    state: DisplayState
    percent: float
    message: str
    timestamp: datetime
    level: str = "info"


ProgressObserver = Callable[[ProgressEvent], None]


class ProgressReporter:
    """Thread-safe, ordered progress stream."""

    def __init__(
        self,
        steps: Sequence[StepId] = (),
        *,
        observers: Iterable[ProgressObserver] = (),
    ) -> None:
        """Track *steps* (all pending) and notify *observers* of each event."""
        self._lock = threading.Lock()
        self._observers = list(observers)
        self._states: dict[StepId, DisplayState] = {step: DisplayState.PENDING for step in steps}
        self._events: list[ProgressEvent] = []
        self._percent = 0.0

    def subscribe(self, observer: ProgressObserver) -> None:
        """Add *observer* to the fan-out list."""
        with self._lock:
            self._observers.append(observer)

    @property
    def percent(self) -> float:
        """Return the overall percentage reported so far."""
        return self._percent

    @property
    def states(self) -> dict[StepId, DisplayState]:
        """Return a copy of the display state map."""
        with self._lock:
            return dict(self._states)

    @property
    def events(self) -> list[ProgressEvent]:
        """Return a copy of every event emitted so far."""
        with self._lock:
            return list(self._events)

    def _emit(
        self,
        step: StepId,
        state: DisplayState | None,
        percent: float | None,
        message: str,
        level: str,
    ) -> ProgressEvent:
        with self._lock:
            if state is not None:
                self._states[step] = state
            if percent is not None:
                self._percent = max(self._percent, min(100.0, max(0.0, float(percent))))
            event = ProgressEvent(
                sequence=len(self._events),
                step=step,
                state=self._states.get(step, DisplayState.ACTIVE),
                percent=self._percent,
                message=message,
                timestamp=datetime.now(tz=UTC),
                level=level,
            )
            self._events.append(event)
            observers = list(self._observers)
        for observer in observers:
            observer(event)
        return event

    def begin(self, step: StepId, message: str, *, percent: float | None = None) -> ProgressEvent:
        """Mark *step* active."""
        return self._emit(step, DisplayState.ACTIVE, percent, message, "info")

    def report(
        self,
        step: StepId,
        message: str,
        *,
        percent: float | None = None,
        level: str = "info",
    ) -> ProgressEvent:
        """Report progress within *step* without changing its display state."""
        return self._emit(step, None, percent, message, level)

    def complete(self, step: StepId, message: str = "", *, percent: float | None = None) -> ProgressEvent:
        """Mark *step* done."""
        return self._emit(step, DisplayState.DONE, percent, message or f"{step.value} complete", "info")

    def warn(self, step: StepId, message: str) -> ProgressEvent:
        """Emit a warning against *step*."""
        return self._emit(step, None, None, message, "warning")

    def fail(self, step: StepId, message: str) -> ProgressEvent:
        """Mark *step* failed."""
        return self._emit(step, DisplayState.FAILED, None, message, "error")

    def skip(self, step: StepId, message: str = "") -> ProgressEvent:
        """Mark *step* skipped."""
        return self._emit(step, DisplayState.SKIPPED, None, message or f"{step.value} skipped", "info")

    def download_callback(
        self,
        step: StepId,
        *,
        start: float,
        end: float,
        interval: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
    ) -> Callable[[DownloadProgress], None]:
        """Return a throttled callback mapping download progress onto ``start..end``."""
        throttle = ThrottledProgress(interval=interval, clock=clock)
        span = max(0.0, end - start)

        def _callback(progress: DownloadProgress) -> None:
            if not throttle.should_emit(progress):
                return
            overall = start + span * progress.percent / 100.0
            eta = f", ETA {progress.eta:.0f}s" if progress.eta is not None else ""
            self.report(
                step,
                f"Downloaded {_format_bytes(progress.bytes_received)} of "
                f"{_format_bytes(progress.total_bytes)} "
                f"({_format_bytes(int(progress.speed))}/s{eta})",
                percent=overall,
            )

        return _callback


class ThrottledProgress:
    """Decide which download updates are worth forwarding."""

    def __init__(self, *, interval: float = 0.25, clock: Callable[[], float] = time.monotonic) -> None:
        """Forward at most one update per *interval* seconds, plus the final one."""
        self.interval = interval
        self._clock = clock
        self._last: float | None = None
        self._last_percent = -1.0
        self._finished = False

    def should_emit(self, progress: DownloadProgress) -> bool:
        """Return ``True`` if *progress* should reach the observer."""
        if self._finished:
            return False
        complete = progress.total_bytes > 0 and progress.bytes_received >= progress.total_bytes
        now = self._clock()
        due = self._last is None or now - self._last >= self.interval
        if not (complete or due):
            return False
        if progress.percent < self._last_percent:
            return False
        self._last = now
        self._last_percent = progress.percent
        self._finished = complete
        return True


class CancellationToken:
    """Cooperative cancellation flag checked between orchestration steps."""

    def __init__(self) -> None:
        """Create an un-cancelled token."""
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Return ``True`` once :meth:`cancel` has been called."""
        return self._event.is_set()


def _format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.1f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024
    return f"{value:.1f} GB"  # pragma: no cover


__all__ = [
    "INSTALL_STEPS",
    "RECONFIGURE_STEPS",
    "REPAIR_STEPS",
    "UNINSTALL_STEPS",
    "UPGRADE_STEPS",
    "CancellationToken",
    "DisplayState",
    "ProgressEvent",
    "ProgressObserver",
    "ProgressReporter",
    "StepId",
    "ThrottledProgress",
]
