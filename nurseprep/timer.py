"""Deadline-based exam countdown.

Remaining time is always recomputed as deadline - now, never decremented per tick,
so a delayed or resumed host shows true elapsed time.
"""
import logging
import math
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from .config import CRITICAL_TIME_SECONDS, LOW_TIME_SECONDS, TICK_INTERVAL_SECONDS
from .models import utcnow

logger = logging.getLogger(__name__)


class TimeWarning(str, Enum):
    NORMAL = "normal"
    LOW = "low"
    CRITICAL = "critical"


def warning_level(remaining: int, low: int = LOW_TIME_SECONDS, critical: int = CRITICAL_TIME_SECONDS) -> TimeWarning:
    if remaining <= critical:
        return TimeWarning.CRITICAL
    if remaining <= low:
        return TimeWarning.LOW
    return TimeWarning.NORMAL


def format_clock(seconds: int) -> str:
    m, s = divmod(max(0, int(seconds)), 60)
    h, m = divmod(m, 60)
    return f"{h}:{m:02d}:{s:02d}" if h else f"{m}:{s:02d}"


class ExamTimer:
    """
    Countdown with a hard deadline.

    on_expire fires exactly once, however many ticks observe remaining <= 0,
    and never after cancel(). Ticks come from a background thread when
    threaded=True, otherwise the host calls tick() (e.g. on every Streamlit rerun).
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        tick_interval: float = TICK_INTERVAL_SECONDS,
        low_seconds: int = LOW_TIME_SECONDS,
        critical_seconds: int = CRITICAL_TIME_SECONDS,
        threaded: bool = False,
    ):
        self.clock = clock
        self.tick_interval = tick_interval
        self.low_seconds = low_seconds
        self.critical_seconds = critical_seconds
        self.threaded = threaded

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._deadline: Optional[datetime] = None
        self._on_tick: Optional[Callable[[int], None]] = None
        self._on_expire: Optional[Callable[[], None]] = None
        self._fired = False
        self._cancelled = False

    @property
    def deadline(self) -> Optional[datetime]:
        return self._deadline

    @property
    def expired(self) -> bool:
        return self._fired

    @property
    def running(self) -> bool:
        return self._deadline is not None and not self._cancelled and not self._fired

    def start(
        self,
        duration_seconds: int,
        on_tick: Optional[Callable[[int], None]] = None,
        on_expire: Optional[Callable[[], None]] = None,
        started_at: Optional[datetime] = None,
    ) -> datetime:
        """
        Arm the timer. Pass started_at to rebuild a resumed attempt's clock
        from its stored start time instead of restarting the full duration.

        Returns:
            The absolute deadline
        """
        with self._lock:
            if self._deadline is not None:
                raise RuntimeError("Timer already started")
            begin = started_at or self.clock()
            self._deadline = begin + timedelta(seconds=duration_seconds)
            self._on_tick = on_tick
            self._on_expire = on_expire

        logger.debug(f"Timer armed: deadline={self._deadline.isoformat()}")
        if self.threaded:
            self._thread = threading.Thread(target=self._run, name="exam-timer", daemon=True)
            self._thread.start()
        return self._deadline

    def remaining_seconds(self) -> int:
        if self._deadline is None:
            return 0
        left = (self._deadline - self.clock()).total_seconds()
        return max(0, math.ceil(left))

    def warning(self) -> TimeWarning:
        return warning_level(self.remaining_seconds(), self.low_seconds, self.critical_seconds)

    def tick(self) -> int:
        """Recompute remaining time, notify on_tick, and fire on_expire once at the deadline."""
        with self._lock:
            if self._deadline is None or self._cancelled:
                return self.remaining_seconds()
            remaining = self.remaining_seconds()
            fire = remaining <= 0 and not self._fired
            if fire:
                self._fired = True
            on_tick, on_expire = self._on_tick, self._on_expire

        if on_tick:
            on_tick(remaining)
        if fire:
            with self._lock:
                if self._cancelled:
                    return remaining
            logger.info("Exam time is up")
            if on_expire:
                on_expire()
        return remaining

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
        self._stop.set()
        thread = self._thread
        if thread and thread is not threading.current_thread():
            thread.join(timeout=max(1.0, self.tick_interval * 2))

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Timer callback failed")
            if self._fired:
                break
            self._stop.wait(self.tick_interval)
