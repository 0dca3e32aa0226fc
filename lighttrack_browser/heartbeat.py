"""Periodic heartbeat re-sending the current tab."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from lighttrack_browser.models import CurrentTab

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

HEARTBEAT_INTERVAL = 30.0


class HeartbeatTimer:
    """Tick every ``interval`` seconds for the lifetime of the session.

    A tick sends the current tab iff one is set and the last accepted send is
    at least ``interval`` seconds old.

    Attributes:
        interval (float): Tick period and staleness threshold in seconds.
        get_current_tab (Callable[[], Optional[CurrentTab]]): Reads the tracker's tab.
        get_last_send_time (Callable[[], Optional[float]]): Clock reading of the last accepted send.
        send (Callable[[CurrentTab], None]): Sends the activity.
    """

    def __init__(
        self,
        get_current_tab: Callable[[], Optional[CurrentTab]],
        get_last_send_time: Callable[[], Optional[float]],
        send: Callable[[CurrentTab], None],
        interval: float = HEARTBEAT_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        schedule: Optional[Callable[..., None]] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"Heartbeat interval must be positive, got {interval}")
        self.interval = interval
        self.get_current_tab = get_current_tab
        self.get_last_send_time = get_last_send_time
        self.send = send
        self.clock = clock
        self.schedule = schedule
        self.heartbeats = 0
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._stopped = True

    def is_due(self) -> bool:
        if self.get_current_tab() is None:
            return False
        last = self.get_last_send_time()
        if last is None:
            return True
        return self.clock() - last >= self.interval

    def tick(self) -> bool:
        """Run one heartbeat check. Returns True if a send was issued."""
        tab = self.get_current_tab()
        if tab is None or not self.is_due():
            return False
        self.heartbeats += 1
        logger.debug(f"Heartbeat for tab {tab.id}")
        self.send(tab)
        return True

    def start(self) -> None:
        with self._lock:
            self._stopped = False
        self._schedule_next()

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            if self._timer:
                self._timer.cancel()
                self._timer = None

    def _schedule_next(self) -> None:
        with self._lock:
            if self._timer:
                self._timer.cancel()
                self._timer = None
            if self._stopped:
                return
            self._timer = threading.Timer(self.interval, self._run)
            self._timer.daemon = True
            self._timer.start()

    def _run(self) -> None:
        if self._stopped:
            return
        try:
            if self.schedule is not None:
                self.schedule(self.tick)
            else:
                self.tick()
        except Exception as e:
            logger.error(f"Heartbeat failed: {e}", exc_info=True)
        finally:
            self._schedule_next()

    def __repr__(self) -> str:
        return f"<HeartbeatTimer interval={self.interval} running={not self._stopped}>"
