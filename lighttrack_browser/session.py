"""Background session: owns connection state, the current tab and the heartbeat.

All handlers run on one worker thread fed by a FIFO queue, so no two of them
ever execute at the same time. Browser listeners, heartbeat ticks and settings
notifications only enqueue work. With ``synchronous=True`` work runs inline on
the caller's thread, which is how the tests drive the session.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Any, Callable, Dict, Optional

from lighttrack_browser.browser import BrowserEvents
from lighttrack_browser.client import CompanionClient
from lighttrack_browser.control import ControlSurface, Respond
from lighttrack_browser.heartbeat import HEARTBEAT_INTERVAL, HeartbeatTimer
from lighttrack_browser.models import ActivityRecord, CurrentTab, PageContext, utc_timestamp
from lighttrack_browser.store import ConfigStore
from lighttrack_browser.tracker import TabTracker

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

DEFAULT_BROWSER = "Chrome"


def detect_browser_name(user_agent: Optional[str]) -> str:
    """Name the browser from a user agent string, checking Chrome first."""
    if not user_agent:
        return "Unknown"
    for name in ("Chrome", "Firefox", "Safari", "Edge"):
        if name in user_agent:
            return name
    return "Unknown"


class BackgroundSession:
    """Wire the tracker, heartbeat, control surface and transport together.

    Attributes:
        store (ConfigStore): Durable port setting.
        client (CompanionClient): Transport to the companion.
        tracker (TabTracker): Current tab state machine.
        heartbeat (HeartbeatTimer): Periodic re-send of the current tab.
        control (ControlSurface): Message endpoint.
        browser_name (str): Value of the ``browser`` field of activity records.
    """

    def __init__(
        self,
        store: ConfigStore,
        browser: BrowserEvents,
        client: Optional[CompanionClient] = None,
        browser_name: str = DEFAULT_BROWSER,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        host: str = "localhost",
        testing: bool = False,
        synchronous: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.browser = browser
        self.browser_name = browser_name
        self.synchronous = synchronous
        self.clock = clock
        self.client = client or CompanionClient(
            port=store.get("port"), host=host, testing=testing, clock=clock
        )

        self._queue: queue.Queue[Any] = queue.Queue()
        self._worker_thread: Optional[threading.Thread] = None
        self._started = False
        self._closed = False
        self.start_time = clock()
        self.task_errors = 0

        self.tracker = TabTracker(browser, self.send_activity, schedule=self.submit)
        self.heartbeat = HeartbeatTimer(
            get_current_tab=lambda: self.tracker.current_tab,
            get_last_send_time=lambda: self.client.last_send_time,
            send=self.send_activity,
            interval=heartbeat_interval,
            clock=clock,
            schedule=self.submit,
        )
        self.control = ControlSurface(self)

        store.observe("port", self._on_port_changed)

    @property
    def current_tab(self) -> Optional[CurrentTab]:
        return self.tracker.current_tab

    def submit(self, fn: Callable[..., Any], *args: Any) -> None:
        """Queue ``fn(*args)`` for the worker (or run it now when synchronous)."""
        if self._closed:
            return
        if self.synchronous:
            self._run_task(fn, args)
            return
        self._queue.put((fn, args))

    def _run_task(self, fn: Callable[..., Any], args: Any) -> None:
        try:
            fn(*args)
        except Exception as e:
            self.task_errors += 1
            logger.error(f"Error in session task {getattr(fn, '__name__', fn)}: {e}", exc_info=True)

    def _worker_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    break
                fn, args = item
                self._run_task(fn, args)
            finally:
                self._queue.task_done()

    def _on_port_changed(self, old: Any, new: Any) -> None:
        # May fire on the settings observer thread; the switch runs on the worker.
        self.submit(self._switch_port, new)

    def _switch_port(self, port: int) -> None:
        self.client.set_port(port)
        self.client.probe()

    def send_activity(self, tab: CurrentTab) -> bool:
        record = ActivityRecord(
            url=tab.url,
            title=tab.title,
            timestamp=utc_timestamp(),
            browser=self.browser_name,
        )
        return self.client.send_activity(record)

    def send_context(self, context: PageContext) -> bool:
        return self.client.send_context(context)

    def handle_message(self, raw: Any, respond: Respond) -> None:
        """Queue a control message; ``respond`` is called from the worker."""
        self.submit(self.control.handle, raw, respond)

    def start(self, watch_settings: bool = True) -> None:
        if self._started:
            return
        self._started = True
        if not self.synchronous:
            self._worker_thread = threading.Thread(
                target=self._worker_loop, name="BackgroundSessionWorker", daemon=True
            )
            self._worker_thread.start()
        if watch_settings:
            try:
                self.store.watch()
            except OSError as e:
                logger.warning(f"Could not watch settings file (external changes ignored): {e}")
        self.tracker.subscribe()
        self.submit(self.client.probe)
        if not self.synchronous:
            self.heartbeat.start()
        logger.info(f"Background session started (companion: {self.client.base_url})")

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued work to finish. Returns False on timeout."""
        if self.synchronous or self._worker_thread is None:
            return True
        if timeout is None:
            self._queue.join()
            return True
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def stop(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.heartbeat.stop()
        self.store.stop()
        if self._worker_thread is not None:
            self._queue.put(None)
            self._worker_thread.join(timeout=5.0)
            if self._worker_thread.is_alive():
                logger.warning("Session worker did not terminate within timeout.")
        self.client.close()
        logger.info("Background session stopped.")

    def get_statistics(self) -> Dict[str, Any]:
        last_send = self.client.last_send_time
        return {
            "connected": self.client.connected,
            "activities_sent": self.client.activities_sent,
            "contexts_sent": self.client.contexts_sent,
            "probes": self.client.probes,
            "auth_failures": self.client.auth_failures,
            "transport_errors": self.client.transport_errors,
            "heartbeats": self.heartbeat.heartbeats,
            "tabs_adopted": self.tracker.tabs_adopted,
            "task_errors": self.task_errors,
            "uptime": self.clock() - self.start_time,
            "last_send_age": None if last_send is None else self.clock() - last_send,
        }

    def __enter__(self) -> BackgroundSession:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_value: Any, traceback: Any) -> None:
        self.stop()

    def __repr__(self) -> str:
        return f"<BackgroundSession browser={self.browser_name} client={self.client!r}>"
