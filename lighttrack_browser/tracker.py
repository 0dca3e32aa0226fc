"""Tab/window tracker maintaining the current tab.

State machine:
    - tab activated: resolve the tab; adopt it if its URL is usable.
    - tab updated to ``complete`` while active: adopt it if usable.
    - focus lost (``WINDOW_ID_NONE``): clear the current tab, send nothing.
    - focus gained: adopt the focused window's active tab if usable.

A tab with a missing, empty or browser-internal URL leaves the current tab
untouched, so the last real page survives a brief visit to an internal page.
Activity is sent every time a tab is adopted.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional

from lighttrack_browser.browser import WINDOW_ID_NONE, BrowserEvents
from lighttrack_browser.models import CurrentTab, Tab, is_usable_url

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

Schedule = Callable[..., None]


def _run_now(fn: Callable[..., Any], *args: Any) -> None:
    fn(*args)


class TabTracker:
    """Follow the tab the user is looking at.

    Attributes:
        browser (BrowserEvents): Event source and tab lookup.
        send_activity (Callable[[CurrentTab], None]): Called whenever a tab is adopted.
        current_tab (Optional[CurrentTab]): The tab being viewed, or None.
    """

    def __init__(
        self,
        browser: BrowserEvents,
        send_activity: Callable[[CurrentTab], None],
        schedule: Schedule = _run_now,
    ) -> None:
        self.browser = browser
        self.send_activity = send_activity
        self.schedule = schedule
        self._lock = threading.Lock()
        self._current_tab: Optional[CurrentTab] = None
        self.tabs_adopted = 0

    @property
    def current_tab(self) -> Optional[CurrentTab]:
        with self._lock:
            return self._current_tab

    def subscribe(self) -> None:
        """Register with the browser. Handlers run through ``schedule``."""
        self.browser.on_tab_activated(lambda tab_id, window_id=None: self.schedule(self.handle_tab_activated, tab_id))
        self.browser.on_tab_updated(lambda tab_id, change, tab: self.schedule(self.handle_tab_updated, tab_id, change, tab))
        self.browser.on_focus_changed(lambda window_id: self.schedule(self.handle_focus_changed, window_id))

    def _adopt(self, tab: Optional[Tab]) -> bool:
        if tab is None or not is_usable_url(tab.url):
            if tab is not None and logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"Ignoring tab {tab.id} with untracked URL")
            return False

        current = CurrentTab.from_tab(tab)
        with self._lock:
            self._current_tab = current
            self.tabs_adopted += 1
        logger.info(f"Now tracking tab {current.id}")
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Tab {current.id}: {current.title} ({current.url})")
        self.send_activity(current)
        return True

    def handle_tab_activated(self, tab_id: int) -> None:
        self._adopt(self.browser.get_tab(tab_id))

    def handle_tab_updated(self, tab_id: int, change_info: Dict[str, Any], tab: Tab) -> None:
        if change_info.get("status") != "complete" or not tab.active:
            return
        self._adopt(tab)

    def handle_focus_changed(self, window_id: int) -> None:
        if window_id == WINDOW_ID_NONE:
            with self._lock:
                had_tab = self._current_tab is not None
                self._current_tab = None
            if had_tab:
                logger.info("Browser lost focus. Tracking paused.")
            return
        self._adopt(self.browser.query_active_tab(window_id))

    def __repr__(self) -> str:
        return f"<TabTracker current={self.current_tab}>"
