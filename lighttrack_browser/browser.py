"""Browser runtime abstraction consumed by the tab tracker.

A runtime delivers three event streams (tab activated, tab updated, window
focus changed) and resolves tabs on request. The native messaging bridge is
the production implementation; tests replay event sequences through a fake.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from lighttrack_browser.models import Tab

WINDOW_ID_NONE = -1

TabActivatedListener = Callable[[int, Optional[int]], None]
TabUpdatedListener = Callable[[int, Dict[str, Any], Tab], None]
FocusChangedListener = Callable[[int], None]


class BrowserEvents(ABC):
    """Event source and tab lookup for a browser."""

    @abstractmethod
    def on_tab_activated(self, listener: TabActivatedListener) -> None:
        """Subscribe ``listener(tab_id, window_id)``."""

    @abstractmethod
    def on_tab_updated(self, listener: TabUpdatedListener) -> None:
        """Subscribe ``listener(tab_id, change_info, tab)``."""

    @abstractmethod
    def on_focus_changed(self, listener: FocusChangedListener) -> None:
        """Subscribe ``listener(window_id)``; ``WINDOW_ID_NONE`` means no browser window has focus."""

    @abstractmethod
    def get_tab(self, tab_id: int) -> Optional[Tab]:
        """Resolve a tab by id, or None if it is unknown."""

    @abstractmethod
    def query_active_tab(self, window_id: int) -> Optional[Tab]:
        """Return the active tab of ``window_id``, or None."""
