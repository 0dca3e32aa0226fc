"""Native messaging bridge between the browser shim and the background session.

Frames use the Chrome native messaging layout: a 4-byte length in native byte
order followed by that many bytes of UTF-8 JSON. Inbound frames are either
browser events::

    {"event": "tabActivated", "tabId": 7, "windowId": 1, "tab": {...}}
    {"event": "tabUpdated", "tabId": 7, "changeInfo": {"status": "complete"}, "tab": {...}}
    {"event": "focusChanged", "windowId": -1}
    {"event": "focusChanged", "windowId": 1, "activeTab": {...}}
    {"event": "tabRemoved", "tabId": 7}
    {"event": "pageLoaded", "tabId": 7, "loadId": "...", "url": "...", "title": "...",
     "elements": {"<selector>": {"attributes": {...}, "text": "..."}}}

or control messages (``{"action": ..., "requestId": ...}``), whose responses are
written back as ``{"requestId": ..., "response": {...}}``.
"""

from __future__ import annotations

import json
import logging
import struct
import threading
from dataclasses import replace
from typing import TYPE_CHECKING, Any, BinaryIO, Dict, List, Optional, Tuple

from lighttrack_browser.browser import (
    WINDOW_ID_NONE,
    BrowserEvents,
    FocusChangedListener,
    TabActivatedListener,
    TabUpdatedListener,
)
from lighttrack_browser.models import Tab
from lighttrack_browser.page import PageObserver, snapshot_query

if TYPE_CHECKING:
    from lighttrack_browser.session import BackgroundSession

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

_HEADER = struct.Struct("=I")
MAX_MESSAGE_BYTES = 1024 * 1024


class NativeMessagingError(ValueError):
    """A frame could not be decoded."""


class TruncatedFrameError(NativeMessagingError):
    """The stream ended in the middle of a frame."""


def encode_message(message: Dict[str, Any]) -> bytes:
    body = json.dumps(message, separators=(",", ":")).encode("utf-8")
    return _HEADER.pack(len(body)) + body


class NativeMessagingBridge(BrowserEvents):
    """Browser runtime backed by framed messages on a pair of byte streams.

    Attributes:
        reader (BinaryIO): Inbound stream (stdin of the host process).
        writer (BinaryIO): Outbound stream (stdout of the host process).
    """

    def __init__(self, reader: BinaryIO, writer: BinaryIO) -> None:
        self.reader = reader
        self.writer = writer
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._tabs: Dict[int, Tab] = {}
        self._activated: List[TabActivatedListener] = []
        self._updated: List[TabUpdatedListener] = []
        self._focus: List[FocusChangedListener] = []
        self._page_loads: Dict[int, Tuple[Any, PageObserver]] = {}
        self.frames_received = 0
        self.frames_rejected = 0

    # BrowserEvents

    def on_tab_activated(self, listener: TabActivatedListener) -> None:
        self._activated.append(listener)

    def on_tab_updated(self, listener: TabUpdatedListener) -> None:
        self._updated.append(listener)

    def on_focus_changed(self, listener: FocusChangedListener) -> None:
        self._focus.append(listener)

    def get_tab(self, tab_id: int) -> Optional[Tab]:
        with self._lock:
            return self._tabs.get(tab_id)

    def query_active_tab(self, window_id: int) -> Optional[Tab]:
        with self._lock:
            for tab in self._tabs.values():
                if tab.active and tab.window_id == window_id:
                    return tab
        return None

    # Framing

    def read_message(self) -> Optional[Dict[str, Any]]:
        """Read one frame. Returns None at end of stream.

        Raises:
            NativeMessagingError: If the frame is oversized, truncated or not a JSON object.
        """
        header = self.reader.read(_HEADER.size)
        if not header:
            return None
        if len(header) < _HEADER.size:
            raise TruncatedFrameError("Truncated frame header")
        (length,) = _HEADER.unpack(header)
        if length > MAX_MESSAGE_BYTES:
            # Drain the oversized body so the stream stays aligned.
            remaining = length
            while remaining > 0:
                chunk = self.reader.read(min(remaining, 65536))
                if not chunk:
                    break
                remaining -= len(chunk)
            raise NativeMessagingError(f"Frame too large ({length} bytes)")
        body = self.reader.read(length)
        if len(body) < length:
            raise TruncatedFrameError("Truncated frame body")
        try:
            message = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise NativeMessagingError(f"Malformed frame: {e}") from e
        if not isinstance(message, dict):
            raise NativeMessagingError("Frame is not a JSON object")
        return message

    def write_message(self, message: Dict[str, Any]) -> None:
        data = encode_message(message)
        with self._write_lock:
            self.writer.write(data)
            self.writer.flush()

    # Dispatch

    def _remember(self, raw: Any) -> Optional[Tab]:
        if not isinstance(raw, dict) or "id" not in raw:
            return None
        try:
            tab = Tab.from_dict(raw)
        except (TypeError, ValueError) as e:
            logger.debug(f"Ignoring malformed tab snapshot: {e}")
            return None
        with self._lock:
            if tab.active and tab.window_id is not None:
                # Only one active tab per window.
                for other_id, other in list(self._tabs.items()):
                    if other_id != tab.id and other.active and other.window_id == tab.window_id:
                        self._tabs[other_id] = replace(other, active=False)
            self._tabs[tab.id] = tab
        return tab

    def _handle_event(self, frame: Dict[str, Any], session: BackgroundSession) -> None:
        event = frame.get("event")
        if event == "tabActivated":
            tab_id = int(frame["tabId"])
            window_id = frame.get("windowId")
            if not self._remember(frame.get("tab")):
                with self._lock:
                    known = self._tabs.get(tab_id)
                    if known is not None:
                        self._tabs[tab_id] = replace(
                            known, active=True, window_id=known.window_id if window_id is None else window_id
                        )
            for listener in list(self._activated):
                listener(tab_id, window_id)
        elif event == "tabUpdated":
            tab = self._remember(frame.get("tab"))
            if tab is None:
                logger.debug("tabUpdated without a tab snapshot, ignoring")
                return
            change_info = frame.get("changeInfo") or {}
            for updated in list(self._updated):
                updated(int(frame.get("tabId", tab.id)), dict(change_info), tab)
        elif event == "focusChanged":
            window_id = int(frame.get("windowId", WINDOW_ID_NONE))
            self._remember(frame.get("activeTab"))
            for focus in list(self._focus):
                focus(window_id)
        elif event == "tabRemoved":
            tab_id = int(frame["tabId"])
            with self._lock:
                self._tabs.pop(tab_id, None)
                self._page_loads.pop(tab_id, None)
        elif event == "pageLoaded":
            self._handle_page_loaded(frame, session)
        else:
            logger.debug(f"Ignoring unknown browser event: {event!r}")

    def _handle_page_loaded(self, frame: Dict[str, Any], session: BackgroundSession) -> None:
        url = frame.get("url")
        if not isinstance(url, str) or not url:
            return
        tab_id = int(frame["tabId"])
        load_id = frame.get("loadId")
        query = snapshot_query(frame.get("elements"))

        with self._lock:
            entry = self._page_loads.get(tab_id)
            if entry is not None and entry[0] == load_id and load_id is not None:
                observer = entry[1]
                observer.query = query
            else:
                observer = PageObserver(
                    url=url,
                    title=frame.get("title"),
                    query=query,
                    send_message=lambda message: session.handle_message(message, lambda response: None),
                )
                self._page_loads[tab_id] = (load_id, observer)
        observer.observe()

    def handle_frame(self, frame: Dict[str, Any], session: BackgroundSession) -> None:
        self.frames_received += 1
        if "action" in frame:
            request_id = frame.get("requestId")

            def respond(response: Dict[str, Any]) -> None:
                try:
                    self.write_message({"requestId": request_id, "response": response})
                except (OSError, ValueError) as e:
                    logger.error(f"Failed to write response: {e}")

            session.handle_message(frame, respond)
            return
        if "event" in frame:
            try:
                self._handle_event(frame, session)
            except (KeyError, TypeError, ValueError) as e:
                self.frames_rejected += 1
                logger.warning(f"Malformed {frame.get('event')} event: {e}")
            return
        self.frames_rejected += 1
        logger.debug("Ignoring frame with neither action nor event")

    def run(self, session: BackgroundSession) -> None:
        """Read frames until end of stream."""
        while True:
            try:
                frame = self.read_message()
            except TruncatedFrameError as e:
                self.frames_rejected += 1
                logger.warning(f"Native messaging channel ended mid-frame: {e}")
                break
            except NativeMessagingError as e:
                self.frames_rejected += 1
                logger.warning(f"Skipping frame: {e}")
                continue
            if frame is None:
                logger.info("Browser closed the native messaging channel.")
                break
            self.handle_frame(frame, session)

    def __repr__(self) -> str:
        return f"<NativeMessagingBridge tabs={len(self._tabs)} frames={self.frames_received}>"
