"""Control surface: the message endpoint used by the popup and page scripts.

Messages are tagged by ``action`` and parsed into a closed set of types.
Unknown actions parse to ``None`` and are answered with nothing at all.

| action            | response                                          |
|-------------------|---------------------------------------------------|
| ``getStatus``     | ``{connected, currentTab}``                       |
| ``checkConnection``| ``{connected}`` after a fresh probe              |
| ``pageContext``   | ``{received: true}``; valid payloads are forwarded |
| ``getPort``       | ``{port}``                                        |
| ``setPort``       | ``{saved, port}`` or ``{saved: false, error}``    |
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Optional, Union
from urllib.parse import urlsplit

from lighttrack_browser.extractors import parse_leading_int
from lighttrack_browser.models import GithubContext, JiraContext, PageContext

if TYPE_CHECKING:
    from lighttrack_browser.session import BackgroundSession

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

INVALID_PORT_MESSAGE = "Invalid port (1024-65535)"
SAVE_FAILED_MESSAGE = "Could not save settings"

Respond = Callable[[Dict[str, Any]], None]


@dataclass(frozen=True)
class GetStatus:
    pass


@dataclass(frozen=True)
class CheckConnection:
    pass


@dataclass(frozen=True)
class PageContextMessage:
    data: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GetPort:
    pass


@dataclass(frozen=True)
class SetPort:
    port: Any = None


Message = Union[GetStatus, CheckConnection, PageContextMessage, GetPort, SetPort]


def parse_message(raw: Any) -> Optional[Message]:
    """Map a raw ``{"action": ...}`` record onto a message type, or None."""
    if not isinstance(raw, Mapping):
        return None
    action = raw.get("action")
    if action == "getStatus":
        return GetStatus()
    if action == "checkConnection":
        return CheckConnection()
    if action == "pageContext":
        data = raw.get("data")
        return PageContextMessage(data=data if isinstance(data, Mapping) else {})
    if action == "getPort":
        return GetPort()
    if action == "setPort":
        return SetPort(port=raw.get("port"))
    return None


def normalize_page_payload(data: Mapping[str, Any]) -> Optional[PageContext]:
    """Turn a raw page payload into a typed context, or None to suppress it.

    ``tickets`` (non-empty list of strings) wins over ``githubIssue``. A GitHub
    payload needs a URL whose path names an owner and repository.
    """
    url = data.get("url")
    if not isinstance(url, str) or not url:
        return None
    title = data.get("title") if isinstance(data.get("title"), str) else None

    tickets = data.get("tickets")
    if isinstance(tickets, list) and tickets and all(isinstance(t, str) and t for t in tickets):
        first = tickets[0]
        record = JiraContext(
            issue_key=first,
            project_key=first.split("-")[0],
            all_tickets=tuple(tickets),
        )
        return PageContext(url=url, record=record, title=title)

    issue = data.get("githubIssue")
    if isinstance(issue, str) and issue:
        try:
            parts = urlsplit(url).path.split("/")
        except ValueError:
            return None
        if len(parts) < 3 or not parts[1] or not parts[2]:
            return None
        number = parse_leading_int(issue.lstrip("#"))
        if number is None:
            return None
        kind = "pull" if data.get("githubType") == "pull" else "issue"
        record = GithubContext(owner=parts[1], repo=parts[2], type=kind, number=number)
        return PageContext(url=url, record=record, title=title)

    return None


class ControlSurface:
    """Answer control messages against a background session."""

    def __init__(self, session: BackgroundSession) -> None:
        self.session = session

    def handle(self, raw: Any, respond: Respond) -> bool:
        """Parse and dispatch ``raw``. Returns False if it was ignored."""
        message = parse_message(raw)
        if message is None:
            if logger.isEnabledFor(logging.DEBUG):
                action = raw.get("action") if isinstance(raw, Mapping) else None
                logger.debug(f"Ignoring unknown control action: {action!r}")
            return False
        self.dispatch(message, respond)
        return True

    def dispatch(self, message: Message, respond: Respond) -> None:
        session = self.session
        if isinstance(message, GetStatus):
            tab = session.current_tab
            respond({
                "connected": session.client.connected,
                "currentTab": tab.to_dict() if tab else None,
            })
        elif isinstance(message, CheckConnection):
            respond({"connected": session.client.probe()})
        elif isinstance(message, PageContextMessage):
            respond({"received": True})
            context = normalize_page_payload(message.data)
            if context is not None:
                session.send_context(context)
            else:
                logger.debug("Page payload carried no recognised context")
        elif isinstance(message, GetPort):
            respond({"port": session.store.get("port")})
        elif isinstance(message, SetPort):
            try:
                session.store.set("port", message.port)
            except ValueError as e:
                logger.warning(f"Rejected port change: {e}")
                respond({"saved": False, "error": INVALID_PORT_MESSAGE})
                return
            except OSError as e:
                logger.error(f"Failed to save port {message.port}: {e}")
                respond({"saved": False, "error": SAVE_FAILED_MESSAGE})
                return
            respond({"saved": True, "port": session.store.get("port")})
