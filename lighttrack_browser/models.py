"""Value types shared by the background session and the page observer."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Union

# Browser-internal pages never become the current tab.
INTERNAL_SCHEMES: Tuple[str, ...] = (
    "chrome://",
    "chrome-extension://",
    "chrome-search://",
    "devtools://",
    "edge://",
    "brave://",
    "opera://",
    "vivaldi://",
    "moz-extension://",
    "about:",
    "view-source:",
)

DEFAULT_TAB_TITLE = "Loading..."


def is_usable_url(url: Optional[str]) -> bool:
    """Return True if ``url`` may be tracked (present and not browser-internal)."""
    if not url or not isinstance(url, str):
        return False
    return not url.lower().startswith(INTERNAL_SCHEMES)


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """Format an ISO-8601 UTC timestamp with millisecond precision and a ``Z`` suffix."""
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    current = current.astimezone(timezone.utc)
    return current.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class Tab:
    """Snapshot of a browser tab as reported by the runtime."""

    id: int
    url: Optional[str]
    title: Optional[str] = None
    active: bool = False
    window_id: Optional[int] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> Tab:
        return cls(
            id=int(raw["id"]),
            url=raw.get("url"),
            title=raw.get("title"),
            active=bool(raw.get("active", False)),
            window_id=raw.get("windowId"),
        )


@dataclass(frozen=True)
class CurrentTab:
    id: int
    url: str
    title: str

    @classmethod
    def from_tab(cls, tab: Tab) -> CurrentTab:
        return cls(id=tab.id, url=tab.url or "", title=tab.title or DEFAULT_TAB_TITLE)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "url": self.url, "title": self.title}


@dataclass(frozen=True)
class ConnectionState:
    """Connection to the companion. A token is only held while connected."""

    connected: bool = False
    token: Optional[str] = None

    def __post_init__(self) -> None:
        if self.token is not None and not self.connected:
            raise ValueError("token requires a connected state")

    @property
    def usable(self) -> bool:
        return self.connected and bool(self.token)


DISCONNECTED = ConnectionState()


@dataclass(frozen=True)
class ActivityRecord:
    url: str
    title: str
    timestamp: str
    browser: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "title": self.title,
            "timestamp": self.timestamp,
            "browser": self.browser,
        }


@dataclass(frozen=True)
class JiraContext:
    issue_key: str
    project_key: str
    all_tickets: Tuple[str, ...] = ()

    kind = "jira"

    @classmethod
    def from_key(cls, key: str) -> JiraContext:
        key = key.upper()
        return cls(issue_key=key, project_key=key.split("-")[0], all_tickets=(key,))

    def data(self) -> Dict[str, Any]:
        return {
            "issueKey": self.issue_key,
            "projectKey": self.project_key,
            "allTickets": list(self.all_tickets),
        }


@dataclass(frozen=True)
class GithubContext:
    owner: str
    repo: str
    type: str  # "issue" | "pull"
    number: int

    kind = "github"

    def data(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "repo": self.repo,
            "type": self.type,
            "number": self.number,
        }


ContextRecord = Union[JiraContext, GithubContext]


@dataclass(frozen=True)
class PageContext:
    """A context record paired with the page it was found on."""

    url: str
    record: ContextRecord
    title: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "type": self.record.kind, "data": self.record.data()}

