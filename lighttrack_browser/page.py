"""Page-side observer: one context emission per page load."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlsplit

from lighttrack_browser.extractors import (
    DocumentQuery,
    Element,
    PageLocation,
    extract_context,
    is_supported_host,
)
from lighttrack_browser.models import ContextRecord, GithubContext, JiraContext

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

SendMessage = Callable[[Dict[str, Any]], None]


@dataclass(frozen=True)
class SnapshotElement:
    """Element captured by the page shim: attributes plus visible text."""

    attributes: Mapping[str, str] = field(default_factory=dict)
    text: Optional[str] = None

    def get_attribute(self, name: str) -> Optional[str]:
        return self.attributes.get(name)

    @property
    def text_content(self) -> Optional[str]:
        return self.text


def snapshot_query(elements: Optional[Mapping[str, Any]]) -> DocumentQuery:
    """Build a document query over a ``{selector: {"attributes", "text"}}`` mapping."""
    table: Dict[str, Element] = {}
    for selector, raw in (elements or {}).items():
        if not isinstance(raw, Mapping):
            continue
        attributes = raw.get("attributes") or {}
        if not isinstance(attributes, Mapping):
            attributes = {}
        text = raw.get("text")
        table[str(selector)] = SnapshotElement(
            attributes={str(k): str(v) for k, v in attributes.items()},
            text=text if isinstance(text, str) else None,
        )
    return table.get


def to_page_payload(record: ContextRecord) -> Dict[str, Any]:
    """Render a context record in the raw shape the background expects."""
    if isinstance(record, JiraContext):
        return {"tickets": list(record.all_tickets) or [record.issue_key]}
    if isinstance(record, GithubContext):
        return {
            "githubIssue": f"#{record.number}",
            "githubRepo": f"{record.owner}/{record.repo}",
            "githubType": "pull" if record.type == "pull" else "issues",
        }
    raise TypeError(f"Unsupported context record: {type(record).__name__}")


class PageObserver:
    """Runs the applicable extractor for a single document.

    Attributes:
        url (str): ``window.location.href`` of the page.
        title (str): ``document.title`` of the page.
        context_sent (bool): Whether this page load already emitted a record.
    """

    def __init__(
        self,
        url: str,
        title: Optional[str],
        query: DocumentQuery,
        send_message: SendMessage,
    ) -> None:
        self.url = url
        self.title = title or ""
        self.query = query
        self.send_message = send_message
        self.context_sent = False

    def location(self) -> PageLocation:
        parts = urlsplit(self.url)
        search = f"?{parts.query}" if parts.query else ""
        return PageLocation(hostname=parts.hostname or "", pathname=parts.path or "/", search=search)

    def observe(self) -> Optional[ContextRecord]:
        """Extract and forward the page's context record, at most once."""
        if self.context_sent:
            return None

        location = self.location()
        if not is_supported_host(location.hostname):
            return None

        record = extract_context(location, self.query)
        if record is None:
            return None

        self.context_sent = True
        payload = to_page_payload(record)
        payload["url"] = self.url
        payload["title"] = self.title
        logger.debug("Page context on %s: %s", location.hostname, payload)
        self.send_message({"action": "pageContext", "data": payload})
        return record

    def __repr__(self) -> str:
        return f"<PageObserver url={self.url!r} sent={self.context_sent}>"
