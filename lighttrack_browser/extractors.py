"""Per-domain context extractors.

Each extractor is a pure function of the page location and a minimal document
query capability. Hosts outside :data:`SUPPORTED_DOMAINS` short-circuit to
``None`` before the document is touched, which keeps scanning off every page
that is not a known work tool.

The recognised domains are fixed. GitLab, Azure DevOps and Bitbucket are
recognised but have no extractor registered, so they produce nothing until one
is added with :func:`register_extractor`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

from lighttrack_browser.models import ContextRecord, GithubContext, JiraContext

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "SUPPORTED_DOMAINS",
    "JIRA_SELECTORS",
    "Element",
    "PageLocation",
    "is_supported_host",
    "parse_leading_int",
    "extract_jira",
    "extract_github",
    "extract_context",
    "register_extractor",
]

SUPPORTED_DOMAINS = (
    "atlassian.net",  # JIRA Cloud
    "jira.",  # JIRA Server
    "github.com",
    "gitlab.com",
    "bitbucket.org",
    "azure.devops.com",
    "dev.azure.com",
)

JIRA_SELECTORS = (
    '[data-testid="issue.views.issue-base.foundation.breadcrumbs.breadcrumb-current-issue-container"]',
    ".issue-link",
    "[data-issue-key]",
)

_JIRA_PATH_RE = re.compile(r"/browse/([A-Z]+-\d+)", re.IGNORECASE)
_JIRA_SEARCH_RE = re.compile(r"selectedIssue=([A-Z]+-\d+)", re.IGNORECASE)
_JIRA_TEXT_RE = re.compile(r"[A-Z]+-\d+")
_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")


class Element(Protocol):
    """The slice of a DOM element the extractors read."""

    def get_attribute(self, name: str) -> Optional[str]: ...

    @property
    def text_content(self) -> Optional[str]: ...


DocumentQuery = Callable[[str], Optional[Element]]


@dataclass(frozen=True)
class PageLocation:
    hostname: str
    pathname: str = "/"
    search: str = ""


Extractor = Callable[[PageLocation, DocumentQuery], Optional[ContextRecord]]


@dataclass
class _DomainRule:
    name: str
    matches: Callable[[str], bool]
    extractor: Optional[Extractor] = None


def is_supported_host(hostname: str) -> bool:
    """Return True if ``hostname`` belongs to a recognised work tool."""
    if not hostname:
        return False
    host = hostname.lower()
    return any(domain in host for domain in SUPPORTED_DOMAINS)


def parse_leading_int(value: str) -> Optional[int]:
    """Parse the integer at the start of ``value`` (optional sign), or None."""
    match = _LEADING_INT_RE.match(value or "")
    return int(match.group(1)) if match else None


def _key_from_element(element: Element) -> Optional[str]:
    key = element.get_attribute("data-issue-key")
    if key:
        return key
    text = element.text_content or ""
    match = _JIRA_TEXT_RE.search(text)
    return match.group(0) if match else None


def extract_jira(location: PageLocation, query: DocumentQuery) -> Optional[ContextRecord]:
    """Find the JIRA issue key for the page.

    The URL is tried first (``/browse/KEY`` then ``selectedIssue=KEY``); the
    document is only queried when neither matches.
    """
    match = _JIRA_PATH_RE.search(location.pathname) or _JIRA_SEARCH_RE.search(location.search)
    if match:
        return JiraContext.from_key(match.group(1))

    element = None
    for selector in JIRA_SELECTORS:
        element = query(selector)
        if element is not None:
            break
    if element is None:
        return None

    key = _key_from_element(element)
    if not key:
        return None
    return JiraContext.from_key(key)


def extract_github(location: PageLocation, query: DocumentQuery) -> Optional[ContextRecord]:
    """Read ``/owner/repo/(issues|pull)/N`` from the path. Plain repo pages yield nothing."""
    parts = location.pathname.split("/")
    if len(parts) < 5 or parts[3] not in ("issues", "pull"):
        return None
    number = parse_leading_int(parts[4])
    if number is None:
        return None
    kind = "pull" if parts[3] == "pull" else "issue"
    return GithubContext(owner=parts[1], repo=parts[2], type=kind, number=number)


_RULES: List[_DomainRule] = [
    _DomainRule("jira", lambda host: "atlassian.net" in host or "jira" in host, extract_jira),
    _DomainRule("github", lambda host: host == "github.com", extract_github),
    _DomainRule("gitlab", lambda host: "gitlab" in host),
    _DomainRule("azure", lambda host: "dev.azure.com" in host or "azure.devops" in host),
    _DomainRule("bitbucket", lambda host: "bitbucket.org" in host),
]


def register_extractor(name: str, extractor: Optional[Extractor]) -> Optional[Extractor]:
    """Attach ``extractor`` to the recognised domain ``name``.

    Returns the extractor previously attached, so callers can restore it.

    Raises:
        KeyError: If ``name`` is not one of the recognised domains.
    """
    for rule in _RULES:
        if rule.name == name:
            previous = rule.extractor
            rule.extractor = extractor
            logger.debug("Registered context extractor for %s", name)
            return previous
    raise KeyError(f"Unknown domain: {name}")


def extract_context(location: PageLocation, query: DocumentQuery) -> Optional[ContextRecord]:
    """Run the first applicable extractor for ``location``."""
    host = (location.hostname or "").lower()
    if not is_supported_host(host):
        return None

    for rule in _RULES:
        if not rule.matches(host):
            continue
        if rule.extractor is None:
            continue
        record = rule.extractor(location, query)
        if record is not None:
            return record
    return None
