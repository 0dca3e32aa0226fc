from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional
from unittest.mock import MagicMock, patch
import tempfile

import pytest
import requests

from lighttrack_browser.browser import (
    BrowserEvents,
    FocusChangedListener,
    TabActivatedListener,
    TabUpdatedListener,
)
from lighttrack_browser.client import CompanionClient
from lighttrack_browser.config import Config
from lighttrack_browser.models import Tab
from lighttrack_browser.session import BackgroundSession
from lighttrack_browser.store import ConfigStore


class FakeBrowser(BrowserEvents):
    """Browser runtime that replays events synchronously."""

    def __init__(self) -> None:
        self.tabs: Dict[int, Tab] = {}
        self.activated: List[TabActivatedListener] = []
        self.updated: List[TabUpdatedListener] = []
        self.focus: List[FocusChangedListener] = []

    def on_tab_activated(self, listener: TabActivatedListener) -> None:
        self.activated.append(listener)

    def on_tab_updated(self, listener: TabUpdatedListener) -> None:
        self.updated.append(listener)

    def on_focus_changed(self, listener: FocusChangedListener) -> None:
        self.focus.append(listener)

    def get_tab(self, tab_id: int) -> Optional[Tab]:
        return self.tabs.get(tab_id)

    def query_active_tab(self, window_id: int) -> Optional[Tab]:
        for tab in self.tabs.values():
            if tab.active and tab.window_id == window_id:
                return tab
        return None

    def add_tab(self, tab_id: int, url: Optional[str], title: Optional[str] = None,
                active: bool = True, window_id: int = 1) -> Tab:
        tab = Tab(id=tab_id, url=url, title=title, active=active, window_id=window_id)
        self.tabs[tab_id] = tab
        return tab

    def activate(self, tab_id: int, url: Optional[str], title: Optional[str] = None, window_id: int = 1) -> None:
        self.add_tab(tab_id, url, title, active=True, window_id=window_id)
        for listener in list(self.activated):
            listener(tab_id, window_id)

    def complete(self, tab_id: int, url: Optional[str], title: Optional[str] = None,
                 active: bool = True, window_id: int = 1) -> None:
        tab = self.add_tab(tab_id, url, title, active=active, window_id=window_id)
        for listener in list(self.updated):
            listener(tab_id, {"status": "complete"}, tab)

    def focus_window(self, window_id: int) -> None:
        for listener in list(self.focus):
            listener(window_id)


def make_response(status_code: int = 200, payload: Any = None) -> MagicMock:
    """Build a requests-like response mock."""
    response = MagicMock()
    response.status_code = status_code
    if payload is None:
        response.json.side_effect = ValueError("No JSON body")
    else:
        response.json.return_value = payload
    return response


class Clock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Fixture for a temporary directory using tempfile.TemporaryDirectory."""
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def fake_browser() -> FakeBrowser:
    return FakeBrowser()


@pytest.fixture
def mock_http() -> MagicMock:
    """Mock requests.Session: /status answers {"token": "abc"}, POSTs answer 200."""
    session = MagicMock(spec=requests.Session)
    session.get.return_value = make_response(200, {"token": "abc"})
    session.post.return_value = make_response(200, {"ok": True})
    return session


@pytest.fixture
def settings_store(temp_dir: Path) -> ConfigStore:
    return ConfigStore(temp_dir / "settings.json")


@pytest.fixture
def companion_client(mock_http: MagicMock, clock: Clock) -> CompanionClient:
    return CompanionClient(port=41417, session=mock_http, clock=clock)


@pytest.fixture
def session(
    settings_store: ConfigStore,
    fake_browser: FakeBrowser,
    companion_client: CompanionClient,
    clock: Clock,
) -> Generator[BackgroundSession, None, None]:
    """Synchronous background session wired to the fake browser and mock HTTP."""
    bg = BackgroundSession(
        store=settings_store,
        browser=fake_browser,
        client=companion_client,
        synchronous=True,
        clock=clock,
    )
    bg.start(watch_settings=False)
    yield bg
    bg.stop()


@pytest.fixture
def mock_config(temp_dir: Path) -> Config:
    """Fixture for a default Config object."""
    return Config(
        port=None,
        settings_path=str(temp_dir / "settings.json"),
        testing=True,
        log_file=None,
        log_level="INFO",
        heartbeat_interval=30.0,
        browser=None,
        user_agent=None,
        host="localhost",
    )


@pytest.fixture
def mock_observer() -> Generator[MagicMock, None, None]:
    """Fixture for mocking the watchdog Observer."""
    with patch("lighttrack_browser.store.Observer") as mock:
        yield mock


@pytest.fixture
def mock_signal() -> Generator[MagicMock, None, None]:
    """Fixture for mocking signal.signal."""
    with patch("signal.signal") as mock:
        yield mock


@pytest.fixture
def cli_args(monkeypatch: pytest.MonkeyPatch) -> Callable[[List[str]], None]:
    """Fixture to mock command line arguments."""
    def _set_args(args: List[str]) -> None:
        monkeypatch.setattr("sys.argv", ["lighttrack-browser"] + args)
    return _set_args


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, temp_dir: Path) -> None:
    """Keep LIGHTTRACK_* variables and user config files out of tests."""
    import os
    for key in list(os.environ):
        if key.startswith("LIGHTTRACK_") or key == "CRITICAL_UPDATE":
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(temp_dir / "xdg"))
    monkeypatch.chdir(temp_dir)
