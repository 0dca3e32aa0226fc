"""Loopback HTTP client for the LightTrack desktop companion."""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from lighttrack_browser.models import DISCONNECTED, ActivityRecord, ConnectionState, PageContext

try:
    import orjson
except ImportError:
    orjson = None  # type: ignore

if orjson:
    json_dumps = orjson.dumps
else:
    json_dumps = json.dumps

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["CompanionClient", "MockCompanionSession", "LOOPBACK_HOSTS"]

LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}

STATUS_PATH = "/status"
ACTIVITY_PATH = "/browser-activity"
CONTEXT_PATH = "/page-context"

CONNECTION_WARNING_INTERVAL = 60.0


class _MockResponse:
    def __init__(self, status_code: int, payload: Any = None) -> None:
        self.status_code = status_code
        self._payload = payload

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class MockCompanionSession:
    """In-process stand-in for the companion, used in testing mode."""

    def __init__(self, token: str = "testing-token") -> None:
        self.token = token
        self.requests: List[Dict[str, Any]] = []
        self.posts: List[Dict[str, Any]] = []

    def get(self, url: str, **kwargs: Any) -> _MockResponse:
        self.requests.append({"method": "GET", "url": url})
        if url.endswith(STATUS_PATH):
            return _MockResponse(200, {"token": self.token})
        return _MockResponse(404)

    def post(self, url: str, data: Any = None, headers: Optional[Dict[str, str]] = None, **kwargs: Any) -> _MockResponse:
        self.requests.append({"method": "POST", "url": url})
        if (headers or {}).get("Authorization") != f"Bearer {self.token}":
            return _MockResponse(401)
        body = json.loads(data) if data else None
        self.posts.append({"url": url, "body": body})
        logger.info("[MOCK] POST %s: %s", url, body)
        return _MockResponse(200, {"ok": True})

    def close(self) -> None:
        pass


class CompanionClient:
    """Probe, authenticate against and post to the companion.

    Delivery is at-most-once per call: nothing is queued and the only retry is
    the single re-probe after a 401. Failures never raise to the caller; they
    are reflected in :attr:`state`.

    Attributes:
        host (str): Loopback host name of the companion.
        port (int): Companion port, replaced through :meth:`set_port`.
        last_send_time (Optional[float]): Clock reading of the last accepted activity post.
    """

    def __init__(
        self,
        port: int,
        host: str = "localhost",
        session: Optional[Any] = None,
        testing: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if host not in LOOPBACK_HOSTS:
            raise ValueError(f"Companion host must be a loopback address, got {host!r}")
        self.host = host
        self.port = int(port)
        self.testing = testing
        self.clock = clock

        self._lock = threading.Lock()
        self._state: ConnectionState = DISCONNECTED
        self._generation = 0
        self.last_send_time: Optional[float] = None
        self.last_connection_error_log_time: Optional[float] = None

        self.probes = 0
        self.activities_sent = 0
        self.contexts_sent = 0
        self.auth_failures = 0
        self.transport_errors = 0

        self.session: Any
        if session is not None:
            self.session = session
        elif testing:
            self.session = MockCompanionSession()
        else:
            self.session = requests.Session()

        logger.info("CompanionClient initialized for %s (loopback only)", self.base_url)

    @property
    def base_url(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"http://{host}:{self.port}"

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def connected(self) -> bool:
        return self.state.connected

    def _set_state(self, state: ConnectionState, generation: Optional[int] = None) -> bool:
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            self._state = state
            return True

    def reset(self) -> None:
        """Forget the connection so the next send re-probes."""
        with self._lock:
            self._generation += 1
            self._state = DISCONNECTED

    def set_port(self, port: int) -> None:
        """Point the client at ``port`` and invalidate the connection in one step."""
        with self._lock:
            self.port = int(port)
            self._generation += 1
            self._state = DISCONNECTED
        logger.info("Companion endpoint changed to %s", self.base_url)

    def _log_unreachable(self, error: Exception) -> None:
        now = time.monotonic()
        last = self.last_connection_error_log_time
        if last is None or now - last > CONNECTION_WARNING_INTERVAL:
            logger.warning("Companion unreachable at %s: %s", self.base_url, error)
            self.last_connection_error_log_time = now
        else:
            logger.debug("Companion unreachable at %s: %s", self.base_url, error)

    def probe(self) -> bool:
        """GET ``/status`` and adopt the returned token.

        Returns:
            bool: True if the companion answered 2xx with a JSON object body.
        """
        with self._lock:
            generation = self._generation
            url = f"{self.base_url}{STATUS_PATH}"
        self.probes += 1

        try:
            response = self.session.get(url)
        except requests.RequestException as e:
            self.transport_errors += 1
            self._log_unreachable(e)
            self._set_state(DISCONNECTED, generation)
            return False

        if not 200 <= response.status_code < 300:
            logger.debug("Companion status check returned HTTP %s", response.status_code)
            self._set_state(DISCONNECTED, generation)
            return False

        try:
            body = response.json()
        except ValueError as e:
            logger.warning("Malformed status response from companion: %s", e)
            self._set_state(DISCONNECTED, generation)
            return False

        if not isinstance(body, dict):
            logger.warning("Malformed status response from companion: not a JSON object")
            self._set_state(DISCONNECTED, generation)
            return False

        token = body.get("token")
        if not isinstance(token, str) or not token:
            token = None

        was_connected = self.connected
        if not self._set_state(ConnectionState(connected=True, token=token), generation):
            logger.debug("Discarding status response for a superseded endpoint")
            return False
        if not was_connected:
            logger.info("Connected to companion at %s", self.base_url)
        return True

    def _endpoint(self) -> Optional[Tuple[str, str, int]]:
        """Snapshot (token, base_url, generation) if the connection is usable."""
        with self._lock:
            if not self._state.usable:
                return None
            return self._state.token, self.base_url, self._generation  # type: ignore[return-value]

    def _ensure_token(self) -> Optional[Tuple[str, str, int]]:
        endpoint = self._endpoint()
        if endpoint is not None:
            return endpoint
        self.probe()
        return self._endpoint()

    def _post(self, path: str, payload: Dict[str, Any]) -> bool:
        endpoint = self._ensure_token()
        if endpoint is None:
            logger.debug("Companion not usable, dropping %s payload", path)
            return False
        token, base_url, generation = endpoint

        with self._lock:
            superseded = generation != self._generation
        if superseded:
            logger.debug("Companion endpoint changed, dropping %s payload", path)
            return False

        url = f"{base_url}{path}"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
        }
        try:
            response = self.session.post(url, data=json_dumps(payload), headers=headers)
        except requests.RequestException as e:
            self.transport_errors += 1
            self._log_unreachable(e)
            self.reset()
            return False
        except (TypeError, ValueError) as e:
            logger.error("Failed to serialize %s payload: %s", path, e)
            return False

        if response.status_code == 401:
            self.auth_failures += 1
            logger.warning("Companion rejected the session token on %s. Refreshing.", path)
            with self._lock:
                if self._state.token == token:
                    self._state = ConnectionState(connected=self._state.connected, token=None)
            self.probe()
            return False

        if not 200 <= response.status_code < 300:
            logger.warning("Companion returned HTTP %s for %s", response.status_code, path)
            return False

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Delivered %s: %s", path, payload)
        return True

    def send_activity(self, record: ActivityRecord) -> bool:
        """POST an activity record to ``/browser-activity``."""
        delivered = self._post(ACTIVITY_PATH, record.to_dict())
        if delivered:
            self.activities_sent += 1
            self.last_send_time = self.clock()
        return delivered

    def send_context(self, context: PageContext) -> bool:
        """POST a page context to ``/page-context``."""
        delivered = self._post(CONTEXT_PATH, context.to_dict())
        if delivered:
            self.contexts_sent += 1
        return delivered

    def close(self) -> None:
        try:
            if hasattr(self.session, "close"):
                self.session.close()
        except Exception as e:
            logger.error("Error closing HTTP session: %s", e)

    def __enter__(self) -> CompanionClient:
        return self

    def __exit__(self, exc_type: Any, exc_value: Any, traceback: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<CompanionClient url={self.base_url} connected={self.connected}>"
