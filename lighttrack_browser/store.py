"""Durable settings store holding the companion port.

The store is a small JSON object file. Only one key is recognised, ``port``,
persisted under ``lighttrackPort``. Local writes and writes made by another
process (picked up through a ``watchdog`` observer) both notify observers, and
only when the stored value actually changes. Concurrent writers resolve
last-writer-wins.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from watchdog.events import FileMovedEvent, FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["DEFAULT_PORT", "MIN_PORT", "MAX_PORT", "ConfigStore", "validate_port"]

DEFAULT_PORT = 41417
MIN_PORT = 1024
MAX_PORT = 65535

_KEYS = {"port": "lighttrackPort"}
_DEFAULTS: Dict[str, Any] = {"port": DEFAULT_PORT}

ChangeCallback = Callable[[Any, Any], None]


def validate_port(value: Any) -> int:
    """Coerce ``value`` to a port number.

    Raises:
        ValueError: If the value is not an integer in [1024, 65535].
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid port: {value!r}")
    try:
        port = value if isinstance(value, int) else int(str(value).strip())
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid port: {value!r}") from e
    if not (MIN_PORT <= port <= MAX_PORT):
        raise ValueError(f"Port must be between {MIN_PORT} and {MAX_PORT}, got {port}")
    return port


class _SettingsFileHandler(FileSystemEventHandler):
    """Forward changes of the settings file to the store."""

    def __init__(self, store: ConfigStore) -> None:
        self.store = store

    def _is_target(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        path = event.dest_path if isinstance(event, FileMovedEvent) else event.src_path
        try:
            return Path(os.fsdecode(path)).absolute() == self.store.path
        except (OSError, RuntimeError):
            return False

    def on_modified(self, event: FileSystemEvent) -> None:
        if self._is_target(event):
            self.store.reload()

    def on_created(self, event: FileSystemEvent) -> None:
        if self._is_target(event):
            self.store.reload()

    def on_moved(self, event: FileSystemEvent) -> None:
        if self._is_target(event):
            self.store.reload()


class ConfigStore:
    """Key/value settings persisted to ``path``.

    Attributes:
        path (Path): Absolute path of the JSON settings file.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser().absolute()
        self._lock = threading.RLock()
        self._observers: Dict[str, List[ChangeCallback]] = {}
        self._observer: Optional[Any] = None
        self._values: Dict[str, Any] = self._read()

    def _read(self) -> Dict[str, Any]:
        values = dict(_DEFAULTS)
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return values
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read settings file {self.path}: {e}. Using defaults.")
            return values

        if not isinstance(raw, dict):
            logger.warning(f"Settings file {self.path} is not a JSON object. Using defaults.")
            return values

        stored = raw.get(_KEYS["port"])
        if stored is not None:
            try:
                values["port"] = validate_port(stored)
            except ValueError as e:
                logger.warning(f"Ignoring stored port: {e}")
        return values

    def _write(self, values: Dict[str, Any]) -> None:
        try:
            existing = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(existing, dict):
                existing = {}
        except (OSError, ValueError):
            existing = {}

        for key, value in values.items():
            existing[_KEYS[key]] = value

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".settings-", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(existing, f, indent=2)
            os.replace(tmp_name, self.path)
        except OSError:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    @staticmethod
    def _check_key(key: str) -> None:
        if key not in _KEYS:
            raise KeyError(f"Unknown setting: {key}")

    def get(self, key: str) -> Any:
        """Return the stored value for ``key`` or its default."""
        self._check_key(key)
        with self._lock:
            return self._values.get(key, _DEFAULTS[key])

    def set(self, key: str, value: Any) -> None:
        """Persist ``value`` and notify observers if it changed.

        Raises:
            KeyError: If ``key`` is not recognised.
            ValueError: If ``value`` is not a valid port.
            OSError: If the settings file cannot be written.
        """
        self._check_key(key)
        value = validate_port(value)
        with self._lock:
            old = self._values.get(key)
            self._write({key: value})
            self._values[key] = value
        if old != value:
            logger.info(f"Setting '{key}' changed: {old} -> {value}")
            self._notify(key, old, value)

    def observe(self, key: str, callback: ChangeCallback) -> None:
        """Register ``callback(old, new)`` for changes of ``key``."""
        self._check_key(key)
        with self._lock:
            self._observers.setdefault(key, []).append(callback)

    def reload(self) -> None:
        """Re-read the file, notifying observers of values changed by another writer."""
        with self._lock:
            fresh = self._read()
            changes = [
                (key, self._values.get(key), value)
                for key, value in fresh.items()
                if self._values.get(key) != value
            ]
            self._values = fresh
        for key, old, new in changes:
            logger.info(f"Setting '{key}' changed externally: {old} -> {new}")
            self._notify(key, old, new)

    def _notify(self, key: str, old: Any, new: Any) -> None:
        with self._lock:
            callbacks = list(self._observers.get(key, ()))
        for callback in callbacks:
            try:
                callback(old, new)
            except Exception as e:
                logger.error(f"Error in settings observer for '{key}': {e}", exc_info=True)

    def watch(self) -> None:
        """Start watching the settings directory for writes by other processes."""
        if self._observer is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        observer = Observer()
        observer.schedule(_SettingsFileHandler(self), str(self.path.parent), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.debug(f"Watching settings file {self.path}")

    def stop(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        try:
            observer.stop()
            observer.join(timeout=5.0)
        except Exception as e:
            logger.error(f"Error stopping settings observer: {e}")

    def __repr__(self) -> str:
        return f"<ConfigStore path={self.path} port={self.get('port')}>"
