"""Main entry point for lighttrack-browser.

This module handles the command-line interface (CLI), configuration loading,
logging setup, and the lifetime of the native messaging host. The browser starts
this process and talks to it over stdin/stdout, so stdout is reserved for frames
and all logging goes to stderr (and, optionally, a rotating log file).

Key Responsibilities:
    - CLI Argument Parsing: Handles --port, --settings-path, --testing, etc.
    - Signal Handling: Registers handlers for SIGINT/SIGTERM to ensure graceful shutdown.
    - Logging: Configures logging with rotation (10MB).
    - Startup/Shutdown: Applies a configured port to the settings store, starts the
      background session, and stops it (logging final statistics) via atexit and
      finally blocks.
"""

from __future__ import annotations

import argparse
import atexit
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from types import FrameType
from typing import Any, Dict, Optional

# Logging configuration constants
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'

try:
    from lighttrack_browser import __version__
    from lighttrack_browser.config import Config, load_config
    from lighttrack_browser.native import NativeMessagingBridge
    from lighttrack_browser.session import DEFAULT_BROWSER, BackgroundSession, detect_browser_name
    from lighttrack_browser.store import ConfigStore
except ImportError as e:
    # Check if it's a missing dependency
    if "watchdog" in str(e) or "requests" in str(e):
        sys.exit(f"Error: Missing dependency: {e}. Please install required packages.")
    raise

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def setup_logging(log_level: str, log_file: Optional[str]) -> None:
    """Configure the logging system.

    Sets up console logging (stderr) and optional file logging with rotation.

    Logging Practices:
        - **Levels**:
            - ``INFO``: Lifecycle and state changes (connected, tab adopted, port changed).
            - ``WARNING``: Recoverable issues (companion unreachable, 401, invalid stored port).
            - ``ERROR``: Failures inside session tasks.
            - ``DEBUG``: Payloads and raw frames.
        - **Format**: ``[asctime] [levelname] name: message``
        - **Output**: stderr is always active, because stdout carries native messaging
          frames. File logging is optional via ``--log-file``.
        - **Rotation**: Log files are rotated at 10MB (keeping 5 backups).

    Args:
        log_level (str): The logging level (e.g., "DEBUG", "INFO", "WARNING", "ERROR").
        log_file (Optional[str]): Optional path to a log file.

    Raises:
        ValueError: If the provided log_level is not a valid logging level.

    Example:
        >>> setup_logging("INFO", "/path/to/lighttrack-browser.log")
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    handlers = []
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    # Console handler (stderr; stdout belongs to the browser)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        try:
            # Rotate at 10MB, keep 5 backups
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except OSError as e:
            sys.stderr.write(f"Warning: Failed to setup log file '{log_file}': {e}\n")

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)


def resolve_browser_name(config: Config) -> str:
    """Pick the browser name for activity records: explicit, then user agent, then Chrome."""
    if config.browser:
        return config.browser
    if config.user_agent:
        return detect_browser_name(config.user_agent)
    return DEFAULT_BROWSER


def format_statistics(stats: Dict[str, Any]) -> str:
    uptime = stats.get("uptime", 0.0)
    m, s = divmod(int(uptime), 60)
    h, m = divmod(m, 60)
    msg = (
        f"Connected={stats.get('connected')}, "
        f"Activities={stats.get('activities_sent', 0)}, "
        f"Contexts={stats.get('contexts_sent', 0)}, "
        f"Heartbeats={stats.get('heartbeats', 0)}, "
        f"Probes={stats.get('probes', 0)}, "
        f"AuthFailures={stats.get('auth_failures', 0)}, "
        f"TransportErrors={stats.get('transport_errors', 0)}, "
        f"Uptime={h:02d}:{m:02d}:{s:02d}"
    )
    last_send_age = stats.get("last_send_age")
    if last_send_age is not None:
        msg += f", LastSend={last_send_age:.1f}s"
    return msg


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="LightTrack browser activity reporter (native messaging host)."
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port of the LightTrack companion. Stored in the settings file (default: 41417).",
    )
    parser.add_argument(
        "--settings-path", type=str, default=None, help="Path to the JSON settings file."
    )
    parser.add_argument(
        "--testing", action="store_const", const=True, default=None,
        help="Run in testing mode (in-process mock companion).",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging (overrides --log-level)."
    )
    parser.add_argument("--log-file", type=str, default=None, help="Path to the log file.")
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO",
    )
    parser.add_argument(
        "--heartbeat-interval",
        type=float,
        default=None,
        help="Seconds between heartbeats of the current tab (default: 30).",
    )
    parser.add_argument(
        "--browser", type=str, default=None, help="Browser name reported with activity records."
    )
    parser.add_argument(
        "--user-agent", type=str, default=None,
        help="User agent string used to derive the browser name.",
    )
    parser.add_argument(
        "--host", type=str, default=None,
        help="Loopback host of the companion (localhost, 127.0.0.1 or ::1).",
    )
    # Browsers append the caller origin (and on Windows a window handle).
    parser.add_argument("origin", nargs="*", help=argparse.SUPPRESS)
    return parser


def main() -> None:
    """Execute the native messaging host.

    Parse command-line arguments, load configuration, set up logging, and serve
    frames from stdin until the browser closes the channel or a signal arrives.

    Returns:
        None: The function returns None but may exit the process with a status code.

    Raises:
        SystemExit: If configuration is invalid or fatal errors occur during startup.

    Example:
        $ lighttrack-browser --port 50000 --log-level DEBUG
    """
    parser = build_parser()
    args = parser.parse_args()
    cli_args = vars(args)
    cli_args.pop("origin", None)

    # Bootstrap logging to capture config loading events
    bootstrap_handler = logging.StreamHandler(sys.stderr)
    bootstrap_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    bootstrap_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=bootstrap_level, handlers=[bootstrap_handler], force=True)

    try:
        config = load_config(cli_args)
        logger.debug(f"Configuration loaded: {config}")
        setup_logging(config.log_level, config.log_file)
    except ValueError as e:
        sys.exit(f"Configuration Error: {e}")
    except OSError as e:
        sys.exit(f"Startup Error: {e}")
    logger.info(f"Starting lighttrack-browser v{__version__} (PID: {os.getpid()})...")

    store = ConfigStore(config.settings_path)
    if config.port is not None:
        try:
            store.set("port", config.port)
        except (ValueError, OSError) as e:
            sys.exit(f"Configuration Error: Could not store port: {e}")

    bridge = NativeMessagingBridge(sys.stdin.buffer, sys.stdout.buffer)
    session: Optional[BackgroundSession] = None
    stop_event = threading.Event()

    def cleanup() -> None:
        """Stop the session and log final statistics. Safe to call more than once."""
        nonlocal session
        if session is None:
            return
        current, session = session, None
        try:
            logger.info(f"Session statistics: {format_statistics(current.get_statistics())}")
        except Exception as e:
            logger.debug(f"Failed to collect statistics: {e}")
        try:
            current.stop()
        except Exception as e:
            logger.error(f"Error stopping session in cleanup: {e}")

    atexit.register(cleanup)

    def signal_handler(sig: int, frame: Optional[FrameType]) -> None:
        sig_name = signal.Signals(sig).name
        logger.info(f"Received signal {sig_name}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    def serve() -> None:
        try:
            bridge.run(session)
        except Exception as e:
            logger.critical(f"Native messaging loop failed: {e}", exc_info=True)
        finally:
            stop_event.set()

    try:
        session = BackgroundSession(
            store=store,
            browser=bridge,
            browser_name=resolve_browser_name(config),
            heartbeat_interval=config.heartbeat_interval,
            host=config.host,
            testing=config.testing,
        )
        session.start()

        # stdin reads block, so frames are served on their own thread and the main
        # thread stays free to receive signals.
        reader = threading.Thread(target=serve, name="NativeMessagingReader", daemon=True)
        reader.start()
        stop_event.wait()
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received, stopping...")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        cleanup()
        atexit.unregister(cleanup)


if __name__ == "__main__":
    main()
