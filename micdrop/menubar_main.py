"""Entry point for the menu bar app: python -m micdrop.menubar_main"""

import fcntl
import logging
import os
import signal
import sys
import threading
from pathlib import Path

from dotenv import load_dotenv

from micdrop import __version__

# Load .env file if it exists (before reading config)
env_path = Path.cwd() / ".env"
if env_path.exists():
    load_dotenv(env_path)

LOCK_FILE = Path.home() / "Library" / "Application Support" / "MicDrop" / "micdrop.lock"
LOG_FILE = Path.home() / "Library" / "Logs" / "MicDrop" / "micdrop.log"
PROJECT_URL = "https://github.com/micdrop/micdrop"


def _acquire_singleton_lock() -> int | None:
    """Acquire an exclusive lock to prevent duplicate instances.

    Returns the lock fd on success, or None if another instance is running.
    The fd must be kept open for the lifetime of the process.
    """
    LOCK_FILE.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(LOCK_FILE), os.O_CREAT | os.O_RDWR, 0o600)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        os.write(fd, f"{os.getpid()}\n".encode())
        os.ftruncate(fd, os.lseek(fd, 0, os.SEEK_CUR))
        return fd
    except OSError:
        os.close(fd)
        return None


def _daemonize() -> None:
    """Fork into the background so the launching terminal can be closed."""
    if os.fork() > 0:
        os._exit(0)
    os.setsid()
    # Closing the launching terminal must not kill us
    signal.signal(signal.SIGHUP, signal.SIG_IGN)
    LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
    log_fd = os.open(str(LOG_FILE), os.O_CREAT | os.O_WRONLY | os.O_APPEND, 0o644)
    devnull = os.open(os.devnull, os.O_RDONLY)
    os.dup2(devnull, 0)   # stdin
    os.dup2(log_fd, 1)    # stdout
    os.dup2(log_fd, 2)    # stderr
    os.close(devnull)
    os.close(log_fd)


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    for name in ("sounddevice", "pynput"):
        logging.getLogger(name).setLevel(logging.ERROR)


def _print_help() -> None:
    print(f"micdrop {__version__} - toggle your microphone from anywhere")
    print()
    print("Usage: micdrop [options]")
    print()
    print("Options:")
    print("  -f, --foreground   Stay attached to the terminal")
    print("      --headless     Run only the webhook server, no menu bar")
    print("  -v, --verbose      Debug logging")
    print("  -V, --version      Show version and exit")
    print("  -h, --help         Show this help and exit")
    print()
    print("Endpoints (default port 8765):")
    print("  POST /toggle-mic          Toggle the microphone")
    print("  GET  /status              Microphone and volume state")
    print("  POST /volume/increase     Raise output volume")
    print("  POST /volume/decrease     Lower output volume")
    print("  POST /volume/toggle-mute  Mute or unmute output")
    print("  POST /volume/set          Set output volume, body {\"volume\": 0.5}")
    print()
    print(f"More: {PROJECT_URL}")


def run_headless(logger: logging.Logger) -> int:
    """Serve the HTTP endpoint without the menu bar until interrupted."""
    from micdrop.audio import AudioController, create_backend
    from micdrop.bridge import BridgeCorrelator, EventBroadcaster
    from micdrop.errors import MicDropError
    from micdrop.preferences import Preferences
    from micdrop.server import ControlServer

    prefs = Preferences.load()
    config = prefs.to_config()
    try:
        controller = AudioController(create_backend(), config.audio, config.tones)
        bridge = BridgeCorrelator(
            EventBroadcaster(),
            timeout_s=config.bridge.timeout_s,
            policy=config.bridge.policy,
        )
        server = ControlServer(
            controller,
            config.server,
            bridge=bridge,
            bridge_mode=config.bridge.enabled,
            on_toggle=lambda _muted, _source: prefs.increment_request_count(),
        )
        server.start()
    except MicDropError as e:
        logger.error("%s", e)
        print(f"micdrop: {e}", file=sys.stderr)
        return 1

    print(f"Listening on {config.server.host}:{server.port} (Ctrl+C to stop)")
    stop = threading.Event()
    try:
        stop.wait()
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        server.stop()
    return 0


def main() -> int:
    args = sys.argv[1:]
    if "--version" in args or "-V" in args:
        print(f"micdrop {__version__}")
        return 0
    if "--help" in args or "-h" in args:
        _print_help()
        return 0

    headless = "--headless" in args
    foreground = headless or "--foreground" in args or "-f" in args
    if not foreground and sys.stdin is not None and hasattr(sys.stdin, "isatty") and sys.stdin.isatty():
        _daemonize()

    verbose = "--verbose" in args or "-v" in args or os.environ.get("MICDROP_VERBOSE") == "1"
    setup_logging(verbose)
    logger = logging.getLogger(__name__)

    lock_fd = _acquire_singleton_lock()
    if lock_fd is None:
        logger.error("Another instance of MicDrop is already running. Exiting.")
        print("MicDrop is already running.", file=sys.stderr)
        return 1

    logger.info("Starting MicDrop %s (pid=%d)", __version__, os.getpid())

    try:
        if headless:
            return run_headless(logger)

        from micdrop.menubar import MicDropMenuBarApp

        app = MicDropMenuBarApp()
        app.start_app()
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130
    except Exception:
        logger.exception("Fatal error")
        return 1
    finally:
        os.close(lock_fd)


if __name__ == "__main__":
    sys.exit(main())
