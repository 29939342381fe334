"""Network helpers: LAN address for the webhook URL and port ownership checks."""

from __future__ import annotations

import errno
import logging
import socket
import subprocess

logger = logging.getLogger(__name__)

LOOPBACK_IP = "127.0.0.1"
# Any routable address works; connect() on UDP sends nothing.
PROBE_ADDRESS = ("10.255.255.255", 1)
LSOF_TIMEOUT_SECONDS = 2


def get_local_ip() -> str:
    """Return this machine's primary IPv4 address, or 127.0.0.1 if offline."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(PROBE_ADDRESS)
        address = sock.getsockname()[0]
    except OSError:
        logger.debug("No network route, using loopback", exc_info=True)
        return LOOPBACK_IP
    finally:
        sock.close()
    if address.startswith("127.") or address == "0.0.0.0":
        return LOOPBACK_IP
    return address


def is_port_available(port: int, host: str = "0.0.0.0") -> bool:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
        return True
    except OSError as e:
        if e.errno != errno.EADDRINUSE:
            logger.debug("Port %d check failed: %s", port, e)
        return False
    finally:
        sock.close()


def get_process_using_port(port: int) -> tuple[int, str] | None:
    """Return (pid, process name) of the process listening on ``port``."""
    try:
        out = subprocess.check_output(
            ["lsof", "-i", f":{port}", "-t", "-sTCP:LISTEN"],
            text=True, timeout=LSOF_TIMEOUT_SECONDS, stderr=subprocess.DEVNULL,
        ).strip()
    except (OSError, subprocess.SubprocessError):
        return None
    pids = [int(line) for line in out.splitlines() if line.strip().isdigit()]
    if not pids:
        return None
    pid = pids[0]
    try:
        name = subprocess.check_output(
            ["ps", "-p", str(pid), "-o", "comm="],
            text=True, timeout=LSOF_TIMEOUT_SECONDS, stderr=subprocess.DEVNULL,
        ).strip()
    except (OSError, subprocess.SubprocessError):
        name = "unknown"
    return pid, name or "unknown"


def describe_port_owner(port: int) -> str | None:
    owner = get_process_using_port(port)
    if owner is None:
        return None
    pid, name = owner
    return f"'{name}' (PID {pid})"


def webhook_url(port: int, path: str = "/toggle-mic", host: str | None = None) -> str:
    return f"http://{host or get_local_ip()}:{port}{path}"
