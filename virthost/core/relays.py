import logging
import os
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import psutil

from ..libvirt.errors import RelaySpawnFailedError

logger = logging.getLogger(__name__)


@dataclass
class RelayHandle:
    port: int
    pid: Optional[int]
    target: str
    process: Optional[subprocess.Popen] = None


def relay_matches(cmdline: Sequence[str], command: str, port: int) -> bool:
    """True if cmdline is `<command> ... <port> ...` with port as a bare token."""
    name = os.path.basename(command)
    for index, arg in enumerate(cmdline):
        if os.path.basename(arg or "") == name:
            return str(port) in cmdline[index + 1:]
    return False


def scan_process_table(command: str, port: int) -> Optional[int]:
    for proc in psutil.process_iter(["pid", "cmdline"]):
        try:
            cmdline = proc.info.get("cmdline") or []
        except psutil.Error:
            continue
        if relay_matches(cmdline, command, port):
            return proc.info.get("pid")
    return None


def spawn_detached(argv: List[str]) -> subprocess.Popen:
    return subprocess.Popen(
        argv,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )


class RelayRegistry:
    """Tracks console relay processes keyed by the port they listen on.

    Spawned relays are remembered in-process; the process table is consulted
    only when the registry has no live entry, which recovers relays started
    before a restart.
    """

    def __init__(
        self,
        command: str = "websockify",
        *,
        spawn_grace: float = 1.0,
        stop_timeout: float = 5.0,
        scanner: Optional[Callable[[str, int], Optional[int]]] = None,
        spawner: Optional[Callable[[List[str]], subprocess.Popen]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._command = command
        self._spawn_grace = spawn_grace
        self._stop_timeout = stop_timeout
        self._scan = scanner or scan_process_table
        self._spawn = spawner or spawn_detached
        self._sleep = sleep
        self._relays: Dict[int, RelayHandle] = {}
        self._port_locks: Dict[int, threading.Lock] = {}
        self._lock = threading.Lock()

    def _lock_for(self, port: int) -> threading.Lock:
        with self._lock:
            return self._port_locks.setdefault(port, threading.Lock())

    def get(self, port: int) -> Optional[RelayHandle]:
        with self._lock:
            return self._relays.get(port)

    def ensure(self, port: int, target_host: str, target_port: int) -> Tuple[RelayHandle, bool]:
        """Return the relay for port, spawning one if none is running.

        The boolean is True when this call started the process.
        """
        target = f"{target_host}:{target_port}"
        with self._lock_for(port):
            handle = self.get(port)
            if handle is not None and self._alive(handle):
                return handle, False

            pid = self._scan(self._command, port)
            if pid is not None:
                logger.info("Adopted running relay on port %d (pid %s)", port, pid)
                handle = RelayHandle(port=port, pid=pid, target=target)
                self._remember(handle)
                return handle, False

            argv = [self._command, str(port), target]
            logger.info("Starting console relay: %s", " ".join(argv))
            try:
                process = self._spawn(argv)
            except OSError as exc:
                logger.error("Failed to start console relay on port %d: %s", port, exc)
                raise RelaySpawnFailedError(port, str(exc)) from exc

            self._sleep(self._spawn_grace)
            pid = self._scan(self._command, port)
            if pid is None:
                returncode = process.poll()
                if returncode is None:
                    # Alive but never showed up as a relay for this port.
                    logger.error("Console relay on port %d not found after start; terminating pid %s", port, process.pid)
                    self._terminate(process)
                    raise RelaySpawnFailedError(port, "relay process not visible in process table")
                logger.error("Console relay on port %d exited early (returncode=%s)", port, returncode)
                raise RelaySpawnFailedError(port, f"returncode={returncode}")

            handle = RelayHandle(port=port, pid=pid, target=target, process=process)
            self._remember(handle)
            return handle, True

    def _terminate(self, process: subprocess.Popen) -> None:
        try:
            process.terminate()
            process.wait(timeout=self._stop_timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Console relay pid %s ignored SIGTERM; killing", process.pid)
            process.kill()
            process.wait(timeout=self._stop_timeout)
        except OSError as exc:
            logger.warning("Failed to stop console relay pid %s: %s", process.pid, exc)

    def _remember(self, handle: RelayHandle) -> None:
        with self._lock:
            self._relays[handle.port] = handle

    def _alive(self, handle: RelayHandle) -> bool:
        if handle.process is not None:
            # poll() also reaps the child once it has exited.
            return handle.process.poll() is None
        if handle.pid is None:
            return False
        try:
            proc = psutil.Process(handle.pid)
            return relay_matches(proc.cmdline(), self._command, handle.port)
        except psutil.Error:
            return False
