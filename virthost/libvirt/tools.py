"""Blocking invocation of external command-line tools (qemu-img, virt-install)."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolResult:
    command: List[str]
    returncode: int
    output: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


def _decode(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data)


def run_tool(command: Sequence[str], *, timeout: Optional[float] = None) -> ToolResult:
    """Run a command to completion, capturing stdout and stderr together.

    Never raises for tool failures: a non-zero exit, a timeout or a missing
    executable are all reported through the returned ToolResult.
    """
    argv = [str(part) for part in command]
    logger.debug("Running %s (timeout=%s)", argv, timeout)
    try:
        completed = subprocess.run(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        logger.error("%s timed out after %ss", argv[0], timeout)
        output = _decode(exc.output).strip()
        message = f"{argv[0]} timed out after {timeout}s"
        return ToolResult(argv, -1, f"{message}: {output}" if output else message, timed_out=True)
    except OSError as exc:
        logger.error("Failed to execute %s: %s", argv[0], exc)
        return ToolResult(argv, -1, str(exc))

    output = _decode(completed.stdout).strip()
    if completed.returncode != 0:
        logger.warning("%s exited with %d: %s", argv[0], completed.returncode, output)
    return ToolResult(argv, completed.returncode, output)
