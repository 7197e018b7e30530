"""Shell command execution for build steps."""

from __future__ import annotations

import subprocess
import time
from pathlib import Path
from typing import Mapping

from brewengine.core.logging import get_logger

log = get_logger(__name__)

ENV_OVERRIDES = {
    "LANG": "C",
    "HOMEBREW_NO_COLOR": "1",
}


def run_capture(
    command: str, cwd: Path, env: Mapping[str, str], timeout: float | None = None
) -> tuple[str, int]:
    """Run a shell command and capture its combined output.

    Build steps are not cancellable, so ``timeout`` defaults to None.

    Args:
        command: Command line passed to ``/bin/sh``.
        cwd: Working directory.
        env: Complete environment for the child process.
        timeout: Optional timeout in seconds.

    Returns:
        A tuple of (output, returncode).
    """
    start = time.perf_counter()
    log.debug("command_start", command=command, cwd=str(cwd))

    completed = subprocess.run(
        command,
        shell=True,
        cwd=cwd,
        env={**env, **ENV_OVERRIDES},
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        timeout=timeout,
    )

    duration_ms = int((time.perf_counter() - start) * 1000)
    log.info(
        "command_complete",
        command=command,
        returncode=completed.returncode,
        duration_ms=duration_ms
    )
    return completed.stdout or "", completed.returncode
