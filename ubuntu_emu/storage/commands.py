"""External tool execution with logging and bounded timeouts."""

from __future__ import annotations

import subprocess
from typing import Sequence

from ubuntu_emu.logging import LoggerFactory
from ubuntu_emu.storage.exceptions import ToolError

DEFAULT_TIMEOUT_SECONDS = 600

log = LoggerFactory.for_tools()


def run_command(
    command: Sequence[str],
    check: bool = True,
    input_text: str | None = None,
    timeout: float | None = DEFAULT_TIMEOUT_SECONDS,
    log_command: bool = True,
) -> subprocess.CompletedProcess:
    """Run a command and raise ToolError if it fails.

    The tool's stderr (or stdout when stderr is empty) is attached verbatim
    to the error. A timeout is reported as a ToolError with no return code.
    """
    command = [str(part) for part in command]
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            input=input_text,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as error:
        raise ToolError(command, None, f"no result after {timeout}s") from error
    except FileNotFoundError as error:
        raise ToolError(command, 127, f"{command[0]}: not found") from error
    if result.stdout:
        log.trace(f"stdout: {result.stdout.strip()}")
    if result.stderr:
        log.trace(f"stderr: {result.stderr.strip()}")
    if check and result.returncode != 0:
        stderr = result.stderr.strip()
        stdout = result.stdout.strip()
        raise ToolError(command, result.returncode, stderr or stdout)
    return result
