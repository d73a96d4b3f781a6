"""Subprocess execution with explicit timeouts."""

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Sequence

from ._utils import logger
from .exceptions import OperationTimeoutError, ToolingMissingError


@dataclass
class CommandResult:
    args: Sequence[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def describe(self) -> str:
        """Short failure description for warnings and error messages."""
        detail = (self.stderr or self.stdout).strip().splitlines()
        tail = detail[-1] if detail else "no output"
        return f"exit code {self.exit_code}: {tail}"


def require_tools(*tools: str) -> None:
    """Raise ToolingMissingError for the first executable not on PATH."""
    for tool in tools:
        if shutil.which(tool) is None:
            raise ToolingMissingError(tool)


async def run_command(
    args: Sequence[str],
    timeout: float,
    stdin_path: Optional[Path] = None,
    stdout_path: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
) -> CommandResult:
    """Run an executable and capture its result.

    Args:
        args: Executable and arguments
        timeout: Seconds before the process is killed
        stdin_path: Optional file streamed to the process's stdin
        stdout_path: Optional file receiving stdout instead of capturing it
        env: Optional environment for the child process

    Returns:
        CommandResult; a non-zero exit code is returned, not raised

    Raises:
        ToolingMissingError: The executable does not exist
        OperationTimeoutError: The process exceeded ``timeout``
    """
    logger.debug(f"Running: {' '.join(args)}")

    stdin_file = open(stdin_path, "rb") if stdin_path else None
    stdout_file = open(stdout_path, "wb") if stdout_path else None
    try:
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=stdin_file if stdin_file else asyncio.subprocess.DEVNULL,
                stdout=stdout_file if stdout_file else asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError:
            raise ToolingMissingError(args[0])

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error(f"Command timed out after {timeout:g}s: {args[0]} {args[1] if len(args) > 1 else ''}")
            raise OperationTimeoutError(" ".join(args[:2]), timeout)
    finally:
        if stdin_file:
            stdin_file.close()
        if stdout_file:
            stdout_file.close()

    return CommandResult(
        args=list(args),
        exit_code=process.returncode,
        stdout=stdout.decode("utf-8", errors="replace") if stdout else "",
        stderr=stderr.decode("utf-8", errors="replace") if stderr else "",
    )
