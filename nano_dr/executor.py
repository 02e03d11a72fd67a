"""Run external backup/restore tools as child processes."""

import asyncio
import os
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Sequence

from ._utils import find_secrets, logger, redact_args
from .errors import ToolExecutionError


@dataclass
class CommandResult:
    returncode: int
    stdout: bytes
    stderr: bytes


class CommandExecutor:
    """Run a tool to completion and fail on any non-zero exit status.

    Secrets (passwords passed through argv, environment overrides or URI
    userinfo) are masked before anything is logged or attached to an error.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout

    async def run(
        self,
        tool: str,
        args: Sequence[str],
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        secrets: Iterable[Optional[str]] = (),
    ) -> CommandResult:
        """Run `tool` with `args`.

        Args:
            tool: Executable name, resolved through PATH
            args: Arguments, not including the executable itself
            env: Environment overrides merged over the current environment
            cwd: Working directory for the child process
            secrets: Extra values to mask in logs and errors

        Returns:
            CommandResult of a successful (zero exit) run

        Raises:
            ToolExecutionError: on non-zero exit, timeout or missing executable
        """
        hidden = [*secrets, *(env or {}).values(), *find_secrets(args)]
        safe_args = redact_args(args, hidden)
        logger.debug(f"Running {tool} {' '.join(safe_args)}")

        child_env = {**os.environ, **(env or {})}
        try:
            process = await asyncio.create_subprocess_exec(
                tool,
                *[str(a) for a in args],
                env=child_env,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ToolExecutionError(
                tool, safe_args, message=f"Command {tool} not found; is it installed and on PATH?"
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise ToolExecutionError(
                tool, safe_args, message=f"Command {tool} timed out after {self.timeout}s"
            ) from e

        if process.returncode != 0:
            error_text = " ".join(redact_args([stderr.decode("utf-8", errors="replace")], hidden))
            logger.error(f"Command {tool} failed with code {process.returncode}")
            raise ToolExecutionError(tool, safe_args, process.returncode, error_text)

        return CommandResult(process.returncode, stdout, stderr)
