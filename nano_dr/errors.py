"""Error taxonomy for backup and recovery operations."""

from typing import List, Optional, Sequence


class BackupError(Exception):
    """Base exception for backup engine errors."""
    pass


class ConflictError(BackupError):
    """Another backup is already running."""
    pass


class NotFoundError(BackupError):
    """Unknown backup id or no matching recovery point."""
    pass


class PreconditionError(BackupError):
    """Operation requested against a state that does not allow it."""
    pass


class IntegrityError(BackupError):
    """Checksum mismatch, undecryptable artifact or failed sandbox restore."""
    pass


class ConfigurationError(BackupError, ValueError):
    """Configuration is invalid or cannot be applied right now."""
    pass


class ToolExecutionError(BackupError):
    """An external backup, restore or archiving tool failed.

    `args` is always the redacted command line, never the raw one.
    """

    def __init__(
        self,
        tool: str,
        args: Sequence[str],
        returncode: Optional[int] = None,
        stderr: str = "",
        message: Optional[str] = None,
    ):
        self.tool = tool
        self.tool_args: List[str] = list(args)
        self.returncode = returncode
        self.stderr = stderr
        if message is None:
            message = f"Command {tool} failed with code {returncode}"
            if stderr:
                message = f"{message}: {stderr.strip()[:500]}"
        super().__init__(message)
