"""Pause and resume the services that depend on the restored stores."""

from ._utils import logger
from .config import ServicesConfig
from .executor import CommandExecutor


class ServiceController:
    """Run the configured stop/start commands through the command executor.

    With no commands configured both operations are no-ops, which suits
    deployments where an operator drains traffic by other means.
    """

    def __init__(self, config: ServicesConfig, executor: CommandExecutor):
        self.config = config
        self.executor = executor
        self.paused = False

    async def pause(self) -> None:
        for command in self.config.stop_commands:
            await self.executor.run(command[0], command[1:])
        self.paused = True
        if self.config.stop_commands:
            logger.info(f"Paused dependent services ({len(self.config.stop_commands)} commands)")

    async def resume(self) -> None:
        for command in self.config.start_commands:
            await self.executor.run(command[0], command[1:])
        self.paused = False
        if self.config.start_commands:
            logger.info(f"Resumed dependent services ({len(self.config.start_commands)} commands)")
