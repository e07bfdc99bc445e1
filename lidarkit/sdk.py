"""Top-level entry point tying configuration, logging and upgrades together."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from os import PathLike
from typing import Optional, Union

from lidarkit.config import ConfigError, ParsedConfig, parse_config_file
from lidarkit.firmware import Firmware
from lidarkit.logger_manager import LoggerManager, LogType, SendCommand
from lidarkit.params_check import ParamsError, check_params
from lidarkit.upgrade_manager import UpgradeManager
from lidarkit.upgrader import ProgressObserver, UpgradeCommands

logger = logging.getLogger(__name__)


class SdkError(RuntimeError):
    """Raised when the SDK cannot be initialised."""


class LidarSdk:
    """Owns the logger and upgrade managers of one SDK instance.

    send_command(handle, command_id, payload, callback) sends a logger
    command to a lidar; upgrade_commands carries the upgrade commands.
    """

    def __init__(self, send_command: SendCommand, upgrade_commands: UpgradeCommands) -> None:
        self.send_command = send_command
        self.config: Optional[ParsedConfig] = None
        self.logger_manager = LoggerManager(send_command)
        self.upgrade_manager = UpgradeManager(upgrade_commands)
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def init(self, config_path: Union[str, "PathLike[str]", None]) -> ParsedConfig:
        """Read and check the configuration file and set up lidar logging."""
        if self._initialized:
            raise SdkError("sdk is already initialised")
        if config_path is None:
            raise SdkError("no configuration path given")
        try:
            config = parse_config_file(config_path)
            check_params(config.lidars, config.custom_lidars)
        except (ConfigError, ParamsError) as exc:
            raise SdkError(str(exc)) from exc

        manager = LoggerManager(self.send_command)
        try:
            manager.init(config.logger)
        except OSError as exc:
            raise SdkError(f"Init logger save path failed: {exc}") from exc

        self.logger_manager = manager
        self.config = config
        self._initialized = True
        return config

    def uninit(self) -> None:
        """Stop logging and release everything set up by init."""
        if not self._initialized:
            return
        self.logger_manager.destroy()
        self.logger_manager = LoggerManager(self.send_command)
        self.config = None
        self._initialized = False

    def start(self) -> bool:
        """Start the SDK; nothing beyond init is needed."""
        return True

    def set_upgrade_firmware_path(self, path: Union[str, "PathLike[str]"]) -> Firmware:
        """Load the firmware package used by upgrade_lidars."""
        return self.upgrade_manager.set_firmware_path(path)

    def set_upgrade_progress_callback(self, callback: Optional[ProgressObserver]) -> None:
        """Set the function told of upgrade progress."""
        self.upgrade_manager.set_progress_callback(callback)

    def upgrade_lidars(self, handles: Iterable[int]) -> dict[int, bool]:
        """Upgrade the given lidars with the loaded firmware."""
        return self.upgrade_manager.upgrade(handles)

    def start_logger(self, handle: int, log_type: LogType, callback=None) -> int:
        """Ask a lidar to start pushing logs."""
        return self.logger_manager.start_logger(handle, log_type, callback)

    def stop_logger(self, handle: int, log_type: LogType, callback=None) -> int:
        """Ask a lidar to stop pushing logs."""
        return self.logger_manager.stop_logger(handle, log_type, callback)

    def __enter__(self) -> "LidarSdk":
        return self

    def __exit__(self, *exc_info) -> None:
        self.uninit()