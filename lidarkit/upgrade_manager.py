"""Firmware upgrade of several lidars from one firmware package."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from os import PathLike
from typing import Optional, Union

from lidarkit.firmware import Firmware, FirmwareError, load_firmware
from lidarkit.upgrader import LidarUpgrader, ProgressObserver, UpgradeCommands

logger = logging.getLogger(__name__)


class UpgradeManager:
    """Holds the firmware to flash and upgrades lidars with it."""

    def __init__(self, commands: UpgradeCommands) -> None:
        self.commands = commands
        self.firmware: Optional[Firmware] = None
        self.wait_timeout: Optional[float] = None
        self._callback: Optional[ProgressObserver] = None

    def set_firmware_path(self, path: Union[str, "PathLike[str]"]) -> Firmware:
        """Load the firmware package used by the next upgrade."""
        self.firmware = None
        try:
            self.firmware = load_firmware(path)
        except FirmwareError:
            logger.error("Open firmware_path fail: %s", path)
            raise
        return self.firmware

    def set_progress_callback(self, callback: Optional[ProgressObserver]) -> None:
        """Set the function told of every upgrade event of every lidar."""
        self._callback = callback

    def upgrade(self, handles: Iterable[int]) -> dict[int, bool]:
        """Upgrade the given lidars and wait for all of them.

        Returns, for each handle, whether its upgrade succeeded. The firmware
        is released afterwards.
        """
        if self.firmware is None:
            raise FirmwareError("no firmware loaded")
        callback = self._callback
        upgraders = []
        for handle in handles:
            upgrader = LidarUpgrader(self.firmware, handle, self.commands)
            if callback is not None:
                upgrader.add_progress_observer(callback)
            upgraders.append(upgrader)
        try:
            for upgrader in upgraders:
                upgrader.start()
            return {upgrader.handle: upgrader.wait(self.wait_timeout) for upgrader in upgraders}
        finally:
            self.close_firmware()

    def close_firmware(self) -> None:
        """Release the loaded firmware."""
        self.firmware = None