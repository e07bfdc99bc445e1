"""State machine that drives a firmware upgrade of one lidar."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Optional, Protocol

from lidarkit.firmware import (
    ENL_FILE_VERSION_V3,
    GENERAL_TRY_COUNT_LIMIT,
    GET_PROCESS_TRY_COUNT_LIMIT,
    Firmware,
    RequestUpgradeReturnCode,
)

logger = logging.getLogger(__name__)

STATUS_SUCCESS = 0
ERASE_FIRMWARE = 0x34
READ_LENGTH = 1024


class UpgradeState(IntEnum):
    """States of the upgrade state machine."""

    IDLE = 0
    REQUEST = 1
    XFER_FIRMWARE = 2
    COMPLETE_XFER_FIRMWARE = 3
    GET_UPGRADE_PROGRESS = 4
    COMPLETE = 5
    TIMEOUT = 6
    ERR = 7
    UNDEF = 8


class UpgradeEvent(IntEnum):
    """Events fed to the upgrade state machine."""

    REQUEST_UPGRADE = 0
    XFER_FIRMWARE = 1
    COMPLETE_XFER_FIRMWARE = 2
    GET_UPGRADE_PROGRESS = 3
    COMPLETE = 4
    REINIT = 5
    TIMEOUT = 6
    ERR = 7
    UNDEF = 8


@dataclass(frozen=True)
class UpgradeProgress:
    """What progress observers are told after each event."""

    event: UpgradeEvent
    progress: int


@dataclass
class CommandResponse:
    """Reply of a lidar to one upgrade command."""

    ret_code: int = 0
    progress: int = 0


@dataclass
class StartUpgradeRequest:
    """Request that asks a lidar to get ready for a firmware upgrade."""

    firmware_type: int
    firmware_length: int
    encrypt_type: int
    dev_type: int
    firmware_version: Optional[int] = None
    firmware_buildtime: Optional[int] = None
    hw_whitelist: Optional[bytes] = None

    @property
    def is_v3(self) -> bool:
        return self.firmware_version is not None


@dataclass
class XferFirmwareRequest:
    """One chunk of firmware sent to a lidar."""

    offset: int
    length: int
    encrypt_type: int
    data: bytes


@dataclass
class CompleteXferRequest:
    """Tells the lidar the transfer is done and how to verify it."""

    checksum_type: int
    checksum_length: int
    checksum: bytes


ResponseCallback = Callable[[int, int, Optional[CommandResponse]], None]


class UpgradeCommands(Protocol):
    """Transport that sends upgrade commands and reports replies via callbacks."""

    def start_upgrade(self, handle: int, request: StartUpgradeRequest, callback: ResponseCallback):
        """Send a start-upgrade request."""

    def xfer_firmware(self, handle: int, request: XferFirmwareRequest, callback: ResponseCallback):
        """Send one firmware chunk."""

    def complete_xfer_firmware(self, handle: int, request: CompleteXferRequest, callback: ResponseCallback):
        """Signal the end of the firmware transfer."""

    def get_upgrade_progress(self, handle: int, callback: ResponseCallback):
        """Ask how far the lidar has come in flashing the firmware."""

    def request_reboot(self, handle: int, callback: ResponseCallback):
        """Ask the lidar to reboot."""


ProgressObserver = Callable[[int, UpgradeProgress], None]


class LidarUpgrader:
    """Upgrades one lidar by feeding command replies through a state machine."""

    XFER_DELAY = 0.005
    ERASE_RETRY_DELAY = 1.0

    def __init__(self, firmware: Firmware, handle: int, commands: UpgradeCommands) -> None:
        self.firmware = firmware
        self.handle = handle
        self.commands = commands
        self.state = UpgradeState.IDLE
        self.read_offset = 0
        self.read_length = READ_LENGTH
        self.upgrade_error = 0
        self.try_count = 0
        self.xfer_delay = self.XFER_DELAY
        self.erase_retry_delay = self.ERASE_RETRY_DELAY
        self._progress = 0
        self._observer: Optional[ProgressObserver] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        self._pending: deque[tuple[UpgradeEvent, int]] = deque()
        self._dispatching = False
        self._handled = False

    @property
    def is_complete(self) -> bool:
        return self.state == UpgradeState.IDLE

    @property
    def is_error(self) -> bool:
        return self.state in (UpgradeState.TIMEOUT, UpgradeState.ERR)

    def add_progress_observer(self, observer: ProgressObserver) -> None:
        """Set the function told of every event and its progress."""
        self._observer = observer

    def start(self) -> bool:
        """Begin the upgrade on a background thread."""
        self._thread = threading.Thread(
            target=self.handle_event, args=(UpgradeEvent.REQUEST_UPGRADE, 10), daemon=True
        )
        self._thread.start()
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the upgrade ends; True on success, False on error."""
        with self._cond:
            finished = self._cond.wait_for(
                lambda: self._handled
                and not self._dispatching
                and (self.is_complete or self.is_error),
                timeout,
            )
        if not finished:
            raise TimeoutError(f"lidar[{self.handle}] upgrade did not finish in time")
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        if self.is_error:
            logger.error("LivoxLidar lidar[%d] upgrade error, try again please!", self.handle)
        else:
            logger.info("LivoxLidar lidar[%d] upgrade successfully.", self.handle)
        return self.is_complete

    def handle_event(self, event: UpgradeEvent, progress: int) -> None:
        """Feed one event to the state machine.

        Events raised while another is being handled are queued and run in order.
        """
        with self._lock:
            self._pending.append((UpgradeEvent(event), int(progress)))
            if self._dispatching:
                return
            self._dispatching = True
        try:
            while True:
                with self._lock:
                    if not self._pending:
                        self._dispatching = False
                        self._cond.notify_all()
                        return
                    current, current_progress = self._pending.popleft()
                self._dispatch(current, current_progress)
        except BaseException:
            with self._lock:
                self._dispatching = False
                self._pending.clear()
                self._cond.notify_all()
            raise

    def _change_state(self, event: UpgradeEvent) -> None:
        if event < UpgradeEvent.UNDEF:
            self.state = UpgradeState(int(event))

    def _dispatch(self, event: UpgradeEvent, progress: int) -> None:
        with self._lock:
            self._handled = True
            if event in (UpgradeEvent.TIMEOUT, UpgradeEvent.ERR):
                self._change_state(event)
            logger.debug("lidar[%d] state %s | event %s", self.handle, self.state.name, event.name)
            action = None
            transition = _TRANSITIONS.get((self.state, event))
            if transition is not None:
                action, self.state = transition
                logger.debug("lidar[%d] new state %s", self.handle, self.state.name)
            self._cond.notify_all()

        if action is not None:
            try:
                action(self)
            except ValueError as exc:
                logger.error("lidar[%d] %s", self.handle, exc)

        if self._observer is not None:
            self._observer(self.handle, UpgradeProgress(event, progress))

    def start_upgrade(self):
        """Send the start-upgrade request built from the firmware header."""
        self.read_offset = 0
        self.upgrade_error = 0
        self._progress = 0
        header = self.firmware.header
        request = StartUpgradeRequest(
            firmware_type=header.firmware_type,
            firmware_length=header.firmware_length,
            encrypt_type=header.encrypt_type,
            dev_type=header.device_type,
        )
        if self.firmware.package_version == ENL_FILE_VERSION_V3:
            request.firmware_version = header.firmware_version
            request.firmware_buildtime = header.modify_time
            request.hw_whitelist = bytes(header.hw_whitelist)
        logger.info("Start upgrade, the livox_lidar[%d] device type [%d]", self.handle, request.dev_type)
        return self.commands.start_upgrade(self.handle, request, self.on_start_upgrade_response)

    def xfer_firmware(self):
        """Send the firmware chunk at the current read offset."""
        firmware_length = self.firmware.header.firmware_length
        if self.read_offset >= firmware_length:
            raise ValueError(
                f"xfer firmware failed, read offset {self.read_offset} "
                f"is past firmware length {firmware_length}"
            )
        length = min(self.read_length, firmware_length - self.read_offset)
        request = XferFirmwareRequest(
            offset=self.read_offset,
            length=length,
            encrypt_type=self.firmware.header.encrypt_type,
            data=bytes(self.firmware.data[self.read_offset : self.read_offset + length]),
        )
        if self.xfer_delay > 0:
            time.sleep(self.xfer_delay)
        logger.debug("The livox_lidar[%d] xfer firmware read offset %d", self.handle, request.offset)
        return self.commands.xfer_firmware(self.handle, request, self.on_xfer_firmware_response)

    def complete_xfer_firmware(self):
        """Send the checksum that closes the transfer."""
        header = self.firmware.header
        request = CompleteXferRequest(
            checksum_type=header.checksum_type,
            checksum_length=header.checksum_length,
            checksum=bytes(header.checksum[: header.checksum_length]),
        )
        return self.commands.complete_xfer_firmware(self.handle, request, self.on_complete_xfer_response)

    def get_upgrade_progress(self):
        """Ask the lidar for its flashing progress."""
        return self.commands.get_upgrade_progress(self.handle, self.on_progress_response)

    def upgrade_complete(self):
        """Ask the lidar to reboot into the new firmware."""
        return self.commands.request_reboot(self.handle, self.on_reboot_response)

    def _retry(self, limit: int, event: UpgradeEvent, progress: int, what: str) -> None:
        self.try_count += 1
        if self.try_count < limit:
            self.handle_event(event, progress)
        else:
            self.try_count = 0
            self.handle_event(UpgradeEvent.ERR, 100)
            logger.error("%s failed, the livox_lidar[%d] exceed limit! exit!", what, self.handle)

    def on_start_upgrade_response(self, status: int, handle: int, response: Optional[CommandResponse]) -> None:
        """React to the reply to a start-upgrade request."""
        if status != STATUS_SUCCESS:
            logger.warning("Start upgrade, the livox_lidar[%d] status:%d, try again!", handle, status)
            self._retry(GENERAL_TRY_COUNT_LIMIT, UpgradeEvent.REQUEST_UPGRADE, 10, "Start upgrade")
            return
        self.try_count = 0
        ret_code = response.ret_code
        if ret_code == 0:
            logger.info("Start upgrade succ, the livox_lidar[%d] start to xfer data!", handle)
            self.handle_event(UpgradeEvent.XFER_FIRMWARE, 20)
        elif ret_code == RequestUpgradeReturnCode.SYSTEM_IS_NOT_READY:
            logger.info("Start upgrade failed, the livox_lidar[%d] is busy, try again!", handle)
            self.handle_event(UpgradeEvent.REQUEST_UPGRADE, 10)
        elif ret_code == ERASE_FIRMWARE:
            if self.erase_retry_delay > 0:
                time.sleep(self.erase_retry_delay)
            logger.info("Start upgrade, erase livox_lidar[%d] firmware!", handle)
            self.handle_event(UpgradeEvent.REQUEST_UPGRADE, 10)
        else:
            logger.error("Start upgrade failed, the livox_lidar[%d] ret_code[%d]", handle, ret_code)
            self.handle_event(UpgradeEvent.ERR, 100)

    def on_xfer_firmware_response(self, status: int, handle: int, response: Optional[CommandResponse]) -> None:
        """React to the reply to a firmware chunk."""
        if status != STATUS_SUCCESS:
            logger.warning("Xfer firmware timeout, livox_lidar[%d] try_count:%d", handle, self.try_count)
            self._retry(GENERAL_TRY_COUNT_LIMIT, UpgradeEvent.XFER_FIRMWARE, 20, "Xfer firmware")
            return
        self.try_count = 0
        if response.ret_code:
            logger.error("The livox_lidar[%d] Xfer firmware fail[%d]", handle, response.ret_code)
            self.handle_event(UpgradeEvent.ERR, 100)
            return
        self.read_offset += self.read_length
        if self.read_offset < self.firmware.header.firmware_length:
            self.handle_event(UpgradeEvent.XFER_FIRMWARE, 20)
        else:
            logger.info("Xfer firmware succ, the livox_lidar[%d] last offset[%d]", handle, self.read_offset)
            self.handle_event(UpgradeEvent.COMPLETE_XFER_FIRMWARE, 40)

    def on_complete_xfer_response(self, status: int, handle: int, response: Optional[CommandResponse]) -> None:
        """React to the reply to the end-of-transfer request."""
        if status != STATUS_SUCCESS:
            logger.warning("Complete xfer timeout, livox_lidar[%d] try_count:%d", handle, self.try_count)
            self._retry(GENERAL_TRY_COUNT_LIMIT, UpgradeEvent.COMPLETE_XFER_FIRMWARE, 50, "Complete xfer")
            return
        self.try_count = 0
        if response.ret_code:
            logger.error("Complete xfer failed, the livox_lidar[%d] ret_code:%d.", handle, response.ret_code)
            self.handle_event(UpgradeEvent.ERR, 100)
        else:
            logger.info("The livox_lidar[%d] complete xfer succ.", handle)
            self.handle_event(UpgradeEvent.GET_UPGRADE_PROGRESS, 50)

    def on_progress_response(self, status: int, handle: int, response: Optional[CommandResponse]) -> None:
        """React to a progress report."""
        if status != STATUS_SUCCESS:
            self._retry(
                GET_PROCESS_TRY_COUNT_LIMIT,
                UpgradeEvent.GET_UPGRADE_PROGRESS,
                self._progress // 2 + 50,
                "Get progress",
            )
            return
        self.try_count = 0
        if response.ret_code:
            logger.error("Get progress failed, the livox_lidar[%d] ret_code:%d.", handle, response.ret_code)
            self.handle_event(UpgradeEvent.ERR, 100)
        elif response.progress < 100:
            logger.info("The livox_lidar[%d] get progress[%d]", handle, response.progress)
            self.handle_event(UpgradeEvent.GET_UPGRADE_PROGRESS, response.progress // 2 + 50)
        else:
            logger.info("The livox_lidar[%d] Get progress[%d]", handle, response.progress)
            self.handle_event(UpgradeEvent.COMPLETE, 100)

    def on_reboot_response(self, status: int, handle: int, response: Optional[CommandResponse]) -> None:
        """React to the reply to the reboot request."""
        if status != STATUS_SUCCESS:
            logger.warning("Reboot timeout, livox_lidar[%d] try_count:%d", handle, self.try_count)
            self.try_count += 1
            if self.try_count < GENERAL_TRY_COUNT_LIMIT:
                self.handle_event(UpgradeEvent.COMPLETE, 100)
            else:
                self.try_count = 0
                self.handle_event(UpgradeEvent.REINIT, 100)
                logger.error("Upgrade complete failed, the livox_lidar[%d] reboot exceed limit!", handle)
            return
        self.try_count = 0
        if response.ret_code:
            logger.error("Upgrade complete failed, livox_lidar[%d] ret_code[%d]", handle, response.ret_code)
            self.handle_event(UpgradeEvent.ERR, 100)
        else:
            logger.info("The livox_lidar[%d] upgrade complete succ.", handle)
            self.handle_event(UpgradeEvent.REINIT, 100)


_S = UpgradeState
_E = UpgradeEvent

_TRANSITIONS: dict[tuple[UpgradeState, UpgradeEvent], tuple[Optional[Callable[[LidarUpgrader], object]], UpgradeState]] = {
    (_S.IDLE, _E.REQUEST_UPGRADE): (LidarUpgrader.start_upgrade, _S.REQUEST),
    (_S.REQUEST, _E.REQUEST_UPGRADE): (LidarUpgrader.start_upgrade, _S.REQUEST),
    (_S.REQUEST, _E.XFER_FIRMWARE): (LidarUpgrader.xfer_firmware, _S.XFER_FIRMWARE),
    (_S.XFER_FIRMWARE, _E.XFER_FIRMWARE): (LidarUpgrader.xfer_firmware, _S.XFER_FIRMWARE),
    (_S.XFER_FIRMWARE, _E.COMPLETE_XFER_FIRMWARE): (LidarUpgrader.complete_xfer_firmware, _S.COMPLETE_XFER_FIRMWARE),
    (_S.COMPLETE_XFER_FIRMWARE, _E.COMPLETE_XFER_FIRMWARE): (LidarUpgrader.complete_xfer_firmware, _S.COMPLETE_XFER_FIRMWARE),
    (_S.COMPLETE_XFER_FIRMWARE, _E.GET_UPGRADE_PROGRESS): (LidarUpgrader.get_upgrade_progress, _S.GET_UPGRADE_PROGRESS),
    (_S.GET_UPGRADE_PROGRESS, _E.GET_UPGRADE_PROGRESS): (LidarUpgrader.get_upgrade_progress, _S.GET_UPGRADE_PROGRESS),
    (_S.GET_UPGRADE_PROGRESS, _E.COMPLETE): (LidarUpgrader.upgrade_complete, _S.COMPLETE),
    (_S.COMPLETE, _E.COMPLETE): (LidarUpgrader.upgrade_complete, _S.COMPLETE),
    (_S.COMPLETE, _E.REINIT): (None, _S.IDLE),
}