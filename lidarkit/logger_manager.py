"""Routing of lidar log pushes to per-lidar writers and log space housekeeping."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Optional, Union

from lidarkit.config import LoggerCfg
from lidarkit.file_manager import (
    collect_file_names,
    dir_total_size,
    directory_exists,
    make_directory,
    restore_hidden_files,
)
from lidarkit.logger_handler import LogFlag, LoggerHandler, LogPacket

logger = logging.getLogger(__name__)

STATUS_SUCCESS = 0

CMD_LIDAR_PUSH_LOG = 0x0300
CMD_LIDAR_COLLECTION_LOG = 0x0301

MAX_EXCEPTION_LOG_CACHE_SIZE_MB = 200
EXCEPTION_LOG_CACHE_RATIO = 1
REALTIME_LOG_CACHE_RATIO = 3
MAX_LOG_CACHE_SIZE_MB = 1_000_000_000

_MIB = 1024 * 1024
_CYCLE_DELETE_INTERVAL = 600.0

_FLAG_ACK = 1
_FLAG_CREATE = 1 << 1
_FLAG_STOP = 1 << 2

SendCommand = Callable[[int, int, dict, Optional[Callable[..., Any]]], int]


class LogType(IntEnum):
    """Kinds of logs a lidar can push."""

    REAL_TIME = 0
    EXCEPTION = 1


@dataclass
class DeviceInfo:
    """What the manager knows about a detected lidar."""

    serial_number: str
    device_type: int
    lidar_ip: str
    cmd_port: int


def compute_cache_sizes(cache_size_mb: int) -> tuple[int, int]:
    """Split a total cache size in MB into (realtime, exception) limits in bytes."""
    if cache_size_mb < 0:
        raise ValueError("cache size must not be negative")
    total_ratio = EXCEPTION_LOG_CACHE_RATIO + REALTIME_LOG_CACHE_RATIO
    threshold = MAX_EXCEPTION_LOG_CACHE_SIZE_MB * total_ratio // EXCEPTION_LOG_CACHE_RATIO
    if cache_size_mb > threshold:
        exception = MAX_EXCEPTION_LOG_CACHE_SIZE_MB * _MIB
        realtime = (cache_size_mb - MAX_EXCEPTION_LOG_CACHE_SIZE_MB) * _MIB
    else:
        realtime = (cache_size_mb * REALTIME_LOG_CACHE_RATIO // total_ratio) * _MIB
        exception = (cache_size_mb * EXCEPTION_LOG_CACHE_RATIO // total_ratio) * _MIB
    return realtime, exception


class LoggerManager:
    """Starts and stops lidar logging and stores pushed log files on disk.

    send_command(handle, command_id, payload, callback) sends a command to a
    lidar and returns a status code.
    """

    def __init__(self, send_command: SendCommand) -> None:
        self.send_command = send_command
        self.log_enable = False
        self.log_root_path = "./"
        self.max_realtime_cache_size = 150 * _MIB
        self.max_exception_cache_size = 50 * _MIB
        self.devices: dict[int, DeviceInfo] = {}
        self.handlers: dict[int, LoggerHandler] = {}
        self._cycle_delete_enable = False
        self._cycle_thread: Optional[threading.Thread] = None
        self._wake = threading.Event()
        self._destroyed = False

    def init(self, logger_cfg: Optional[LoggerCfg]) -> None:
        """Apply the logger configuration; raises OSError if the log directory cannot be made."""
        if logger_cfg is None or not logger_cfg.lidar_log_enable:
            self.log_enable = False
            return
        cache_size = logger_cfg.lidar_log_cache_size
        if cache_size == 0 or cache_size > MAX_LOG_CACHE_SIZE_MB:
            self.log_enable = False
            return

        self.max_realtime_cache_size, self.max_exception_cache_size = compute_cache_sizes(cache_size)
        self._init_save_path(logger_cfg.lidar_log_path)
        self.log_enable = True

        try:
            restore_hidden_files(logger_cfg.lidar_log_path)
        except (OSError, ValueError) as exc:
            logger.error("Change hidden files to normal files failed: %s", exc)

        self._cycle_delete_enable = True
        self._wake.clear()
        self._cycle_thread = threading.Thread(target=self._cycle_delete, daemon=True)
        self._cycle_thread.start()

    def _init_save_path(self, log_path: str) -> None:
        root = os.path.join(str(log_path), "lidar_log")
        if not directory_exists(root) and not make_directory(root):
            raise OSError(f"Can't Create Dir {root}")
        self.log_root_path = root

    def add_device(
        self,
        handle: int,
        serial_number: str,
        device_type: int,
        lidar_ip: Union[str, Sequence[int]],
        cmd_port: int,
    ) -> None:
        """Remember a detected lidar; an already known handle is left unchanged."""
        if handle in self.devices:
            return
        if not isinstance(lidar_ip, str):
            lidar_ip = ".".join(str(int(part)) for part in lidar_ip)
        self.devices[handle] = DeviceInfo(serial_number, device_type, lidar_ip, cmd_port)

    def remove_device(self, handle: int) -> None:
        """Forget a lidar."""
        self.devices.pop(handle, None)

    def start_logger(self, handle: int, log_type: LogType, callback=None) -> int:
        """Ask a lidar to start pushing logs of the given type."""
        if not self.log_enable:
            logger.info("Disable logger.")
            return STATUS_SUCCESS
        logger.info("Start Logger handler: %d, log_type: %d", handle, int(log_type))
        payload = {"log_type": int(log_type), "enable": True}
        return self.send_command(handle, CMD_LIDAR_COLLECTION_LOG, payload, callback)

    def stop_logger(self, handle: int, log_type: LogType, callback=None) -> int:
        """Ask a lidar to stop pushing logs of the given type."""
        logger.info("Stop Logger handler: %d, log_type: %d", handle, int(log_type))
        payload = {"log_type": int(log_type), "enable": False}
        return self.send_command(handle, CMD_LIDAR_COLLECTION_LOG, payload, callback)

    def handle_packet(self, handle: int, packet: LogPacket) -> None:
        """Process one log push received from a lidar."""
        if not self.log_enable or packet is None:
            return
        flag = packet.flag
        if flag & _FLAG_ACK:
            ack = {
                "ret_code": 0,
                "log_type": packet.log_type,
                "file_index": packet.file_index,
                "trans_index": packet.trans_index,
            }
            self.send_command(handle, CMD_LIDAR_PUSH_LOG, ack, None)

        if flag & _FLAG_CREATE:
            self._on_create(handle, packet)
        elif flag & _FLAG_STOP:
            self._on_stopped(handle, packet)
        else:
            self._on_transfer(handle, packet)

    def _on_create(self, handle: int, packet: LogPacket) -> None:
        if handle not in self.handlers:
            device = self.devices.get(handle)
            if device is None:
                logger.error("LogType : %d unknown lidar %d, file not created", packet.log_type, handle)
                return
            handler = LoggerHandler(self.log_root_path, device.serial_number)
            handler.start()
            self.handlers[handle] = handler
        self.handlers[handle].store_log_bag(packet, LogFlag.CREATE_FILE)

    def _on_stopped(self, handle: int, packet: LogPacket) -> None:
        handler = self.handlers.get(handle)
        if handler is None:
            logger.info("LogType: %d Stop! File doesn't create", packet.log_type)
            return
        handler.store_log_bag(packet, LogFlag.END_FILE)
        self._wake.set()

    def _on_transfer(self, handle: int, packet: LogPacket) -> None:
        handler = self.handlers.get(handle)
        if handler is None:
            logger.error("LogType : %d File doesn't create", packet.log_type)
            return
        handler.store_log_bag(packet, LogFlag.TRANSFER_DATA)

    def _trim(self, path: str, limit: int) -> int:
        if not directory_exists(path) or dir_total_size(path) <= limit:
            return 0
        try:
            files = collect_file_names(path)
        except OSError:
            logger.error("Can not get filenames in this directory: %s", path)
            return 0
        removed = 0
        for _, name in files:
            if dir_total_size(path) <= limit:
                break
            try:
                os.remove(os.path.join(path, name))
                removed += 1
            except OSError as exc:
                logger.warning("Failed to remove log file %s: %s", name, exc)
        return removed

    def cycle_delete_once(self) -> int:
        """Delete the oldest log files over each type's limit; return how many were removed."""
        realtime_path = os.path.join(self.log_root_path, f"type_{int(LogType.REAL_TIME)}")
        exception_path = os.path.join(self.log_root_path, f"type_{int(LogType.EXCEPTION)}")
        return self._trim(realtime_path, self.max_realtime_cache_size) + self._trim(
            exception_path, self.max_exception_cache_size
        )

    def _cycle_delete(self) -> None:
        while self._cycle_delete_enable:
            self._wake.wait(_CYCLE_DELETE_INTERVAL)
            self._wake.clear()
            self.cycle_delete_once()

    def _stop_all_loggers(self) -> None:
        if not self.log_enable:
            return
        for handle in list(self.devices):
            self.stop_logger(handle, LogType.REAL_TIME, None)

    def destroy(self) -> None:
        """Stop every writer and thread, ask lidars to stop logging and reveal hidden files."""
        if self._destroyed:
            return
        self._cycle_delete_enable = False
        self._wake.set()
        if self._cycle_thread is not None:
            self._cycle_thread.join()
            self._cycle_thread = None

        for handler in self.handlers.values():
            handler.stop()
        self.handlers.clear()

        self._stop_all_loggers()
        if self.log_enable:
            try:
                restore_hidden_files(self.log_root_path)
            except (OSError, ValueError) as exc:
                logger.error("Change hidden files to normal files failed: %s", exc)
        self.log_enable = False
        self._destroyed = True

    def __enter__(self) -> "LoggerManager":
        return self

    def __exit__(self, *exc_info) -> None:
        self.destroy()