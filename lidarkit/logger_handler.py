"""Writing log files pushed by one lidar to disk."""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from enum import IntEnum
from typing import BinaryIO, Optional

from lidarkit.file_manager import directory_exists, make_directory, restore_hidden_file

logger = logging.getLogger(__name__)

_WRITE_INTERVAL = 0.1


def current_format_time() -> str:
    """Local time formatted as used in log file names."""
    return time.strftime("%Y-%m-%d_%H-%M-%S", time.localtime())


class LogFlag(IntEnum):
    """What a queued log chunk does to its file."""

    CREATE_FILE = 0
    TRANSFER_DATA = 1
    END_FILE = 2


@dataclass
class LogPacket:
    """One log push received from a lidar."""

    log_type: int
    file_index: int
    trans_index: int
    data: bytes = b""
    flag: int = 0


@dataclass
class WriteBuffer:
    """A queued chunk of log data waiting to be written."""

    log_type: int
    flag: int
    file_index: int
    trans_index: int
    data: bytes = b""


@dataclass
class CurrentFileInfo:
    """State of the file currently written for one log type."""

    flag: int = 0
    file_index: int = 0
    trans_index: int = 0
    fp: Optional[BinaryIO] = None
    file_name: str = ""


class LoggerHandler:
    """Collects log chunks of one lidar and writes them to per-type files.

    Files are written hidden (leading '.') and revealed when finished.
    """

    def __init__(self, log_root_path: str, serial_number: str) -> None:
        self.log_root_path = str(log_root_path)
        self.serial_number = serial_number
        self.branch_paths: dict[int, str] = {}
        self.current_files: defaultdict[int, CurrentFileInfo] = defaultdict(CurrentFileInfo)
        self._queue: list[WriteBuffer] = []
        self._queue_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "LoggerHandler":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def start(self) -> None:
        """Start the background thread that writes queued chunks."""
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._save_to_file, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the writer thread and close every open file."""
        if self._thread is not None:
            self._stop_event.set()
            self._thread.join()
            self._thread = None
        for info in self.current_files.values():
            if info.fp is not None:
                info.fp.close()
                info.fp = None

    def _save_to_file(self) -> None:
        while not self._stop_event.is_set():
            self.write()
            self._stop_event.wait(_WRITE_INTERVAL)

    def store_log_bag(self, packet: LogPacket, flag: int) -> None:
        """Queue a received packet to be handled as the given flag."""
        logger.info("Transform Data Length : %d", len(packet.data))
        buffer = WriteBuffer(
            log_type=packet.log_type,
            flag=int(flag),
            file_index=packet.file_index,
            trans_index=packet.trans_index,
            data=bytes(packet.data),
        )
        with self._queue_lock:
            self._queue.append(buffer)

    def _branch_path(self, log_type: int) -> str:
        return os.path.join(self.log_root_path, f"type_{log_type}")

    def create_file(self, buffer: WriteBuffer) -> None:
        """Finish any open file of the type and start a new hidden one."""
        time_str = current_format_time()
        log_type = buffer.log_type
        branch = self._branch_path(log_type)
        self.branch_paths[log_type] = branch
        if not directory_exists(branch) and not make_directory(branch):
            logger.error("Can't Create Dir %s", branch)
            return

        info = self.current_files[log_type]
        if info.fp is not None:
            if info.trans_index + 1 != buffer.trans_index:
                logger.warning(
                    "The terminal command to end the %drd log file has been lost.",
                    info.file_index,
                )
            info.fp.close()
            info.fp = None
            restore_hidden_file(branch, info.file_name)

        file_name = (
            f".{time_str}_{self.serial_number}_{log_type}_{buffer.file_index}.dat"
        )
        file_path = os.path.join(branch, file_name)
        logger.info("file path : %s", file_path)
        try:
            info.fp = open(file_path, "ab")
        except OSError as exc:
            logger.error("Can't open log file %s: %s", file_path, exc)
            info.fp = None
        if info.fp is not None:
            info.fp.write(buffer.data)
            info.fp.flush()
        info.flag = buffer.flag
        info.file_index = buffer.file_index
        info.trans_index = buffer.trans_index
        info.file_name = file_name
        logger.info("Create File index: %d", buffer.file_index)

    def write_file(self, buffer: WriteBuffer) -> None:
        """Append a data chunk to the open file of its type."""
        info = self.current_files[buffer.log_type]
        if info.file_index != buffer.file_index:
            logger.warning(
                "Log Type: %d, File Index error: last file index: %d, current file index: %d",
                buffer.log_type,
                info.file_index,
                buffer.file_index,
            )
            return

        if info.trans_index + 1 != buffer.trans_index and buffer.trans_index != 1:
            logger.warning(
                "Log Type: %d, Trans Index error: last trans index: %d, current trans index: %d",
                buffer.log_type,
                info.trans_index,
                buffer.trans_index,
            )

        if info.fp is not None:
            info.fp.write(buffer.data)
            info.fp.flush()
        else:
            logger.error(
                "The starting file command is not sent from lidar. trans_index: %d",
                buffer.trans_index,
            )
        info.flag = buffer.flag
        info.trans_index = buffer.trans_index

    def stop_file(self, buffer: WriteBuffer) -> None:
        """Close the open file of the type and reveal it."""
        log_type = buffer.log_type
        info = self.current_files[log_type]
        if info.flag == LogFlag.END_FILE and info.trans_index + 1 != buffer.trans_index:
            logger.error(
                "Multiple terminal commands to close the log files with discontinuous trans_index."
            )
        if info.fp is not None:
            info.fp.close()
            info.fp = None
            restore_hidden_file(self.branch_paths.get(log_type, self._branch_path(log_type)), info.file_name)
        info.flag = buffer.flag
        info.trans_index = buffer.trans_index

    def write(self) -> None:
        """Handle every chunk queued so far."""
        with self._queue_lock:
            pending, self._queue = self._queue, []

        for buffer in pending:
            info = self.current_files[buffer.log_type]
            if buffer.trans_index < info.trans_index and buffer.flag != LogFlag.CREATE_FILE:
                continue
            if buffer.flag == LogFlag.CREATE_FILE:
                self.create_file(buffer)
            elif buffer.flag == LogFlag.END_FILE:
                self.stop_file(buffer)
            elif buffer.flag == LogFlag.TRANSFER_DATA:
                self.write_file(buffer)