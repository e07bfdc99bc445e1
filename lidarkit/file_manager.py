"""Helpers for the directories where lidar log files are stored."""

from __future__ import annotations

import logging
import os
from os import PathLike
from typing import Union

logger = logging.getLogger(__name__)

LENGTH_OF_TIME_IN_FILENAME = 19

PathArg = Union[str, "PathLike[str]"]


def dir_total_size(path: PathArg) -> int:
    """Total size in bytes of a file, or of every file below a directory."""
    try:
        info = os.stat(path)
    except OSError:
        logger.error("get directory stat error: %s", path)
        return 0
    if os.path.isfile(path):
        return info.st_size
    if not os.path.isdir(path):
        logger.warning("unknown directory type: %s", path)
        return 0
    try:
        names = os.listdir(path)
    except OSError:
        logger.error("opendir: %s failed", path)
        return 0
    return sum(dir_total_size(os.path.join(path, name)) for name in names)


def file_name_key(file_name: str) -> str:
    """The recording-time prefix by which log files are ordered."""
    if not file_name:
        raise ValueError("file name is empty")
    return file_name[:LENGTH_OF_TIME_IN_FILENAME]


def _collect(path: PathArg, found: list[tuple[str, str]]) -> None:
    with os.scandir(path) as entries:
        for entry in entries:
            if entry.is_symlink():
                continue
            if entry.is_file(follow_symlinks=False):
                if not entry.name.startswith("."):
                    found.append((file_name_key(entry.name), entry.name))
            elif entry.is_dir(follow_symlinks=False):
                try:
                    _collect(entry.path, found)
                except OSError:
                    logger.error("opendir: %s failed", entry.path)


def collect_file_names(path: PathArg) -> list[tuple[str, str]]:
    """(time key, file name) of every visible log file below path, oldest key first."""
    found: list[tuple[str, str]] = []
    _collect(path, found)
    found.sort(key=lambda item: item[0])
    return found


def restore_hidden_file(directory: PathArg, file_name: str) -> bool:
    """Rename '.name' to 'name' in directory, replacing any existing file."""
    if not file_name or not file_name.startswith("."):
        return False
    source = os.path.join(directory, file_name)
    if not os.path.exists(source):
        logger.warning("The file to be renamed : %s does not exist", file_name)
        return False
    target = os.path.join(directory, file_name[1:])
    if os.path.exists(target):
        try:
            os.remove(target)
        except OSError as exc:
            logger.warning("Failed to remove the existing file: %s. %s", file_name[1:], exc)
    try:
        os.rename(source, target)
    except OSError as exc:
        logger.warning("Rename hidden file %s failed. %s", file_name, exc)
        return False
    return True


def _walk_regular(path: PathArg, action) -> int:
    count = 0
    with os.scandir(path) as entries:
        for entry in entries:
            if entry.is_symlink():
                continue
            if entry.is_file(follow_symlinks=False):
                if entry.name.startswith(".") and action(path, entry.name):
                    count += 1
            elif entry.is_dir(follow_symlinks=False):
                try:
                    count += _walk_regular(entry.path, action)
                except OSError:
                    logger.error("opendir: %s failed", entry.path)
    return count


def restore_hidden_files(path: PathArg) -> int:
    """Unhide every hidden file below path; return how many were renamed."""
    if not os.fspath(path):
        raise ValueError("directory name is empty")
    return _walk_regular(path, restore_hidden_file)


def _delete(directory: PathArg, file_name: str) -> bool:
    try:
        os.remove(os.path.join(directory, file_name))
    except OSError:
        return False
    return True


def delete_hidden_files(path: PathArg) -> int:
    """Remove every hidden file below path; return how many were removed."""
    return _walk_regular(path, _delete)


def make_directory(path: PathArg) -> bool:
    """Create one directory; False if it could not be created."""
    try:
        os.mkdir(path, 0o777)
    except OSError:
        return False
    return True


def directory_exists(path: PathArg) -> bool:
    """Whether anything exists at path."""
    return os.path.exists(path)