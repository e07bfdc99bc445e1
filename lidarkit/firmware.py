"""Reading and validating encrypted lidar firmware packages."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from os import PathLike
from typing import Union

logger = logging.getLogger(__name__)

MD5_SIGNATURE_LENGTH = 16
ENL_FILE_VERSION_V2 = 0x02000000
ENL_FILE_VERSION_V3 = 0x03000000

GENERAL_TRY_COUNT_LIMIT = 10
GET_PROCESS_TRY_COUNT_LIMIT = 30
GET_PROGRESS_TRY_COUNT_LIMIT = 10

CHECKSUM_FIELD_LENGTH = 128
HW_WHITELIST_LENGTH = 128

_HEADER_STRUCT = struct.Struct(
    f"<IIIBBB2sBH{CHECKSUM_FIELD_LENGTH}s{HW_WHITELIST_LENGTH}sQH"
)
HEADER_SIZE = _HEADER_STRUCT.size
TAIL_SIZE = MD5_SIGNATURE_LENGTH
MIN_FILE_SIZE = HEADER_SIZE + TAIL_SIZE + 1


class FirmwareError(ValueError):
    """Raised when a firmware package cannot be read or is malformed."""


class FirmwareType(IntEnum):
    """Kind of image held by a firmware package."""

    MULTI_APP = 0
    APP = 1
    LOADER = 2
    UNKNOWN = 3


class FirmwareDeviceType(IntEnum):
    """Device a firmware package is built for."""

    HUB = 0
    LIDAR_MID40 = 1
    LIDAR_TELE = 2
    LIDAR_HORIZON = 3
    LIDAR_HUB_V2 = 4
    LIDAR_MID_LITE = 5
    LIDAR_MID70 = 6
    LIDAR_AVIA = 7
    LIDAR_XXX1 = 8
    LIDAR_XXX2 = 9
    LIDAR_HAP = 10
    UNKNOWN = 11


class RequestUpgradeReturnCode(IntEnum):
    """Return codes of an upgrade request."""

    EVERYTHING_IS_OK = 0
    FIRMWARE_OUT_OF_LENGTH = 1
    SYSTEM_IS_NOT_READY = 2
    FIRMWARE_TYPE_MISMATCH = 3
    UPGRADE_STATE_MISMATCH = 4


def crc16_mcrf4xx(data: bytes) -> int:
    """CRC-16/MCRF4XX: reflected polynomial 0x1021, initial value 0xFFFF."""
    crc = 0xFFFF
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 1:
                crc = (crc >> 1) ^ 0x8408
            else:
                crc >>= 1
    return crc


@dataclass
class FirmwareHeader:
    """Fixed-size header at the start of a firmware package."""

    file_version: int = 0
    firmware_version: int = 0
    firmware_length: int = 0
    firmware_type: int = 0
    device_type: int = 0
    encrypt_type: int = 0
    reserved: bytes = b"\x00\x00"
    checksum_type: int = 0
    checksum_length: int = 0
    checksum: bytes = field(default_factory=lambda: bytes(CHECKSUM_FIELD_LENGTH))
    hw_whitelist: bytes = field(default_factory=lambda: bytes(HW_WHITELIST_LENGTH))
    modify_time: int = 0
    header_checksum: int = 0

    def pack(self) -> bytes:
        """Encode the header in its on-disk little-endian layout."""
        try:
            return _HEADER_STRUCT.pack(
                self.file_version,
                self.firmware_version,
                self.firmware_length,
                self.firmware_type,
                self.device_type,
                self.encrypt_type,
                self.reserved,
                self.checksum_type,
                self.checksum_length,
                self.checksum,
                self.hw_whitelist,
                self.modify_time,
                self.header_checksum,
            )
        except struct.error as exc:
            raise FirmwareError(f"header field out of range: {exc}") from exc


def parse_header(data: bytes) -> FirmwareHeader:
    """Decode a FirmwareHeader from the first bytes of data."""
    if len(data) < HEADER_SIZE:
        raise FirmwareError(f"header needs {HEADER_SIZE} bytes, got {len(data)}")
    return FirmwareHeader(*_HEADER_STRUCT.unpack_from(data))


def _computed_header_checksum(raw_header: bytes) -> int:
    return crc16_mcrf4xx(raw_header[: HEADER_SIZE - 2])


@dataclass
class Firmware:
    """A loaded firmware package."""

    header: FirmwareHeader
    data: bytes
    tail: bytes
    file_size: int

    @property
    def package_version(self) -> int:
        return self.header.file_version


def load_firmware(path: Union[str, "PathLike[str]"]) -> Firmware:
    """Read a firmware package and verify its header checksum."""
    try:
        with open(path, "rb") as handle:
            raw = handle.read()
    except OSError as exc:
        raise FirmwareError(f"open {path!s} firmware file fail: {exc}") from exc

    if len(raw) < MIN_FILE_SIZE:
        raise FirmwareError("firmware file size is too small")

    header = parse_header(raw)
    logger.info("This firmware is used for device[%d].", header.device_type)
    crc = _computed_header_checksum(raw)
    if crc != header.header_checksum:
        raise FirmwareError(
            f"header checksum [{crc:04x} {header.header_checksum:04x}] error"
        )

    logger.info("Firmware raw data size : %d", header.firmware_length)
    data_end = HEADER_SIZE + header.firmware_length
    data = raw[HEADER_SIZE:data_end]
    tail = raw[data_end : data_end + TAIL_SIZE]
    if len(data) == header.firmware_length and len(tail) == TAIL_SIZE:
        logger.info("All firmware data have be read successfully.")
    else:
        logger.warning("Read firmware fail[%d]!", len(raw) - HEADER_SIZE)
    return Firmware(header=header, data=data, tail=tail, file_size=len(raw))