import dataclasses

import pytest

from lidarkit.firmware import (
    ENL_FILE_VERSION_V3,
    HEADER_SIZE,
    MIN_FILE_SIZE,
    TAIL_SIZE,
    Firmware,
    FirmwareError,
    FirmwareHeader,
    crc16_mcrf4xx,
    load_firmware,
    parse_header,
)


def _signed(header):
    raw = header.pack()
    return dataclasses.replace(header, header_checksum=crc16_mcrf4xx(raw[:-2]))


def _write_package(path, payload, tail=b"T" * 16, **fields):
    header = _signed(FirmwareHeader(firmware_length=len(payload), **fields))
    path.write_bytes(header.pack() + payload + tail)
    return header


def test_crc_check_value():
    assert crc16_mcrf4xx(b"123456789") == 0x6F91


def test_crc_of_empty_is_initial_value():
    assert crc16_mcrf4xx(b"") == 0xFFFF


def test_crc_detects_change():
    assert crc16_mcrf4xx(b"abc") != crc16_mcrf4xx(b"abd")


def test_pack_has_header_size():
    assert len(FirmwareHeader().pack()) == HEADER_SIZE


def test_smallest_valid_package_loads(tmp_path):
    path = tmp_path / "fw.bin"
    _write_package(path, b"\x01", tail=b"S" * TAIL_SIZE)
    firmware = load_firmware(path)
    assert firmware.file_size == MIN_FILE_SIZE
    assert firmware.data == b"\x01"


def test_header_round_trip():
    header = FirmwareHeader(
        file_version=ENL_FILE_VERSION_V3,
        firmware_version=7,
        firmware_length=4096,
        firmware_type=1,
        device_type=10,
        encrypt_type=2,
        reserved=b"\x01\x02",
        checksum_type=3,
        checksum_length=16,
        checksum=bytes(range(128)),
        hw_whitelist=bytes(reversed(range(128))),
        modify_time=123456789012,
        header_checksum=0xBEEF,
    )
    assert parse_header(header.pack()) == header


def test_parse_header_too_short():
    with pytest.raises(FirmwareError):
        parse_header(b"\x00" * (HEADER_SIZE - 1))


def test_pack_out_of_range_field():
    with pytest.raises(FirmwareError):
        FirmwareHeader(firmware_type=300).pack()


def test_load_firmware(tmp_path):
    path = tmp_path / "fw.bin"
    payload = bytes(range(256)) * 2
    header = _write_package(path, payload, file_version=ENL_FILE_VERSION_V3, device_type=10)
    firmware = load_firmware(path)
    assert isinstance(firmware, Firmware)
    assert firmware.header == header
    assert firmware.data == payload
    assert firmware.tail == b"T" * 16
    assert firmware.file_size == HEADER_SIZE + len(payload) + 16
    assert firmware.package_version == ENL_FILE_VERSION_V3


def test_load_firmware_bad_checksum(tmp_path):
    path = tmp_path / "fw.bin"
    header = _signed(FirmwareHeader(firmware_length=32))
    broken = dataclasses.replace(header, header_checksum=header.header_checksum ^ 1)
    path.write_bytes(broken.pack() + b"\x00" * 32 + b"\x00" * 16)
    with pytest.raises(FirmwareError):
        load_firmware(path)


def test_load_firmware_too_small(tmp_path):
    path = tmp_path / "fw.bin"
    path.write_bytes(b"\x00" * (MIN_FILE_SIZE - 1))
    with pytest.raises(FirmwareError):
        load_firmware(path)


def test_load_firmware_missing_file(tmp_path):
    with pytest.raises(FirmwareError):
        load_firmware(tmp_path / "absent.bin")


def test_load_firmware_truncated_data_still_loads(tmp_path):
    path = tmp_path / "fw.bin"
    payload = b"\xAA" * 20
    header = _signed(FirmwareHeader(firmware_length=100))
    path.write_bytes(header.pack() + payload)
    firmware = load_firmware(path)
    assert firmware.data == payload
    assert firmware.tail == b""
    assert firmware.header.firmware_length == 100