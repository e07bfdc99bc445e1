from collections import defaultdict

import pytest

from lidarkit.firmware import (
    ENL_FILE_VERSION_V2,
    ENL_FILE_VERSION_V3,
    GENERAL_TRY_COUNT_LIMIT,
    GET_PROCESS_TRY_COUNT_LIMIT,
    Firmware,
    FirmwareDeviceType,
    FirmwareHeader,
    FirmwareType,
    RequestUpgradeReturnCode,
)
from lidarkit.upgrader import (
    ERASE_FIRMWARE,
    READ_LENGTH,
    STATUS_SUCCESS,
    CommandResponse,
    LidarUpgrader,
    UpgradeEvent,
    UpgradeProgress,
    UpgradeState,
)

FAILED = 1


def make_firmware(length=2500, version=ENL_FILE_VERSION_V2, checksum=b"\x01\x02\x03\x04"):
    header = FirmwareHeader(
        file_version=version,
        firmware_version=0x01020304,
        firmware_length=length,
        firmware_type=FirmwareType.APP,
        device_type=FirmwareDeviceType.LIDAR_HAP,
        encrypt_type=1,
        checksum_type=2,
        checksum_length=len(checksum),
        checksum=checksum.ljust(128, b"\x00"),
        hw_whitelist=b"\x07" * 128,
        modify_time=123456,
    )
    data = bytes(i % 251 for i in range(length))
    return Firmware(header=header, data=data, tail=bytes(16), file_size=length + 300)


class FakeCommands:
    def __init__(self, respond=True, scripts=None, defaults=None):
        self.respond = respond
        self.scripts = {name: list(items) for name, items in (scripts or {}).items()}
        self.defaults = {
            "start_upgrade": (STATUS_SUCCESS, CommandResponse()),
            "xfer_firmware": (STATUS_SUCCESS, CommandResponse()),
            "complete_xfer_firmware": (STATUS_SUCCESS, CommandResponse()),
            "get_upgrade_progress": (STATUS_SUCCESS, CommandResponse(progress=100)),
            "request_reboot": (STATUS_SUCCESS, CommandResponse()),
        }
        self.defaults.update(defaults or {})
        self.calls = defaultdict(list)

    def _reply(self, name, handle, payload, callback):
        self.calls[name].append(payload)
        if not self.respond:
            return 0
        script = self.scripts.get(name)
        status, response = script.pop(0) if script else self.defaults[name]
        callback(status, handle, response)
        return 0

    def start_upgrade(self, handle, request, callback):
        return self._reply("start_upgrade", handle, request, callback)

    def xfer_firmware(self, handle, request, callback):
        return self._reply("xfer_firmware", handle, request, callback)

    def complete_xfer_firmware(self, handle, request, callback):
        return self._reply("complete_xfer_firmware", handle, request, callback)

    def get_upgrade_progress(self, handle, callback):
        return self._reply("get_upgrade_progress", handle, None, callback)

    def request_reboot(self, handle, callback):
        return self._reply("request_reboot", handle, None, callback)


def make_upgrader(firmware=None, commands=None, handle=7):
    upgrader = LidarUpgrader(firmware or make_firmware(), handle, commands or FakeCommands())
    upgrader.xfer_delay = 0
    upgrader.erase_retry_delay = 0
    seen = []
    upgrader.add_progress_observer(lambda h, state: seen.append((h, state)))
    return upgrader, seen


def run(upgrader):
    upgrader.handle_event(UpgradeEvent.REQUEST_UPGRADE, 10)


def test_full_upgrade_reaches_idle_and_sends_all_data():
    firmware = make_firmware()
    commands = FakeCommands()
    upgrader, seen = make_upgrader(firmware, commands)
    run(upgrader)
    assert upgrader.state == UpgradeState.IDLE
    assert upgrader.is_complete
    chunks = commands.calls["xfer_firmware"]
    assert b"".join(chunk.data for chunk in chunks) == firmware.data
    assert [chunk.offset for chunk in chunks] == [0, READ_LENGTH, 2 * READ_LENGTH]
    assert all(chunk.length == len(chunk.data) for chunk in chunks)
    assert len(commands.calls["request_reboot"]) == 1
    assert seen[0] == (7, UpgradeProgress(UpgradeEvent.REQUEST_UPGRADE, 10))
    assert seen[-1] == (7, UpgradeProgress(UpgradeEvent.REINIT, 100))


def test_threaded_start_and_wait_succeeds():
    upgrader, _ = make_upgrader()
    assert upgrader.start() is True
    assert upgrader.wait(timeout=5) is True
    assert upgrader.state == UpgradeState.IDLE


def test_wait_times_out_when_lidar_never_answers():
    commands = FakeCommands(respond=False)
    upgrader, _ = make_upgrader(commands=commands)
    upgrader.start()
    with pytest.raises(TimeoutError):
        upgrader.wait(timeout=0.2)
    assert upgrader.state == UpgradeState.REQUEST
    assert len(commands.calls["start_upgrade"]) == 1


def test_start_upgrade_gives_up_after_try_limit():
    commands = FakeCommands(defaults={"start_upgrade": (FAILED, None)})
    upgrader, seen = make_upgrader(commands=commands)
    run(upgrader)
    assert len(commands.calls["start_upgrade"]) == GENERAL_TRY_COUNT_LIMIT
    assert upgrader.is_error
    assert upgrader.state == UpgradeState.ERR
    assert seen[-1][1] == UpgradeProgress(UpgradeEvent.ERR, 100)
    assert upgrader.try_count == 0


def test_busy_lidar_is_asked_again():
    busy = (STATUS_SUCCESS, CommandResponse(ret_code=RequestUpgradeReturnCode.SYSTEM_IS_NOT_READY))
    commands = FakeCommands(scripts={"start_upgrade": [busy]})
    upgrader, _ = make_upgrader(commands=commands)
    run(upgrader)
    assert len(commands.calls["start_upgrade"]) == 2
    assert upgrader.is_complete


def test_erase_firmware_reply_retries_request():
    erase = (STATUS_SUCCESS, CommandResponse(ret_code=ERASE_FIRMWARE))
    commands = FakeCommands(scripts={"start_upgrade": [erase, erase]})
    upgrader, _ = make_upgrader(commands=commands)
    run(upgrader)
    assert len(commands.calls["start_upgrade"]) == 3
    assert upgrader.is_complete


def test_other_start_ret_code_is_an_error():
    refused = (STATUS_SUCCESS, CommandResponse(ret_code=RequestUpgradeReturnCode.FIRMWARE_TYPE_MISMATCH))
    commands = FakeCommands(scripts={"start_upgrade": [refused]})
    upgrader, _ = make_upgrader(commands=commands)
    run(upgrader)
    assert upgrader.state == UpgradeState.ERR
    assert commands.calls["xfer_firmware"] == []


def test_xfer_ret_code_is_an_error():
    commands = FakeCommands(scripts={"xfer_firmware": [(STATUS_SUCCESS, CommandResponse(ret_code=5))]})
    upgrader, _ = make_upgrader(commands=commands)
    run(upgrader)
    assert upgrader.state == UpgradeState.ERR
    assert len(commands.calls["xfer_firmware"]) == 1
    assert commands.calls["complete_xfer_firmware"] == []


def test_xfer_timeout_resends_same_chunk():
    firmware = make_firmware()
    commands = FakeCommands(scripts={"xfer_firmware": [(FAILED, None)]})
    upgrader, _ = make_upgrader(firmware, commands)
    run(upgrader)
    offsets = [chunk.offset for chunk in commands.calls["xfer_firmware"]]
    assert offsets[0] == offsets[1] == 0
    assert upgrader.is_complete


def test_v3_package_sends_extended_request():
    firmware = make_firmware(version=ENL_FILE_VERSION_V3)
    commands = FakeCommands()
    upgrader, _ = make_upgrader(firmware, commands)
    run(upgrader)
    request = commands.calls["start_upgrade"][0]
    assert request.is_v3
    assert request.firmware_version == firmware.header.firmware_version
    assert request.firmware_buildtime == firmware.header.modify_time
    assert request.hw_whitelist == firmware.header.hw_whitelist
    assert request.firmware_length == firmware.header.firmware_length


def test_v2_package_sends_basic_request():
    commands = FakeCommands()
    upgrader, _ = make_upgrader(commands=commands)
    run(upgrader)
    request = commands.calls["start_upgrade"][0]
    assert not request.is_v3
    assert request.hw_whitelist is None
    assert request.dev_type == FirmwareDeviceType.LIDAR_HAP


def test_complete_request_carries_checksum():
    checksum = b"\xaa\xbb\xcc\xdd\xee"
    firmware = make_firmware(checksum=checksum)
    commands = FakeCommands()
    upgrader, _ = make_upgrader(firmware, commands)
    run(upgrader)
    request = commands.calls["complete_xfer_firmware"][0]
    assert request.checksum == checksum
    assert request.checksum_length == len(checksum)


def test_progress_reports_stay_within_range():
    partial = (STATUS_SUCCESS, CommandResponse(progress=40))
    commands = FakeCommands(scripts={"get_upgrade_progress": [partial, partial]})
    upgrader, seen = make_upgrader(commands=commands)
    run(upgrader)
    progress_values = [state.progress for _, state in seen if state.event == UpgradeEvent.GET_UPGRADE_PROGRESS]
    assert len(commands.calls["get_upgrade_progress"]) == 3
    assert progress_values and all(50 <= value < 100 for value in progress_values)
    assert upgrader.is_complete


def test_progress_query_gives_up_after_its_limit():
    commands = FakeCommands(defaults={"get_upgrade_progress": (FAILED, None)})
    upgrader, _ = make_upgrader(commands=commands)
    run(upgrader)
    assert len(commands.calls["get_upgrade_progress"]) == GET_PROCESS_TRY_COUNT_LIMIT
    assert upgrader.state == UpgradeState.ERR


def test_reboot_failures_still_end_idle():
    commands = FakeCommands(defaults={"request_reboot": (FAILED, None)})
    upgrader, seen = make_upgrader(commands=commands)
    run(upgrader)
    assert len(commands.calls["request_reboot"]) == GENERAL_TRY_COUNT_LIMIT
    assert upgrader.state == UpgradeState.IDLE
    assert seen[-1][1].event == UpgradeEvent.REINIT


def test_xfer_past_end_raises():
    upgrader, _ = make_upgrader(make_firmware(length=0))
    with pytest.raises(ValueError):
        upgrader.xfer_firmware()


def test_unmatched_event_keeps_state_but_notifies():
    commands = FakeCommands()
    upgrader, seen = make_upgrader(commands=commands)
    upgrader.handle_event(UpgradeEvent.COMPLETE, 5)
    assert upgrader.state == UpgradeState.IDLE
    assert seen == [(7, UpgradeProgress(UpgradeEvent.COMPLETE, 5))]
    assert not commands.calls


def test_timeout_event_enters_timeout_state():
    upgrader, _ = make_upgrader()
    upgrader.handle_event(UpgradeEvent.TIMEOUT, 100)
    assert upgrader.state == UpgradeState.TIMEOUT
    assert upgrader.is_error
    assert not upgrader.is_complete