# lidarkit

`lidarkit` is a library for the host side of working with lidar units. It has no command-line tool. It covers three jobs:

- Reading and checking the JSON configuration that describes each unit and the host network endpoints it talks to.
- Writing the log files that units push to disk. Files stay hidden while they are being written. The oldest logs are deleted once a log directory grows past its size limit.
- Reading encrypted firmware packages and moving one or more units through the upgrade state machine.

`lidarkit` does not do any networking of its own. You supply the functions that send commands to a unit. `lidarkit` builds the requests and reacts to the replies that you feed back to it through callbacks.

## Installation

```
pip install lidarkit
```

To run the test suite, install the `test` extra: `pip install lidarkit[test]`.

## Configuration

```python
from lidarkit.config import parse_config_file, ConfigError
from lidarkit.params_check import check_params, ParamsError

try:
    cfg = parse_config_file("lidar_config.json")
    check_params(cfg.lidars, cfg.custom_lidars)
except (ConfigError, ParamsError) as exc:
    print(f"bad configuration: {exc}")
```

There are two ways to parse a configuration:

- `parse_config(document)` takes a document that has already been decoded.
- `parse_config_file(path)` reads the JSON from a file.

Both return a `ParsedConfig`, which holds:

- `lidars`: generic `LidarCfg` entries.
- `custom_lidars`: entries that come from a `lidar_ip` list.
- `logger`: a `LoggerCfg`.
- `framework`: a `FrameworkCfg`.

The `HAP` and `MID360` sections are recognised. Each one accepts `host_net_info` as either an object or an array. If the document is missing a required field or a field has the wrong type, parsing raises `ConfigError`.

`check_params(lidars, custom_lidars)` raises `ParamsError` in these cases:

- Both lists are missing or empty.
- Two units share an IP address.
- A custom entry has no IP address.
- A multicast address is outside the range 224.0.0.1–239.255.255.255.

For MID360 units, `check_params` also resets the lidar ports in place to the fixed values those units use. It does this through `check_port` and `normalize_ports`.

## The SDK facade

```python
from lidarkit.sdk import LidarSdk
from lidarkit.logger_manager import LogType

def send_command(handle, command_id, payload, callback):
    ...  # deliver the logger command to the unit, return a status code (0 = success)

sdk = LidarSdk(send_command, upgrade_commands)
config = sdk.init("lidar_config.json")
sdk.start()

sdk.start_logger(handle, LogType.REAL_TIME, callback)
# ...
sdk.stop_logger(handle, LogType.REAL_TIME, callback)

sdk.set_upgrade_firmware_path("firmware.bin")
sdk.set_upgrade_progress_callback(lambda handle, progress: print(handle, progress.event, progress.progress))
results = sdk.upgrade_lidars([handle])   # {handle: True/False}

sdk.uninit()
```

`init` raises `SdkError` in these cases:

- The SDK is already initialised.
- No path is given.
- The configuration cannot be parsed, or it fails `check_params`.
- The log directory cannot be created.

`LidarSdk` can also be used as a context manager. On exit it calls `uninit`.

`upgrade_commands` is any object that provides the methods of the `lidarkit.upgrader.UpgradeCommands` protocol:

- `start_upgrade`
- `xfer_firmware`
- `complete_xfer_firmware`
- `get_upgrade_progress`
- `request_reboot`

Each of these methods is passed a callback. Call it as `callback(status, handle, CommandResponse)` when the unit replies.

## Lower-level pieces

- `lidarkit.firmware` handles firmware packages:
  - `load_firmware` reads a package and verifies the CRC-16/MCRF4XX header checksum. It raises `FirmwareError` on failure.
  - `parse_header` decodes a header.
  - `FirmwareHeader.pack` encodes a header.
  - `crc16_mcrf4xx` computes the checksum.
- `lidarkit.upgrader` provides `LidarUpgrader`, the upgrade state machine for one unit.
  - `start()` runs it on a background thread.
  - `wait(timeout)` returns `True` on success and `False` on error.
  - Progress observers receive `(handle, UpgradeProgress)`.
- `lidarkit.upgrade_manager` provides `UpgradeManager`. It loads one firmware file, upgrades several units with it, and then releases the firmware.
- `lidarkit.logger_handler` provides `LoggerHandler`, which writes one unit's `LogPacket`s to files under `type_<log type>/`. Each file is named `.<time>_<serial>_<type>_<index>.dat` while it is being written, and the leading dot is removed when the file is closed.
- `lidarkit.logger_manager` provides `LoggerManager`, which:
  - tracks units with `add_device` and `remove_device`;
  - sends start and stop logging commands;
  - acknowledges and routes incoming packets with `handle_packet`;
  - trims old files with `cycle_delete_once`. A background thread also does this every ten minutes, and whenever a file ends.

  `compute_cache_sizes` splits the configured cache size between real-time logs and exception logs.
- `lidarkit.file_manager` has directory helpers for log storage:
  - `dir_total_size`
  - `collect_file_names`, which orders files by their time prefix
  - `restore_hidden_file` and `restore_hidden_files`
  - `delete_hidden_files`
  - `make_directory`
  - `directory_exists`

## What the package does not do

- It has no transport. It opens no sockets, encodes no command frames, and does not discover units on the network. All of that belongs to the `send_command` function and the `UpgradeCommands` object that you supply.
- `LoggerManager.handle_packet` expects a `LogPacket` that has already been decoded. It does not parse raw bytes from the wire.
- It does not receive or decode point cloud or IMU data.
- It does not set unit parameters such as scan pattern, IP addresses or work mode.
- It ships no command-line program.