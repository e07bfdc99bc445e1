"""Parsing of the JSON configuration that describes lidars and SDK options."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import IntEnum
from os import PathLike
from typing import Any, Union

logger = logging.getLogger(__name__)

_UINT32_MAX = 0xFFFFFFFF
_PORT_FIELDS = (
    "cmd_data_port",
    "push_msg_port",
    "point_data_port",
    "imu_data_port",
    "log_data_port",
)


class ConfigError(ValueError):
    """Raised when a configuration document cannot be read or is invalid."""


class DeviceType(IntEnum):
    """Lidar device types that may appear in a configuration document."""

    MID360 = 9
    INDUSTRIAL_HAP = 10


# Section names in the document, in the order they are parsed.
_DEVICE_SECTIONS = (
    ("HAP", DeviceType.INDUSTRIAL_HAP),
    ("MID360", DeviceType.MID360),
)


@dataclass
class LidarNetInfo:
    """Network endpoints on the lidar side."""

    lidar_ipaddr: str = ""
    cmd_data_port: int = 0
    push_msg_port: int = 0
    point_data_port: int = 0
    imu_data_port: int = 0
    log_data_port: int = 0


@dataclass
class HostNetInfo:
    """Network endpoints on the host side."""

    host_ip: str = ""
    multicast_ip: str = ""
    cmd_data_port: int = 0
    push_msg_port: int = 0
    point_data_port: int = 0
    imu_data_port: int = 0
    log_data_port: int = 0


@dataclass
class GeneralCfgInfo:
    """General per-lidar options; the document currently defines none."""


@dataclass
class LidarCfg:
    """Full configuration of one lidar."""

    device_type: DeviceType
    lidar_net_info: LidarNetInfo = field(default_factory=LidarNetInfo)
    host_net_info: HostNetInfo = field(default_factory=HostNetInfo)
    general_cfg_info: GeneralCfgInfo = field(default_factory=GeneralCfgInfo)


@dataclass
class LoggerCfg:
    """Settings for storing logs pushed by the lidars."""

    lidar_log_enable: bool = False
    lidar_log_cache_size: int = 0
    lidar_log_path: str = "./"


@dataclass
class FrameworkCfg:
    """Settings of the SDK framework itself."""

    master_sdk: bool = True


@dataclass
class ParsedConfig:
    """Everything read from one configuration document."""

    lidars: list[LidarCfg] = field(default_factory=list)
    custom_lidars: list[LidarCfg] = field(default_factory=list)
    logger: LoggerCfg = field(default_factory=LoggerCfg)
    framework: FrameworkCfg = field(default_factory=FrameworkCfg)


def _is_uint(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= _UINT32_MAX


def _require_object(value: Any, what: str) -> Mapping:
    if not isinstance(value, Mapping):
        raise ConfigError(f"{what} is not an object")
    return value


def _parse_framework(document: Mapping) -> FrameworkCfg:
    if "master_sdk" not in document:
        logger.info("set master/slave sdk to master sdk by default")
        return FrameworkCfg(master_sdk=True)
    value = document["master_sdk"]
    if not isinstance(value, bool):
        raise ConfigError("master_sdk is not a boolean")
    logger.info("set master/slave sdk to %s sdk", "master" if value else "slave")
    return FrameworkCfg(master_sdk=value)


def _parse_logger(document: Mapping) -> LoggerCfg:
    if "lidar_log_enable" not in document:
        cfg = LoggerCfg(lidar_log_enable=False, lidar_log_cache_size=0, lidar_log_path="./")
        path = document.get("lidar_log_path")
        if isinstance(path, str):
            cfg.lidar_log_path = path
        logger.info("Livox lidar logger disable.")
        return cfg

    enable = document["lidar_log_enable"]
    if not isinstance(enable, bool):
        raise ConfigError("lidar_log_enable is not a boolean")
    cache_size = document.get("lidar_log_cache_size_MB")
    if not _is_uint(cache_size):
        raise ConfigError("lidar_log_cache_size_MB is missing or not an unsigned integer")
    path = document.get("lidar_log_path")
    if not isinstance(path, str):
        raise ConfigError("lidar_log_path is missing or not a string")
    logger.info(
        "Lidar log cfg, lidar_log_enable:%s, lidar_log_cache_size_MB:%s, lidar_log_path:%s",
        enable,
        cache_size,
        path,
    )
    return LoggerCfg(lidar_log_enable=enable, lidar_log_cache_size=cache_size, lidar_log_path=path)


def _read_ports(source: Mapping, what: str) -> dict[str, int]:
    ports = {}
    for name in _PORT_FIELDS:
        value = source.get(name)
        if not _is_uint(value):
            raise ConfigError(f"{what}: {name} is missing or not an unsigned integer")
        ports[name] = value
    return ports


def _parse_lidar_net_info(section: Mapping, lidar_ip: str) -> LidarNetInfo:
    if "lidar_net_info" not in section:
        raise ConfigError("lidar_net_info is missing")
    net = _require_object(section["lidar_net_info"], "lidar_net_info")
    return LidarNetInfo(lidar_ipaddr=lidar_ip, **_read_ports(net, "lidar_net_info"))


def _parse_host_net_info(host: Mapping) -> HostNetInfo:
    if "host_ip" not in host and "cmd_data_ip" not in host:
        raise ConfigError("host_net_info has neither host_ip nor cmd_data_ip")
    for name in ("host_ip", "cmd_data_ip"):
        if name in host and not isinstance(host[name], str):
            raise ConfigError(f"host_net_info: {name} is not a string")

    # host_ip takes precedence over cmd_data_ip when both are given.
    host_ip = host.get("host_ip", host.get("cmd_data_ip", ""))

    multicast_ip = ""
    if "multicast_ip" in host:
        multicast_ip = host["multicast_ip"]
        if not isinstance(multicast_ip, str):
            raise ConfigError("host_net_info: multicast_ip is not a string")

    return HostNetInfo(host_ip=host_ip, multicast_ip=multicast_ip, **_read_ports(host, "host_net_info"))


def _build_lidar_cfg(section: Mapping, host: Any, device_type: DeviceType, lidar_ip: str = "") -> LidarCfg:
    host = _require_object(host, "host_net_info entry")
    return LidarCfg(
        device_type=device_type,
        lidar_net_info=_parse_lidar_net_info(section, lidar_ip),
        host_net_info=_parse_host_net_info(host),
        general_cfg_info=GeneralCfgInfo(),
    )


def _parse_device_section(section: Mapping, device_type: DeviceType, result: ParsedConfig) -> None:
    host_net_info = section.get("host_net_info")
    if isinstance(host_net_info, list):
        for host in host_net_info:
            host = _require_object(host, "host_net_info entry")
            lidar_ips = host.get("lidar_ip")
            if not isinstance(lidar_ips, list):
                result.lidars.append(_build_lidar_cfg(section, host, device_type))
                continue
            for lidar_ip in lidar_ips:
                if not isinstance(lidar_ip, str):
                    raise ConfigError("lidar_ip entry is not a string")
                result.custom_lidars.append(_build_lidar_cfg(section, host, device_type, lidar_ip))
    elif isinstance(host_net_info, Mapping):
        result.lidars.append(_build_lidar_cfg(section, host_net_info, device_type))
    else:
        raise ConfigError("host_net_info is missing or is neither an object nor an array")


def parse_config(document: Mapping) -> ParsedConfig:
    """Build a ParsedConfig from an already decoded JSON document."""
    document = _require_object(document, "configuration document")
    result = ParsedConfig(
        framework=_parse_framework(document),
        logger=_parse_logger(document),
    )
    for key, device_type in _DEVICE_SECTIONS:
        section = document.get(key)
        if isinstance(section, Mapping):
            _parse_device_section(section, device_type, result)
    return result


def parse_config_file(path: Union[str, "PathLike[str]"]) -> ParsedConfig:
    """Read and parse a JSON configuration file."""
    try:
        with open(path, "rb") as handle:
            raw = handle.read()
    except OSError as exc:
        raise ConfigError(f"can not open config file {path!s}: {exc}") from exc
    try:
        document = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ConfigError(f"config file {path!s} is not valid JSON: {exc}") from exc
    return parse_config(document)