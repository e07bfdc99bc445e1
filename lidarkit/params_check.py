"""Consistency checks for parsed lidar configurations."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Optional

from lidarkit.config import DeviceType, LidarCfg, LidarNetInfo

logger = logging.getLogger(__name__)

MID360_CMD_PORT = 56100
MID360_PUSH_MSG_PORT = 56200
MID360_POINT_CLOUD_PORT = 56300
MID360_IMU_DATA_PORT = 56400
MID360_LOG_PORT = 56500

_MID360_PORTS = (
    ("cmd_data_port", MID360_CMD_PORT, "command data"),
    ("push_msg_port", MID360_PUSH_MSG_PORT, "push msg"),
    ("point_data_port", MID360_POINT_CLOUD_PORT, "point cloud"),
    ("imu_data_port", MID360_IMU_DATA_PORT, "imu data"),
    ("log_data_port", MID360_LOG_PORT, "log"),
)

_MULTICAST_LOW = 0xE0000000
_MULTICAST_HIGH = 0xEFFFFFFF


class ParamsError(ValueError):
    """Raised when a set of lidar configurations is inconsistent."""


def parse_ipv4(ip: str) -> int:
    """Return a dotted IPv4 address as an unsigned 32-bit value, first octet highest."""
    parts = ip.split(".")
    if len(parts) != 4:
        raise ParamsError(f"invalid ip address: {ip!r}")
    value = 0
    for part in parts:
        if not part.isdigit():
            raise ParamsError(f"invalid ip address: {ip!r}")
        octet = int(part)
        if octet > 255:
            raise ParamsError(f"invalid ip address: {ip!r}")
        value = (value << 8) | octet
    return value


def is_multicast_ip(ip: str) -> bool:
    """Whether the address lies in the accepted multicast range (224.0.0.0 excluded)."""
    value = parse_ipv4(ip)
    return _MULTICAST_LOW < value <= _MULTICAST_HIGH


def check_lidar_ips(lidars: Iterable[LidarCfg], custom_lidars: Iterable[LidarCfg]) -> None:
    """Reject duplicate lidar addresses and custom lidars without an address."""
    seen: set[str] = set()
    for cfg in lidars:
        ip = cfg.lidar_net_info.lidar_ipaddr
        if not ip:
            continue
        if ip in seen:
            raise ParamsError(f"lidar ip conflict: {ip}")
        seen.add(ip)

    for cfg in custom_lidars:
        ip = cfg.lidar_net_info.lidar_ipaddr
        if not ip:
            raise ParamsError("custom lidar ipaddr is empty")
        if ip in seen:
            raise ParamsError(f"lidar ip conflict: {ip}")
        seen.add(ip)


def _check_multicast(cfg: LidarCfg, label: str) -> None:
    multicast_ip = cfg.host_net_info.multicast_ip
    if not multicast_ip:
        logger.info("%s point cloud data and IMU data unicast is enabled.", label)
        return
    if not is_multicast_ip(multicast_ip):
        raise ParamsError(f"lidar multicast ip error: {multicast_ip}")
    logger.info("%s point cloud and IMU data multicast ip:%s", label, multicast_ip)


def check_multicast_ips(lidars: Iterable[LidarCfg], custom_lidars: Iterable[LidarCfg]) -> None:
    """Reject multicast addresses outside the multicast range."""
    for cfg in lidars:
        _check_multicast(cfg, f"Device type:{int(cfg.device_type)}")
    for cfg in custom_lidars:
        _check_multicast(cfg, f"Lidar ip:{cfg.lidar_net_info.lidar_ipaddr}")


def check_port(device_type: int, lidar_net_info: LidarNetInfo) -> list[str]:
    """Force the fixed ports of a Mid-360; return the names of the fields corrected."""
    if device_type != DeviceType.MID360:
        return []
    corrected = []
    for name, port, label in _MID360_PORTS:
        if getattr(lidar_net_info, name) != port:
            logger.error("Mid360 lidar %s port must be %d", label, port)
            setattr(lidar_net_info, name, port)
            corrected.append(name)
    return corrected


def normalize_ports(lidars: Iterable[LidarCfg], custom_lidars: Iterable[LidarCfg]) -> None:
    """Apply check_port to every configuration in place."""
    for cfg in [*lidars, *custom_lidars]:
        check_port(cfg.device_type, cfg.lidar_net_info)


def check_params(
    lidars: Optional[Sequence[LidarCfg]],
    custom_lidars: Optional[Sequence[LidarCfg]],
) -> None:
    """Validate both configuration lists, fixing Mid-360 ports on the way."""
    if lidars is None and custom_lidars is None:
        raise ParamsError("all params are missing")
    lidars = lidars or []
    custom_lidars = custom_lidars or []
    if not lidars and not custom_lidars:
        raise ParamsError("all livox lidars config is empty")
    check_lidar_ips(lidars, custom_lidars)
    normalize_ports(lidars, custom_lidars)
    check_multicast_ips(lidars, custom_lidars)