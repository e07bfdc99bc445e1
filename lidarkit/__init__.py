"""Host-side toolkit for lidar configuration checks, log file capture and firmware upgrades."""

__version__ = "0.1.0"

__all__ = [
    "config",
    "params_check",
    "file_manager",
    "firmware",
    "logger_handler",
    "upgrader",
    "logger_manager",
    "upgrade_manager",
    "sdk",
]