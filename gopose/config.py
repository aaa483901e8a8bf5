"""Default configuration values and recommended presets."""

from __future__ import annotations

from datetime import timedelta

from .models import AppConfig, FileConfig, LogConfig, PortConfig, PortRange, WatcherConfig


def default_port_config() -> PortConfig:
    """Default port allocation settings."""
    return PortConfig(
        range=PortRange(start=8000, end=9999),
        reserved=[8080, 8443, 9000, 9090],
        exclude_privileged=True,
    )


def default_file_config() -> FileConfig:
    """Default file handling settings."""
    return FileConfig(
        compose_file="docker-compose.yml",
        override_file="docker-compose.override.yml",
        backup_enabled=True,
        backup_dir=".gopose/backups",
    )


def default_watcher_config() -> WatcherConfig:
    """Default watcher settings."""
    return WatcherConfig(
        interval=timedelta(seconds=5),
        cleanup_delay=timedelta(seconds=30),
        max_retries=3,
        retry_interval=timedelta(seconds=1),
    )


def default_log_config() -> LogConfig:
    """Default logging settings."""
    return LogConfig(
        level="info",
        format="text",
        file="",
        max_size=100,
        max_age=30,
        compress=True,
    )


def default_config() -> AppConfig:
    """A fresh application configuration filled with defaults."""
    return AppConfig(
        port=default_port_config(),
        file=default_file_config(),
        watcher=default_watcher_config(),
        log=default_log_config(),
    )


def development_config() -> AppConfig:
    """Configuration suited to development."""
    config = default_config()
    config.log.level = "debug"
    config.log.format = "text"
    config.watcher.interval = timedelta(seconds=2)
    return config


def production_config() -> AppConfig:
    """Configuration suited to production."""
    config = default_config()
    config.log.level = "warn"
    config.log.format = "json"
    config.log.file = "/var/log/gopose/gopose.log"
    config.watcher.interval = timedelta(seconds=10)
    config.watcher.cleanup_delay = timedelta(seconds=60)
    return config


def testing_config() -> AppConfig:
    """Configuration suited to test runs."""
    config = default_config()
    config.log.level = "debug"
    config.log.format = "text"
    config.file.backup_enabled = False
    config.watcher.interval = timedelta(milliseconds=100)
    config.watcher.cleanup_delay = timedelta(seconds=1)
    return config