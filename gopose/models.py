"""Data model shared across gopose: ports, compose files, overrides, conflicts and events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any


# --- ports -----------------------------------------------------------------


@dataclass
class PortRange:
    """An inclusive range of port numbers."""

    start: int = 0
    end: int = 0


@dataclass
class PortMapping:
    """A Docker Compose port mapping; a host port of 0 means none was given."""

    host: int = 0
    container: int = 0
    protocol: str = ""
    host_ip: str = ""


class ConflictType(str, Enum):
    """Kind of port conflict."""

    NONE = "none"
    SYSTEM = "system"
    COMPOSE = "compose"
    SYSTEM_PORT = "system_port"
    SERVICE_PORT = "service_port"
    RESERVED_PORT = "reserved_port"
    OUT_OF_RANGE = "out_of_range"


class Severity(str, Enum):
    """Severity of a conflict or error.

    LOW, MEDIUM and HIGH are aliases for INFO, WARNING and ERROR.
    """

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"
    LOW = "info"
    MEDIUM = "warning"
    HIGH = "error"


class ResolutionStrategy(str, Enum):
    """Strategy used to resolve a conflict."""

    MINIMAL_CHANGE = "minimal_change"
    PROXIMITY = "proximity"
    SEQUENTIAL = "sequential"
    AUTO_INCREMENT = "auto_increment"
    RANGE_ALLOCATION = "range_allocation"
    USER_DEFINED = "user_defined"


@dataclass
class Conflict:
    """A detected port conflict."""

    service: str = ""
    service_name: str = ""
    port: int = 0
    protocol: str = ""
    type: ConflictType = ConflictType.NONE
    severity: Severity | None = None
    description: str = ""


@dataclass
class ResolutionPlan:
    """A plan for resolving conflicts."""

    strategy: ResolutionStrategy | None = None
    priority: int = 0
    assignment: dict[str, int] = field(default_factory=dict)


@dataclass
class ConflictResolution:
    """The result of resolving one port conflict."""

    service: str = ""
    service_name: str = ""
    original_port: int = 0
    conflict_port: int = 0
    resolved_port: int = 0
    strategy: ResolutionStrategy | None = None
    reason: str = ""
    timestamp: datetime | None = None


@dataclass
class SystemPortInfo:
    """Information about a port in use on the system."""

    port: int = 0
    protocol: str = ""
    process_name: str = ""
    process_id: int = 0
    state: str = ""


@dataclass
class PortScanResult:
    """Outcome of a port scan."""

    used_ports: list[int] = field(default_factory=list)
    available_ports: list[int] = field(default_factory=list)
    port_info: list[SystemPortInfo] = field(default_factory=list)
    scan_duration_ms: int = 0


# --- compose ---------------------------------------------------------------


@dataclass
class ServiceNetwork:
    """A service's attachment to a network."""

    ipv4_address: str = ""


@dataclass
class Service:
    """A Docker Compose service."""

    name: str = ""
    image: str = ""
    ports: list[PortMapping] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    environment: dict[str, str] = field(default_factory=dict)
    networks: dict[str, ServiceNetwork] = field(default_factory=dict)


@dataclass
class IPAMConfig:
    """One IPAM pool entry."""

    subnet: str = ""
    gateway: str = ""


@dataclass
class IPAM:
    """IP address management settings of a network."""

    driver: str = ""
    config: list[IPAMConfig] = field(default_factory=list)


@dataclass
class Network:
    """A Docker Compose network definition."""

    driver: str = ""
    ipam: IPAM = field(default_factory=IPAM)
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class Volume:
    """A Docker Compose volume definition."""

    driver: str = ""
    driver_opts: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class ComposeConfig:
    """A parsed Docker Compose file."""

    version: str = ""
    services: dict[str, Service] = field(default_factory=dict)
    networks: dict[str, Network] = field(default_factory=dict)
    volumes: dict[str, Volume] = field(default_factory=dict)
    file_path: str = ""


@dataclass
class ServiceOverride:
    """Override settings for one service."""

    ports: list[PortMapping] = field(default_factory=list)
    networks: dict[str, ServiceNetwork] = field(default_factory=dict)


@dataclass
class NetworkOverride:
    """Override settings for one network; currently only the subnet is overridden."""

    driver: str = ""
    ipam: IPAM = field(default_factory=IPAM)
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class OverrideMetadata:
    """Generation information attached to an override."""

    generated_at: datetime | None = None
    version: str = ""
    resolutions: list[ConflictResolution] = field(default_factory=list)


@dataclass
class OverrideConfig:
    """The structure of a docker-compose.override.yml file."""

    name: str = ""
    version: str = ""
    services: dict[str, ServiceOverride] = field(default_factory=dict)
    networks: dict[str, NetworkOverride] = field(default_factory=dict)
    metadata: OverrideMetadata = field(default_factory=OverrideMetadata)


# --- configuration ---------------------------------------------------------


@dataclass
class PortConfig:
    """Port allocation settings."""

    range: PortRange = field(default_factory=PortRange)
    reserved: list[int] = field(default_factory=list)
    exclude_privileged: bool = False


@dataclass
class FileConfig:
    """File handling settings."""

    compose_file: str = ""
    override_file: str = ""
    backup_enabled: bool = False
    backup_dir: str = ""


@dataclass
class WatcherConfig:
    """Watcher settings."""

    interval: timedelta = field(default_factory=timedelta)
    cleanup_delay: timedelta = field(default_factory=timedelta)
    max_retries: int = 0
    retry_interval: timedelta = field(default_factory=timedelta)


@dataclass
class LogConfig:
    """Logging settings."""

    level: str = ""
    format: str = ""
    file: str = ""
    max_size: int = 0
    max_age: int = 0
    compress: bool = False


@dataclass
class AppConfig:
    """Complete application configuration."""

    port: PortConfig = field(default_factory=PortConfig)
    file: FileConfig = field(default_factory=FileConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)
    log: LogConfig = field(default_factory=LogConfig)


# --- unified conflicts -----------------------------------------------------


class NetworkConflictType(str, Enum):
    """Kind of network conflict."""

    SUBNET = "subnet"
    NAME = "name"


@dataclass
class PortResolutionInfo:
    """How a port conflict was resolved."""

    resolved_port: int = 0
    strategy: ResolutionStrategy | None = None
    reason: str = ""


@dataclass
class NetworkResolutionInfo:
    """How a network conflict was resolved."""

    resolved_subnet: str = ""
    service_ips: dict[str, str] = field(default_factory=dict)
    reason: str = ""


@dataclass
class PortConflictInfo:
    """A port conflict together with its resolution, once found."""

    service: str = ""
    service_name: str = ""
    port: int = 0
    protocol: str = ""
    type: ConflictType = ConflictType.NONE
    description: str = ""
    resolution: PortResolutionInfo | None = None


@dataclass
class NetworkConflictInfo:
    """A network conflict together with its resolution, once found."""

    network_name: str = ""
    conflict_type: NetworkConflictType = NetworkConflictType.SUBNET
    original_subnet: str = ""
    conflicting_subnet: str = ""
    conflicting_network: str = ""
    description: str = ""
    resolution: NetworkResolutionInfo | None = None
    service_ips: dict[str, str] = field(default_factory=dict)


@dataclass
class UnifiedConflictInfo:
    """All port and network conflicts found in one detection run."""

    port_conflicts: list[PortConflictInfo] = field(default_factory=list)
    network_conflicts: list[NetworkConflictInfo] = field(default_factory=list)
    generated_at: datetime | None = None

    def has_conflicts(self) -> bool:
        """True when there is any port or network conflict."""
        return self.has_port_conflicts() or self.has_network_conflicts()

    def has_port_conflicts(self) -> bool:
        """True when there is at least one port conflict."""
        return bool(self.port_conflicts)

    def has_network_conflicts(self) -> bool:
        """True when there is at least one network conflict."""
        return bool(self.network_conflicts)


# --- events ----------------------------------------------------------------


class ProcessEventType(str, Enum):
    """Kind of process state change."""

    STARTED = "started"
    STOPPED = "stopped"
    RESTARTED = "restarted"
    ERROR = "error"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class ProcessEvent:
    """A process state change."""

    type: ProcessEventType
    process_id: int = 0
    name: str = ""
    timestamp: datetime | None = None
    data: dict[str, Any] = field(default_factory=dict)


class LogLevel(str, Enum):
    """Log level names."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"


class FileWatchEventType(str, Enum):
    """Kind of file change."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


@dataclass
class FileWatchEvent:
    """A file change observed by a watcher."""

    type: FileWatchEventType
    path: str = ""
    timestamp: datetime | None = None